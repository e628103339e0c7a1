from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .content_guard import (
    check_duplicate,
    find_narrative_duplicate,
    jaccard,
    sanitize,
    validate_market_consistency,
)
from .models import AdaptivePolicy, RecentPost
from .state import clamp_int, clamp_number, parse_iso, utc_now


SIGNAL_LANE_PRIORITY = [
    "sentiment-fear",
    "sentiment-greed",
    "stable-flow",
    "whale-flow",
    "exchange-flow",
    "onchain",
    "btc",
    "eth",
    "sol",
    "divergence",
    "turning-point",
    "question-ending",
    "observation-ending",
]

TEMPLATE_TOKEN_STOP_WORDS = {
    "the", "and", "for", "with", "from", "that", "this", "into", "after", "today", "market",
    "crypto", "token", "price", "signal", "context", "data", "flow", "coin", "coins",
    "오늘", "시장", "데이터", "흐름", "신호", "코인", "그리고", "하지만", "지금", "구간",
}

# Ordered: first match wins.
TOPIC_TAG_RULES = [
    ("sentiment", re.compile(r"fear|greed|fgi|극공포|공포\s*지수|탐욕\s*지수")),
    ("bitcoin", re.compile(r"\$btc|bitcoin|비트코인")),
    ("ethereum", re.compile(r"\$eth|ethereum|이더")),
    ("macro", re.compile(r"fomc|fed|macro|금리|inflation|dxy")),
    ("onchain", re.compile(r"onchain|멤풀|수수료|고래|stable|유동성|tvl")),
    ("tech", re.compile(r"layer2|rollup|업그레이드|mainnet|testnet")),
    ("ai", re.compile(r"ai|agent|inference")),
    ("defi", re.compile(r"defi|dex|lending|staking")),
]

_QUESTION_ENDING = re.compile(r"\?$|일까|어떻게\s*봐|어떻게\s*읽")
MOTIF_RULES = [
    ("sentiment-fear", re.compile(r"fear|fgi|극공포|공포\s*지수")),
    ("sentiment-greed", re.compile(r"greed|탐욕")),
    ("stable-flow", re.compile(r"stable|스테이블|유동성")),
    ("whale-flow", re.compile(r"고래|whale|대형\s*주소")),
    ("exchange-flow", re.compile(r"거래소|exchange\s*flow|netflow|순유입|순유출")),
    ("btc", re.compile(r"\$btc|bitcoin|비트코인")),
    ("eth", re.compile(r"\$eth|ethereum|이더")),
    ("sol", re.compile(r"\$sol|solana|솔라나")),
    ("onchain", re.compile(r"onchain|온체인|멤풀|수수료")),
    ("divergence", re.compile(r"괴리|비동기|엇갈")),
    ("turning-point", re.compile(r"바닥|반등|데드캣|함정|불트랩|베어트랩")),
]

_BTC_CENTRIC = re.compile(r"(^|\s)(\$?btc|bitcoin|비트코인)(\s|$)|fear\s*greed|fgi|공포\s*지수|극공포")
_NON_BTC_SIGNAL = re.compile(
    r"(\$?eth|ethereum|이더|solana|\$?sol|sec|etf|fomc|fed|layer2|rollup|defi|dex|regulation|규제|macro|매크로)"
)


@dataclass
class ContentQualityRules:
    min_post_length: int = 20
    topic_max_same_tag_24h: int = 2
    sentiment_max_ratio_24h: float = 0.25
    topic_block_consecutive_tag: bool = True


def resolve_content_quality_rules(raw: Optional[Dict[str, Any]] = None) -> ContentQualityRules:
    raw = raw or {}
    defaults = ContentQualityRules()
    block = raw.get("topic_block_consecutive_tag")
    return ContentQualityRules(
        min_post_length=clamp_int(raw.get("min_post_length"), 10, 120, defaults.min_post_length),
        topic_max_same_tag_24h=clamp_int(raw.get("topic_max_same_tag_24h"), 1, 8, defaults.topic_max_same_tag_24h),
        sentiment_max_ratio_24h=clamp_number(
            raw.get("sentiment_max_ratio_24h"), 0.05, 1, defaults.sentiment_max_ratio_24h
        ),
        topic_block_consecutive_tag=block if isinstance(block, bool) else defaults.topic_block_consecutive_tag,
    )


def infer_topic_tag(text: str) -> str:
    lower = str(text or "").lower()
    for tag, pattern in TOPIC_TAG_RULES:
        if pattern.search(lower):
            return tag
    return "general"


def normalize_narrative_structure(text: str) -> str:
    value = sanitize(text).lower()
    value = re.sub(r"\$[a-z]{2,10}", " ticker ", value)
    value = re.sub(r"[+-]?\d+(?:\.\d+)?%", " pct ", value)
    value = re.sub(r"\d[\d,]*(?:\.\d+)?\s*(?:k|m|b|t|만|억|조)?", " num ", value, flags=re.I)
    value = re.sub(r"[^\w\s]|_", " ", value)
    return re.sub(r"\s+", " ", value).strip()


def extract_narrative_motifs(text: str) -> Set[str]:
    lower = sanitize(text).lower()
    motifs = {name for name, pattern in MOTIF_RULES if pattern.search(lower)}
    motifs.add("question-ending" if _QUESTION_ENDING.search(lower) else "observation-ending")
    return motifs


def build_signal_lane(text: str, motifs: Optional[Set[str]] = None, depth: int = 4) -> Optional[str]:
    motifs = motifs if motifs is not None else extract_narrative_motifs(text)
    ordered = [key for key in SIGNAL_LANE_PRIORITY if key in motifs][:depth]
    if not ordered:
        return None
    return "|".join(ordered)


def build_primary_signal_lane(text: str, motifs: Optional[Set[str]] = None) -> Optional[str]:
    return build_signal_lane(text, motifs, depth=2)


def build_template_fingerprint(text: str) -> List[str]:
    normalized = re.sub(r"\b(ticker|pct|num)\b", " ", normalize_narrative_structure(text))
    normalized = re.sub(r"\s+", " ", normalized).strip()
    if not normalized:
        return []
    tokens: List[str] = []
    for token in normalized.split(" "):
        if len(token) < 2 or token in TEMPLATE_TOKEN_STOP_WORDS or token in tokens:
            continue
        tokens.append(token)
    return tokens[:20]


def is_template_duplicate(text: str, recent_texts: List[str], threshold: float, window_size: int) -> bool:
    candidate = build_template_fingerprint(text)
    if len(candidate) < 4:
        return False
    candidate_set = set(candidate)
    for item in recent_texts[-max(4, window_size):]:
        if jaccard(candidate_set, set(build_template_fingerprint(item))) >= threshold:
            return True
    return False


def is_btc_centric_text(text: str) -> bool:
    return bool(_BTC_CENTRIC.search(sanitize(text).lower()))


def has_non_btc_signal(text: str) -> bool:
    return bool(_NON_BTC_SIGNAL.search(sanitize(text).lower()))


def compute_btc_centric_ratio(texts: List[str]) -> float:
    if not texts:
        return 0.0
    return sum(1 for item in texts if is_btc_centric_text(item)) / len(texts)


def normalize_required_trend_tokens(tokens: Optional[Iterable[Any]]) -> List[str]:
    out: List[str] = []
    for token in tokens or []:
        value = str(token or "").strip().lower()
        if len(value) >= 2 and value not in out:
            out.append(value)
    return out[:8]


def contains_any_trend_token(text: str, tokens: List[str]) -> bool:
    if not tokens:
        return True
    lowered = sanitize(text).lower()
    for token in tokens:
        if token in lowered:
            return True
        if token.startswith("$") and token[1:] in lowered:
            return True
    return False


def _within_hours(post: RecentPost, hours: int, now: datetime) -> bool:
    stamp = parse_iso(post.created_at)
    if stamp is None:
        return False
    return now - stamp <= timedelta(hours=hours)


def evaluate_reply_quality(
    text: str,
    market_rows: List[Dict[str, Any]],
    recent_reply_texts: List[str],
    recent_own_texts: List[str],
    policy: AdaptivePolicy,
) -> Tuple[bool, str]:
    ok, reason = validate_market_consistency(text, market_rows)
    if not ok:
        return False, reason

    if check_duplicate(text, recent_own_texts, policy.reply_duplicate_threshold)["is_duplicate"]:
        return False, "duplicate-own-text"

    narrative = find_narrative_duplicate(text, recent_reply_texts, policy.reply_narrative_threshold)
    if narrative["is_duplicate"]:
        return False, f"narrative-duplicate sim={narrative['similarity']}"

    if is_template_duplicate(text, recent_reply_texts, 0.74, 18):
        return False, "template-repeat"

    recent_tags = [infer_topic_tag(item) for item in recent_reply_texts[-8:]]
    candidate_tag = infer_topic_tag(text)
    if len(recent_tags) >= 2 and recent_tags[-1] == candidate_tag and recent_tags[-2] == candidate_tag:
        return False, f"topic-diversity tag={candidate_tag}"

    if recent_tags.count(candidate_tag) >= 4:
        return False, f"reply-topic-skew tag={candidate_tag}"

    return True, ""


def evaluate_post_quality(
    text: str,
    market_rows: List[Dict[str, Any]],
    recent_posts: List[RecentPost],
    recent_own_texts: List[str],
    policy: AdaptivePolicy,
    rules: Optional[ContentQualityRules] = None,
    required_trend_tokens: Optional[List[str]] = None,
    fear_greed_event: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Tuple[bool, str]:
    """Composite gate for a proactive post; ``recent_posts`` is oldest-first.

    Returns ``(ok, reason)`` where reason is a short machine-readable code
    optionally followed by ``key=value`` detail.
    """
    rules = rules or ContentQualityRules()
    now = now or utc_now()

    if not text or len(text) < rules.min_post_length:
        return False, "too-short"

    recent_texts = [post.content for post in recent_posts]
    ok, reason = validate_market_consistency(text, market_rows)
    if not ok:
        return False, reason

    if check_duplicate(text, recent_own_texts, policy.post_duplicate_threshold)["is_duplicate"]:
        return False, "duplicate-own-text"

    narrative = find_narrative_duplicate(text, recent_texts, policy.post_narrative_threshold)
    if narrative["is_duplicate"]:
        return False, f"narrative-duplicate sim={narrative['similarity']}"

    if is_template_duplicate(text, recent_texts, 0.7, 22):
        return False, "template-repeat"

    motifs = extract_narrative_motifs(text)
    if len(motifs) >= 3:
        for item in recent_texts[-16:]:
            if jaccard(motifs, extract_narrative_motifs(item)) >= 0.7:
                return False, "motif-repeat"

    within_24h = [post for post in recent_posts if _within_hours(post, 24, now)]
    lane = build_signal_lane(text, motifs)
    if lane and within_24h:
        if any(build_signal_lane(post.content) == lane for post in within_24h):
            return False, f"signal-lane-repeat lane={lane}"

    primary = build_primary_signal_lane(text, motifs)
    if primary and within_24h:
        same_primary = sum(1 for post in within_24h if build_primary_signal_lane(post.content) == primary)
        if same_primary >= 2:
            return False, f"signal-axis-repeat lane={primary}"

    opening = sanitize(text)[:24]
    if opening and any(sanitize(item)[:24] == opening for item in recent_texts):
        return False, "opening-repeat"

    structures = [normalize_narrative_structure(item) for item in recent_texts[-20:]]
    candidate_structure = normalize_narrative_structure(text)
    if candidate_structure:
        prefix = candidate_structure[:34]
        if prefix and any(item[:34] == prefix for item in structures):
            return False, "structure-repeat"
        suffix = candidate_structure[-32:]
        if len(suffix) >= 16 and any(item[-32:] == suffix for item in structures):
            return False, "ending-repeat"

    if within_24h:
        candidate_tag = infer_topic_tag(text)
        tags = [infer_topic_tag(post.content) for post in within_24h]
        if rules.topic_block_consecutive_tag and tags[-1] == candidate_tag:
            return False, f"topic-diversity tag={candidate_tag}"
        same_tag = tags.count(candidate_tag)
        if same_tag >= rules.topic_max_same_tag_24h:
            return False, f"topic-density tag={candidate_tag}"
        if candidate_tag == "sentiment":
            projected = (same_tag + 1) / max(1, len(within_24h) + 1)
            if projected > rules.sentiment_max_ratio_24h:
                return False, f"sentiment-ratio ratio={round(projected * 100)}%"

    if len(within_24h) >= 4:
        btc_ratio = compute_btc_centric_ratio([post.content for post in within_24h])
        if btc_ratio >= 0.6 and is_btc_centric_text(text) and not has_non_btc_signal(text):
            return False, f"btc-centric ratio={round(btc_ratio * 100)}%"

    tokens = normalize_required_trend_tokens(required_trend_tokens)
    if tokens and not contains_any_trend_token(text, tokens):
        return False, "trend-token-missing"

    if fear_greed_event and fear_greed_event.get("required"):
        if infer_topic_tag(text) == "sentiment" and not fear_greed_event.get("is_event"):
            return False, "fear-greed-event-missing"

    return True, ""
