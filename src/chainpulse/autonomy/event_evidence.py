from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .content_guard import sanitize
from .models import (
    TREND_LANES,
    EventEvidencePlan,
    LaneUsage,
    OnchainEvidence,
    OnchainNutrient,
    RecentPost,
    TrendEvent,
)
from .state import clamp_number, round_half_up, utc_now_iso


LANE_MAX_RATIO = {
    "protocol": 0.4,
    "ecosystem": 0.4,
    "regulation": 0.4,
    "macro": 0.4,
    "onchain": 0.3,
    "market-structure": 0.4,
}

# Checked in order; the first match assigns the lane.
LANE_RULES = [
    ("protocol", re.compile(
        r"upgrade|mainnet|testnet|fork|rollup|layer2|l2|validator|consensus|throughput|firedancer"
        r"|업그레이드|메인넷|테스트넷|포크"
    )),
    ("ecosystem", re.compile(
        r"ecosystem|adoption|wallet|gaming|app|developer|community|airdrop|partnership|meme|memecoin"
        r"|생태계|채택|파트너십"
    )),
    ("regulation", re.compile(
        r"sec|cftc|lawsuit|regulation|regulatory|policy|compliance|court|etf\s*approval|규제|소송|법안|당국"
    )),
    ("macro", re.compile(r"fed|ecb|cpi|inflation|rates|bond|treasury|usd|eur/usd|dxy|fomc|매크로|금리|인플레이션")),
    ("onchain", re.compile(
        r"onchain|mempool|fee|gas|whale|stablecoin|netflow|address|transaction|tvl|온체인|멤풀|수수료|고래|스테이블"
    )),
    ("market-structure", re.compile(
        r"exchange|listing|liquidity|volume|funding|open interest|derivatives|market maker|orderbook"
        r"|거래소|유동성|거래량|파생"
    )),
]
DEFAULT_LANE = "market-structure"

EVIDENCE_TOKEN_STOP_WORDS = {
    "today", "crypto", "market", "markets", "news", "update", "analysis", "price", "prices",
    "token", "blockchain", "coin", "coins", "btc", "bitcoin", "eth", "ethereum", "sol", "solana",
    "fear", "greed", "fgi", "공포", "탐욕", "지수", "온체인", "유동성", "스테이블", "고래", "수수료",
}

LANE_DISPLAY_NAMES = {
    "ko": {
        "protocol": "프로토콜",
        "ecosystem": "생태계",
        "regulation": "규제",
        "macro": "매크로",
        "onchain": "온체인",
        "market-structure": "시장구조",
    },
    "en": {
        "protocol": "Protocol",
        "ecosystem": "Ecosystem",
        "regulation": "Regulation",
        "macro": "Macro",
        "onchain": "On-chain",
        "market-structure": "Market structure",
    },
}

_TICKER = re.compile(r"\$[a-z]{2,10}\b")
_WORD = re.compile(r"[a-z][a-z0-9-]{2,}|[가-힣]{2,}")
_ANCHOR = re.compile(r"\$[a-z]{2,10}\b|[a-z][a-z0-9-]{2,}|[가-힣]{2,}")


def infer_trend_lane(text: str) -> str:
    normalized = sanitize(text).lower()
    for lane, pattern in LANE_RULES:
        if pattern.search(normalized):
            return lane
    return DEFAULT_LANE


def normalize_headline_key(text: str) -> str:
    return re.sub(r"[^a-z0-9가-힣]", "", sanitize(text).lower())[:80]


def extract_headline_tokens(headline: str) -> List[str]:
    text = sanitize(headline).lower()
    merged = _TICKER.findall(text) + _WORD.findall(text)
    kept = [
        token.strip() for token in merged
        if len(token.strip()) >= 2
        and token.strip() not in EVIDENCE_TOKEN_STOP_WORDS
        and not token.strip().isdigit()
    ][:10]
    out: List[str] = []
    for token in kept:
        if token not in out:
            out.append(token)
    return out


def build_trend_events(news_rows: List[Dict[str, Any]], created_at: str) -> List[TrendEvent]:
    """Turn trust-ranked news rows into lane-tagged events, one per headline.

    Each row carries ``title``, ``summary``, ``category``, ``source_key`` and
    ``trust``. Freshness decays with input rank.
    """
    events: Dict[str, TrendEvent] = {}
    for index, row in enumerate(news_rows[:12]):
        headline = sanitize(row.get("title") or "")[:160]
        if len(headline) < 12:
            continue
        summary = sanitize(row.get("summary") or row.get("title") or "")[:220]
        lane = infer_trend_lane(" ".join([headline, str(row.get("category") or ""), str(row.get("summary") or "")]))
        key = normalize_headline_key(headline)
        if key in events:
            continue
        events[key] = TrendEvent(
            id=f"event:{lane}:{index}:{created_at}",
            lane=lane,
            headline=headline,
            summary=summary,
            source=str(row.get("source_key") or "unknown"),
            trust=clamp_number(row.get("trust"), 0.1, 0.98, 0.52),
            freshness=clamp_number(0.95 - index * 0.05, 0.35, 0.95, 0.7),
            captured_at=created_at,
            keywords=extract_headline_tokens(headline)[:6],
        )
    return list(events.values())


def _evidence_strength(item: OnchainEvidence) -> float:
    digest = item.digest_score if item.digest_score is not None else 0.55
    return digest * item.trust * item.freshness


def build_onchain_evidence(nutrients: Iterable[OnchainNutrient], max_items: int = 12) -> List[OnchainEvidence]:
    limit = int(clamp_number(max_items, 2, 30, 12))
    dedup: Dict[str, OnchainEvidence] = {}
    for index, nutrient in enumerate(nutrients):
        lane = infer_trend_lane(f"{nutrient.category} {nutrient.label} {nutrient.evidence}")
        raw_digest = nutrient.metadata.get("digest_score")
        digest_score = None
        if isinstance(raw_digest, (int, float)) and not isinstance(raw_digest, bool):
            digest_score = clamp_number(raw_digest, 0, 1, 0.5)
        key = "|".join([
            nutrient.source,
            nutrient.category,
            normalize_headline_key(nutrient.label),
            normalize_headline_key(nutrient.value),
        ])
        if key in dedup:
            continue
        dedup[key] = OnchainEvidence(
            id=f"evidence:{lane}:{index}:{nutrient.id}",
            lane="onchain" if nutrient.source == "onchain" else lane,
            nutrient_id=nutrient.id,
            source=nutrient.source,
            label=sanitize(nutrient.label)[:110],
            value=sanitize(nutrient.value)[:80],
            summary=sanitize(nutrient.evidence or f"{nutrient.label} {nutrient.value}")[:180],
            trust=clamp_number(nutrient.trust, 0.05, 0.99, 0.52),
            freshness=clamp_number(nutrient.freshness, 0.05, 0.99, 0.7),
            digest_score=digest_score,
            captured_at=nutrient.captured_at or utc_now_iso(),
        )
    ranked = sorted(dedup.values(), key=_evidence_strength, reverse=True)
    return ranked[:limit]


def compute_lane_usage(recent_posts: List[RecentPost]) -> LaneUsage:
    by_lane = {lane: 0 for lane in TREND_LANES}
    for post in recent_posts:
        by_lane[infer_trend_lane(post.content)] += 1
    return LaneUsage(total_posts=len(recent_posts), by_lane=by_lane)


def select_evidence_for_lane(lane: str, evidence: List[OnchainEvidence]) -> List[OnchainEvidence]:
    same_lane = [item for item in evidence if item.lane == lane]
    onchain = [item for item in evidence if item.lane == "onchain" and item.lane != lane]
    others = [item for item in evidence if item.lane != lane and item.lane != "onchain"]
    dedup: Dict[str, OnchainEvidence] = {}
    for item in same_lane + onchain + others:
        key = f"{item.lane}|{normalize_headline_key(item.label)}|{normalize_headline_key(item.value)}"
        dedup.setdefault(key, item)
    return sorted(dedup.values(), key=_evidence_strength, reverse=True)


def headline_novelty(headline: str, recent_posts: List[RecentPost]) -> float:
    normalized = sanitize(headline).lower()
    if not normalized:
        return 0.4
    recent = [sanitize(post.content).lower() for post in recent_posts[-16:]]
    if not recent:
        return 0.9
    overlaps = sum(1 for text in recent if normalized in text)
    if overlaps >= 2:
        return 0.2
    if overlaps == 1:
        return 0.45
    return 0.82


def lane_projected_ratio(lane: str, usage: LaneUsage) -> float:
    return (usage.by_lane.get(lane, 0) + 1) / max(1, usage.total_posts + 1)


def plan_event_evidence_act(
    events: List[TrendEvent],
    evidence: List[OnchainEvidence],
    recent_posts: List[RecentPost],
    lane_usage: Optional[LaneUsage] = None,
) -> Optional[EventEvidencePlan]:
    """Pick the best event with two supporting evidence items.

    Over-used lanes are penalized rather than filtered: if every scored
    event is lane-quota limited, the best of them is still returned.
    """
    if not events or len(evidence) < 2:
        return None

    usage = lane_usage or compute_lane_usage(recent_posts)
    scored: List[Tuple[float, int, TrendEvent, List[OnchainEvidence], float, bool]] = []
    for order, event in enumerate(events):
        picked = select_evidence_for_lane(event.lane, evidence)[:2]
        if len(picked) < 2:
            continue
        ratio = lane_projected_ratio(event.lane, usage)
        limited = ratio > LANE_MAX_RATIO.get(event.lane, 0.4)
        novelty = headline_novelty(event.headline, recent_posts)
        strength = sum(item.trust * item.freshness for item in picked) / len(picked)
        score = (
            event.trust * 0.42
            + event.freshness * 0.2
            + novelty * 0.22
            + strength * 0.16
            - (0.35 if limited else 0.0)
        )
        scored.append((score, order, event, picked, ratio, limited))

    if not scored:
        return None

    scored.sort(key=lambda row: (-row[0], row[1]))
    preferred = next((row for row in scored if not row[5]), scored[0])
    _, _, event, picked, ratio, limited = preferred
    return EventEvidencePlan(
        lane=event.lane,
        event=event,
        evidence=picked,
        lane_usage=usage,
        lane_projected_ratio=round_half_up(ratio, 3),
        lane_quota_limited=limited,
    )


def build_evidence_anchor_tokens(evidence: OnchainEvidence) -> List[str]:
    merged = f"{evidence.label} {evidence.value} {evidence.summary}".lower()
    out: List[str] = []
    for token in [t for t in _ANCHOR.findall(merged) if t not in EVIDENCE_TOKEN_STOP_WORDS][:8]:
        if token not in out:
            out.append(token)
    return out


def validate_event_evidence_contract(text: str, plan: EventEvidencePlan) -> Dict[str, Any]:
    normalized = sanitize(text).lower()
    event_tokens: List[str] = []
    for token in plan.event.keywords + extract_headline_tokens(plan.event.headline):
        lowered = token.lower()
        if len(lowered) >= 3 and lowered not in event_tokens:
            event_tokens.append(lowered)
    event_hit = any(token in normalized for token in event_tokens[:8])

    evidence_hits = 0
    for item in plan.evidence[:2]:
        for token in build_evidence_anchor_tokens(item):
            if token in normalized or (token.startswith("$") and token[1:] in normalized):
                evidence_hits += 1
                break

    result: Dict[str, Any] = {"ok": True, "reason": "", "event_hit": event_hit, "evidence_hit_count": evidence_hits}
    if not event_hit:
        result.update(ok=False, reason="event-anchor-missing")
    elif evidence_hits < 2:
        result.update(ok=False, reason="evidence-anchor-missing")
    return result


def _format_evidence_anchor(evidence: Optional[OnchainEvidence], language: str) -> str:
    if evidence is None:
        return "데이터 확인 중" if language == "ko" else "data pending"
    return re.sub(r"\s+", " ", f"{evidence.label} {evidence.value}").strip()[:70]


def build_event_evidence_fallback_post(
    plan: EventEvidencePlan, post_angle: str, language: str, max_chars: int = 220
) -> str:
    headline = re.sub(r"\.$", "", sanitize(plan.event.headline))
    first = _format_evidence_anchor(plan.evidence[0] if plan.evidence else None, language)
    second = _format_evidence_anchor(plan.evidence[1] if len(plan.evidence) > 1 else None, language)
    names = LANE_DISPLAY_NAMES["ko" if language == "ko" else "en"]
    lane_label = names.get(plan.lane, plan.lane)
    if language == "ko":
        base = f"{lane_label} 이슈: {headline}. 근거1 {first}. 근거2 {second}. {post_angle} 관점으로 추가 확인 중."
    else:
        base = (
            f"{lane_label} event: {headline}. Evidence 1: {first}. Evidence 2: {second}. "
            f"Tracking follow-through from a {post_angle} lens."
        )
    return sanitize(base)[: max(120, min(280, int(max_chars)))]
