from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple


DUPLICATE_STOP_WORDS = {"the", "a", "an", "is", "are", "was", "were", "by", "for", "to", "of", "and", "in", "on", "at"}
DUPLICATE_WINDOW = 20
PRICE_CLAIM_TOLERANCE = 0.15

SPAM_PATTERNS = [
    re.compile(r"join my community", re.I),
    re.compile(r"private group", re.I),
    re.compile(r"vip group", re.I),
    re.compile(r"copy trade", re.I),
    re.compile(r"dm (me|for)", re.I),
    re.compile(r"giveaway", re.I),
    re.compile(r"airdrop", re.I),
    re.compile(r"presale", re.I),
    re.compile(r"\bca\s*:", re.I),
    re.compile(r"contract address", re.I),
]

TECH_KEYWORDS = [
    "layer2", "rollup", "mainnet", "testnet", "upgrade", "validator", "staking", "mempool",
    "onchain", "liquidity", "tvl", "gas", "etf", "funding", "open interest", "zk", "ai",
    "agent", "macro", "fed", "fomc", "rates", "금리", "업그레이드", "메인넷", "유동성", "온체인",
]

MEME_NOISE_KEYWORDS = ["100x", "moon", "degen", "gem", "pump", "lfg", "wen", "memecoin", "shitcoin"]

_BTC_MENTION = re.compile(r"(?:\$?btc|비트코인)", re.I)
_HARD_100K = re.compile(r"(?:10\s*만|100\s*k|100,?000)", re.I)
_CLAIM_PATTERNS = [
    (re.compile(r"(?:\$?btc|비트코인)\s*[:=]?\s*(\$?\s*\d[\d,]*(?:\.\d+)?\s*(?:k|K|만)?)", re.I), ""),
    (re.compile(r"(?:가격|price|at|around|근처|선)\s*(\$?\s*\d[\d,]*(?:\.\d+)?\s*(?:k|K|만)?)", re.I), ""),
    (re.compile(r"(\d+(?:\.\d+)?)\s*만(?=\s*(?:불|달러|usd|선|대|돌파|근처))", re.I), "만"),
    (re.compile(r"(\d+(?:\.\d+)?)\s*[kK](?=\s*(?:usd|달러|불|선|대|돌파|근처|resistance|support))"), "k"),
]
_NUMBER_WITH_UNIT = re.compile(r"\d[\d,]*(?:\.\d+)?\s*(?:k|m|b|t|만|억|조)?", re.I)
_NON_WORD = re.compile(r"[^\w\s]|_")
_LEADING_FLOAT = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)")


def sanitize(text: Any) -> str:
    value = str(text or "")
    value = re.sub(r"\s+", " ", value)
    value = value.replace("“", '"').replace("”", '"')
    return value.strip()


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    intersection = len(a & b)
    union = len(a) + len(b) - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def duplicate_words(text: str) -> Set[str]:
    lowered = re.sub(r"[^\w\s$]", "", str(text or "").lower())
    return {w for w in lowered.split() if len(w) > 2 and w not in DUPLICATE_STOP_WORDS}


def check_duplicate(text: str, recent_own_texts: Iterable[str], threshold: float = 0.6) -> Dict[str, Any]:
    """Jaccard word-overlap check against the newest own texts.

    ``recent_own_texts`` is oldest-first; only the last 20 are compared.
    """
    candidate = duplicate_words(text)
    recent = list(recent_own_texts)[-DUPLICATE_WINDOW:]
    for existing in recent:
        similarity = jaccard(candidate, duplicate_words(existing))
        if similarity > threshold:
            return {"is_duplicate": True, "similarity": similarity, "matched_text": existing}
    return {"is_duplicate": False, "similarity": 0.0, "matched_text": None}


def normalize_narrative_text(text: str) -> str:
    value = str(text or "").lower()
    value = re.sub(r"https?://\S+", " ", value)
    value = re.sub(r"@\w+", " ", value)
    value = re.sub(r"\$[a-z]{2,10}", " ticker ", value)
    value = re.sub(r"[+-]?\d+(?:\.\d+)?%", " pct ", value)
    value = _NUMBER_WITH_UNIT.sub(" num ", value)
    value = _NON_WORD.sub(" ", value)
    return re.sub(r"\s+", " ", value).strip()


def narrative_words(text: str) -> Set[str]:
    normalized = normalize_narrative_text(text)
    if not normalized:
        return set()
    return {w for w in normalized.split() if len(w) >= 2}


def find_narrative_duplicate(candidate: str, recent_texts: Iterable[str], threshold: float = 0.7) -> Dict[str, Any]:
    candidate_words = narrative_words(candidate)
    if not candidate_words:
        return {"is_duplicate": False, "similarity": 0.0, "matched_text": None}

    best = 0.0
    best_text: Optional[str] = None
    for text in recent_texts:
        existing = narrative_words(text)
        if not existing:
            continue
        similarity = jaccard(candidate_words, existing)
        if similarity > best:
            best = similarity
            best_text = text

    return {
        "is_duplicate": best >= threshold,
        "similarity": round(best, 2),
        "matched_text": best_text,
    }


def _parse_float_prefix(raw: str) -> Optional[float]:
    match = _LEADING_FLOAT.match(raw)
    if not match:
        return None
    value = float(match.group(0))
    return value if math.isfinite(value) else None


def parse_usd_token(raw: str) -> Optional[float]:
    normalized = raw.lower().replace("$", "")
    normalized = re.sub(r"usd|달러|불|선|대|돌파|근처", "", normalized)
    normalized = re.sub(r"\s+", "", normalized).strip()
    if not normalized:
        return None
    if normalized.endswith("만"):
        value = _parse_float_prefix(normalized.replace("만", ""))
        return value * 10000 if value is not None else None
    if normalized.endswith("k"):
        value = _parse_float_prefix(normalized[:-1])
        return value * 1000 if value is not None else None
    return _parse_float_prefix(normalized.replace(",", ""))


def extract_btc_price_claims(text: str) -> List[int]:
    if not _BTC_MENTION.search(text):
        return []
    claims: List[int] = []
    for pattern, suffix in _CLAIM_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group(1) or match.group(0)
            parsed = parse_usd_token(f"{raw}{suffix}")
            if parsed:
                rounded = int(math.floor(parsed + 0.5))
                if rounded not in claims:
                    claims.append(rounded)
    return [value for value in claims if 20000 <= value <= 300000]


def _find_btc_price(market_rows: Iterable[Dict[str, Any]]) -> Optional[float]:
    for row in market_rows:
        if str(row.get("symbol") or "").upper() != "BTC":
            continue
        price = row.get("price")
        if isinstance(price, (int, float)) and not isinstance(price, bool) and math.isfinite(price) and price > 0:
            return float(price)
        return None
    return None


def validate_market_consistency(text: str, market_rows: Iterable[Dict[str, Any]]) -> Tuple[bool, str]:
    btc_price = _find_btc_price(market_rows)
    if btc_price is None:
        return True, ""

    claims = extract_btc_price_claims(text)
    if not claims:
        return True, ""

    if _HARD_100K.search(text) and _BTC_MENTION.search(text) and btc_price < 90000:
        return False, f"market-mismatch btc_100k_claim live=${btc_price:,.0f}"

    for claim in claims:
        if abs(claim - btc_price) / btc_price > PRICE_CLAIM_TOLERANCE:
            return False, f"market-mismatch btc_claim=${claim:,.0f} live=${btc_price:,.0f}"

    return True, ""


def _count_keyword_hits(text: str, keywords: Iterable[str]) -> int:
    return sum(1 for keyword in keywords if keyword and keyword in text)


def _safe_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
        return 0
    return int(math.floor(value))


def evaluate_trend_candidate(
    text: str,
    keyword_hints: Iterable[str],
    metrics: Optional[Dict[str, Any]] = None,
    author: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    body = str(text or "").strip()
    lowered = body.lower()
    metrics = metrics or {}
    author = author or {}

    likes = _safe_int(metrics.get("like_count"))
    retweets = _safe_int(metrics.get("retweet_count"))
    replies = _safe_int(metrics.get("reply_count"))
    quotes = _safe_int(metrics.get("quote_count"))
    engagement_raw = likes + retweets * 2 + replies * 2 + quotes * 3

    keyword_hits = _count_keyword_hits(lowered, [hint.lower() for hint in keyword_hints])
    tech_hits = _count_keyword_hits(lowered, TECH_KEYWORDS)
    meme_hits = _count_keyword_hits(lowered, MEME_NOISE_KEYWORDS)
    cashtags = len(re.findall(r"\$[A-Za-z]{2,10}", body))
    urls = len(re.findall(r"https?://", body, re.I))

    followers = _safe_int(author.get("followers_count"))
    verified_boost = 0.8 if author.get("verified") else 0.0

    spam_like = any(pattern.search(body) for pattern in SPAM_PATTERNS)
    low_by_structure = len(body) < 35 or cashtags >= 5 or (urls >= 2 and tech_hits == 0)

    score = (
        math.log1p(engagement_raw) * 2.8
        + math.log10(followers + 10)
        + verified_boost
        + keyword_hits * 0.25
        + tech_hits * 0.55
        - meme_hits * 0.45
        - max(0, cashtags - 2) * 0.5
        - (0.8 if urls >= 2 else 0.0)
    )
    return {
        "score": round(score, 2),
        "engagement_raw": engagement_raw,
        "is_low_signal": spam_like or low_by_structure,
    }
