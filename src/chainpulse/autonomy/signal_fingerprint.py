from __future__ import annotations

import hashlib
import re
from typing import Dict, List, Optional

from .fear_greed import fear_greed_regime


MARKET_PRIORITY = ["BTC", "ETH", "SOL"]
TOKEN_STOP_WORDS = {
    "today", "market", "markets", "news", "crypto", "coin", "coins", "blockchain",
    "트렌드", "시장", "뉴스", "코인",
}

_MARKET_ROW = re.compile(r"^-+\s*([A-Z0-9]{2,10})\s+\$[\d,]+(?:\.\d+)?\s+\(([+-]?\d+(?:\.\d+)?)%\)")
_ONCHAIN_ROW = re.compile(r"^-+\s*([^:]+):\s*([^|]+)(?:\||$)")
_FOCUS_WORD = re.compile(r"[a-z][a-z0-9-]{2,}|[가-힣]{2,}")


def build_signal_fingerprint(
    market_context: str,
    onchain_context: str,
    trend_summary: Optional[str] = None,
    focus_headline: Optional[str] = None,
) -> Dict[str, str]:
    """Bucket the qualitative market regime and hash it.

    Two contexts that differ only in exact numbers inside the same buckets
    produce the same ``key``.
    """
    signature = "|".join([
        _fear_greed_part(market_context or ""),
        _market_part(market_context or ""),
        _onchain_part(onchain_context or ""),
        _focus_part(focus_headline, trend_summary),
    ])
    key = hashlib.sha1(signature.encode("utf-8")).hexdigest()[:16]
    return {"key": key, "signature": signature}


def _fear_greed_part(market_context: str) -> str:
    match = re.search(r"FearGreed\s+(\d{1,3})", market_context, re.I)
    if not match:
        return "fg:na"
    return f"fg:{fear_greed_regime(int(match.group(1)))}"


def change_bucket(change: float) -> str:
    if change >= 3:
        return "up-strong"
    if change >= 0.5:
        return "up-mild"
    if change <= -3:
        return "down-strong"
    if change <= -0.5:
        return "down-mild"
    return "flat"


def _market_part(market_context: str) -> str:
    parsed: List[Dict[str, str]] = []
    for line in market_context.split("\n"):
        row = line.strip()
        if not row.startswith("- "):
            continue
        match = _MARKET_ROW.match(row)
        if not match:
            continue
        parsed.append({"symbol": match.group(1).upper(), "bucket": change_bucket(float(match.group(2)))})
    if not parsed:
        return "market:na"

    prioritized = [row for symbol in MARKET_PRIORITY for row in parsed if row["symbol"] == symbol]
    prioritized += [row for row in parsed if row["symbol"] not in MARKET_PRIORITY]
    return "market:" + ",".join(f"{row['symbol']}-{row['bucket']}" for row in prioritized[:3])


def _onchain_part(onchain_context: str) -> str:
    rows = [line.strip() for line in onchain_context.split("\n")]
    rows = [row for row in rows if row.startswith("- ") and ":" in row][:6]
    if not rows:
        return "onchain:na"

    signals: List[str] = []
    for row in rows:
        match = _ONCHAIN_ROW.match(row)
        if not match:
            continue
        signals.append(f"{_normalize_label(match.group(1))}-{_value_bucket(match.group(2))}")
    if not signals:
        return "onchain:na"
    return "onchain:" + ",".join(signals[:4])


def _focus_part(focus_headline: Optional[str], trend_summary: Optional[str]) -> str:
    candidate = str(focus_headline or trend_summary or "").lower()
    candidate = re.sub(r"https?://\S+", " ", candidate)
    candidate = re.sub(r"[^\w\s$-]|_", " ", candidate)
    candidate = re.sub(r"\s+", " ", candidate).strip()
    if not candidate:
        return "focus:na"

    words = [word for word in _FOCUS_WORD.findall(candidate) if word not in TOKEN_STOP_WORDS][:8]
    unique: List[str] = []
    for word in words:
        if word not in unique:
            unique.append(word)
    if not unique:
        return "focus:na"
    return "focus:" + ",".join(unique[:2])


def _normalize_label(label: str) -> str:
    lower = label.strip().lower()
    if re.search(r"수수료|fee", lower):
        return "fee"
    if re.search(r"멤풀|mempool", lower):
        return "mempool"
    if re.search(r"순유입|netflow|exchange", lower):
        return "exchange"
    if re.search(r"고래|whale|대형", lower):
        return "whale"
    if re.search(r"스테이블|stable", lower):
        return "stable"
    if "tvl" in lower:
        return "tvl"
    return re.sub(r"\s+", "-", re.sub(r"[^\w\s]|_", " ", lower))[:16]


def _value_bucket(value: str) -> str:
    text = re.sub(r"\s+", " ", value.lower()).strip()
    if not text:
        return "na"

    sat = re.search(r"(\d+(?:\.\d+)?)\s*sat/vb", text)
    if sat:
        rate = float(sat.group(1))
        if rate <= 10:
            return "fee-low"
        if rate <= 30:
            return "fee-mid"
        return "fee-high"

    tx = re.search(r"([\d,]+)\s*tx", text)
    if tx:
        digits = tx.group(1).replace(",", "")
        if not digits:
            return "tx-na"
        count = int(digits)
        if count < 80000:
            return "tx-low"
        if count < 160000:
            return "tx-mid"
        return "tx-high"

    pct = re.search(r"([+-]?\d+(?:\.\d+)?)\s*%", text)
    if pct:
        change = float(pct.group(1))
        magnitude = abs(change)
        scale = "high" if magnitude >= 25 else "mid" if magnitude >= 5 else "low"
        return f"{'up' if change >= 0 else 'down'}-{scale}"

    usd = re.search(r"([+-]?)\$(\d+(?:\.\d+)?)([kmbt])?", text)
    if usd:
        sign = "down" if usd.group(1) == "-" else "up"
        unit = usd.group(3) or ""
        if unit in {"t", "b"}:
            return f"{sign}-usd-large"
        if unit == "m":
            return f"{sign}-usd-mid"
        return f"{sign}-usd-small"

    compact = re.sub(r"\d[\d,]*(?:\.\d+)?", " num ", text)
    compact = re.sub(r"[^\w\s-]|_", " ", compact)
    return re.sub(r"\s+", "-", compact)[:18] or "na"
