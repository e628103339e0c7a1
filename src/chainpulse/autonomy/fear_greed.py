from __future__ import annotations

import re
from typing import Any, Dict, Optional


_VALUE_PATTERNS = [
    re.compile(r"FearGreed\s+(\d{1,3})", re.I),
    re.compile(r"fear\s*/?\s*greed[^0-9]{0,12}(\d{1,3})", re.I),
    re.compile(r"\bFGI[^0-9]{0,8}(\d{1,3})\b", re.I),
    re.compile(r"(?:공포|탐욕)\s*지수[^0-9]{0,8}(\d{1,3})", re.I),
]
_LABEL_PATTERN = re.compile(r"FearGreed\s+\d{1,3}\s*\(([^)]+)\)", re.I)


def fear_greed_regime(value: int) -> str:
    if value < 20:
        return "extreme-fear"
    if value < 40:
        return "fear"
    if value < 60:
        return "neutral"
    if value < 80:
        return "greed"
    return "extreme-greed"


def parse_fear_greed_point(market_context: str) -> Optional[Dict[str, Any]]:
    source = str(market_context or "")
    match = None
    for pattern in _VALUE_PATTERNS:
        match = pattern.search(source)
        if match:
            break
    if not match:
        return None
    value = max(0, min(100, int(match.group(1))))
    label_match = _LABEL_PATTERN.search(source)
    point: Dict[str, Any] = {"value": value}
    if label_match and label_match.group(1).strip():
        point["label"] = label_match.group(1).strip()
    return point


def detect_fear_greed_event(
    current: Optional[Dict[str, Any]],
    previous: Optional[Dict[str, Any]],
    min_delta: int,
    require_regime_change: bool,
) -> Dict[str, Any]:
    """Classify a fear/greed reading against the last remembered one."""
    if not current:
        return {"is_event": False, "reason": "unavailable"}
    if not previous:
        return {"is_event": True, "reason": "first-sample", "current": current}

    delta = abs(int(current["value"]) - int(previous["value"]))
    regime_changed = fear_greed_regime(int(current["value"])) != fear_greed_regime(int(previous["value"]))
    base = {"current": current, "previous": previous, "delta": delta}

    if require_regime_change:
        if regime_changed:
            return {"is_event": True, "reason": "regime-change", **base}
        return {"is_event": False, "reason": "regime-required", **base}
    if delta >= max(1, int(min_delta)):
        return {"is_event": True, "reason": "delta-change", **base}
    return {"is_event": False, "reason": "no-change", **base}
