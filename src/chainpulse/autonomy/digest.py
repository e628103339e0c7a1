from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .models import DigestRecord, DigestResult, DigestScore, OnchainNutrient
from .state import parse_iso, round_half_up, utc_now


DEFAULT_MIN_DIGEST_SCORE = 0.5


def _clamp(value: Any, minimum: float, maximum: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return minimum
    return min(maximum, max(minimum, float(value)))


def _normalize(text: Any) -> str:
    value = re.sub(r"[^\w\s]|_", " ", str(text or "").lower())
    return re.sub(r"\s+", " ", value).strip()


def nutrient_key(nutrient: OnchainNutrient) -> str:
    return "|".join([nutrient.source, nutrient.category, _normalize(nutrient.label), _normalize(nutrient.value)])


def resolve_freshness(nutrient: OnchainNutrient, now: datetime) -> float:
    from_payload = _clamp(nutrient.freshness, 0.05, 0.99)
    captured = parse_iso(nutrient.captured_at)
    if captured is None:
        return from_payload
    age_hours = max(0.0, (now - captured).total_seconds() / 3600)
    if age_hours <= 2:
        return from_payload
    decay = _clamp(1 - age_hours / 36, 0.15, 1)
    return round_half_up(from_payload * decay, 2)


def resolve_consistency(nutrient: OnchainNutrient, recent_ledger: List[Dict[str, Any]]) -> float:
    hint = nutrient.consistency_hint if nutrient.consistency_hint is not None else 0.66
    base = _clamp(hint, 0.15, 0.95)
    same = [
        row for row in recent_ledger
        if row.get("source") == nutrient.source and row.get("category") == nutrient.category
    ][-8:]
    if not same:
        return round_half_up(base, 2)

    avg_past = sum(float((row.get("digest_score") or {}).get("consistency", 0)) for row in same) / len(same)
    label = _normalize(nutrient.label)
    repeated = any(_normalize(row.get("label")) == label and row.get("accepted") for row in same)
    penalty = 0.08 if repeated else 0.0
    return round_half_up(_clamp((base + avg_past) / 2 - penalty, 0.15, 0.95), 2)


def compute_digest_score(
    nutrient: OnchainNutrient, recent_ledger: List[Dict[str, Any]], now: Optional[datetime] = None
) -> DigestScore:
    now = now or utc_now()
    trust = _clamp(nutrient.trust, 0.05, 0.99)
    freshness = resolve_freshness(nutrient, now)
    consistency = resolve_consistency(nutrient, recent_ledger)
    total = round_half_up(trust * 0.45 + freshness * 0.3 + consistency * 0.25, 2)

    codes: List[str] = []
    if trust < 0.45:
        codes.append("low-trust")
    if freshness < 0.45:
        codes.append("stale-signal")
    if consistency < 0.45:
        codes.append("low-consistency")
    if total >= 0.72:
        codes.append("high-quality")
    elif total >= 0.55:
        codes.append("medium-quality")
    else:
        codes.append("low-quality")

    return DigestScore(
        trust=round_half_up(trust, 2),
        freshness=round_half_up(freshness, 2),
        consistency=round_half_up(consistency, 2),
        total=total,
        reason_codes=codes,
    )


def convert_digest_to_xp(score: DigestScore, nutrient: OnchainNutrient) -> int:
    if score.total < 0.4:
        return 0
    source_bonus = {"onchain": 2, "market": 1}.get(nutrient.source, 0)
    importance = str(nutrient.metadata.get("importance") or "").lower()
    importance_bonus = {"high": 2, "medium": 1}.get(importance, 0)
    value = math.floor(score.total * 10 + source_bonus + importance_bonus + 0.5)
    return int(min(18, max(1, value)))


def _reject_reason(score: DigestScore) -> str:
    for code in ("low-trust", "stale-signal", "low-consistency"):
        if code in score.reason_codes:
            return code
    return "low-quality"


def digest_nutrients(
    nutrients: Iterable[OnchainNutrient],
    recent_ledger: List[Dict[str, Any]],
    min_digest_score: float = DEFAULT_MIN_DIGEST_SCORE,
    max_items: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DigestResult:
    """Score, dedupe and gate incoming nutrients.

    ``recent_ledger`` rows are the persisted ledger entries (source, category,
    label, accepted, digest_score) used for the consistency baseline.
    """
    items = list(nutrients)
    min_score = _clamp(min_digest_score, 0.2, 0.95)
    limit = int(min(64, max(1, math.floor(max_items if max_items is not None else len(items) or 1))))

    deduped: Dict[str, OnchainNutrient] = {}
    for nutrient in items:
        deduped.setdefault(nutrient_key(nutrient), nutrient)

    records: List[DigestRecord] = []
    for nutrient in list(deduped.values())[:limit]:
        score = compute_digest_score(nutrient, recent_ledger, now)
        accepted = score.total >= min_score
        records.append(DigestRecord(
            nutrient=nutrient,
            score=score,
            accepted=accepted,
            xp_gain=convert_digest_to_xp(score, nutrient) if accepted else 0,
            reason="" if accepted else _reject_reason(score),
        ))

    intake = len(records)
    avg = round_half_up(sum(r.score.total for r in records) / intake, 2) if intake else 0.0
    return DigestResult(
        records=records,
        intake_count=intake,
        accepted_count=sum(1 for r in records if r.accepted),
        avg_digest_score=avg,
        xp_gain_total=sum(r.xp_gain for r in records),
    )
