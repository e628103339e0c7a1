from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


TREND_LANES = ["protocol", "ecosystem", "regulation", "macro", "onchain", "market-structure"]
NARRATIVE_MODES = [
    "signal-pulse",
    "builder-note",
    "contrarian-check",
    "field-journal",
    "mythic-analogy",
]


@dataclass
class BudgetBucket:
    date_key: str
    read_requests: int = 0
    create_requests: int = 0
    est_read_cost_usd: float = 0.0
    est_create_cost_usd: float = 0.0
    est_total_cost_usd: float = 0.0
    counts_by_kind: Dict[str, int] = field(default_factory=dict)
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AdmissionDecision:
    allowed: bool
    projected_cost_usd: float
    remaining_requests: int
    today_request_count: int = 0
    today_read_requests: int = 0
    today_create_requests: int = 0
    block_reason: Optional[str] = None
    wait_seconds: Optional[int] = None


@dataclass
class AdaptivePolicy:
    post_duplicate_threshold: float
    post_narrative_threshold: float
    reply_duplicate_threshold: float
    reply_narrative_threshold: float
    min_trend_score: float
    min_trend_engagement: int
    min_source_trust: float
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrendEvent:
    id: str
    lane: str
    headline: str
    summary: str
    source: str
    trust: float
    freshness: float
    captured_at: str
    keywords: List[str] = field(default_factory=list)


@dataclass
class OnchainNutrient:
    id: str
    source: str
    category: str
    label: str
    value: str
    evidence: str = ""
    trust: float = 0.5
    freshness: float = 0.5
    captured_at: str = ""
    consistency_hint: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "OnchainNutrient":
        hint = raw.get("consistency_hint", raw.get("consistencyHint"))
        metadata = raw.get("metadata")
        return cls(
            id=str(raw.get("id") or ""),
            source=str(raw.get("source") or "news"),
            category=str(raw.get("category") or ""),
            label=str(raw.get("label") or ""),
            value=str(raw.get("value") if raw.get("value") is not None else ""),
            evidence=str(raw.get("evidence") or ""),
            trust=_as_float(raw.get("trust"), 0.5),
            freshness=_as_float(raw.get("freshness"), 0.5),
            captured_at=str(raw.get("captured_at") or raw.get("capturedAt") or ""),
            consistency_hint=_as_float(hint, 0.0) if hint is not None else None,
            metadata=metadata if isinstance(metadata, dict) else {},
        )


@dataclass
class OnchainEvidence:
    id: str
    lane: str
    nutrient_id: str
    source: str
    label: str
    value: str
    summary: str
    trust: float
    freshness: float
    captured_at: str
    digest_score: Optional[float] = None


@dataclass
class LaneUsage:
    total_posts: int = 0
    by_lane: Dict[str, int] = field(default_factory=dict)


@dataclass
class EventEvidencePlan:
    lane: str
    event: TrendEvent
    evidence: List[OnchainEvidence]
    lane_usage: LaneUsage
    lane_projected_ratio: float
    lane_quota_limited: bool


@dataclass
class NarrativePlan:
    lane: str
    mode: str
    opening_directive: str
    body_directive: str
    ending_directive: str
    banned_openers: List[str] = field(default_factory=list)


@dataclass
class DigestScore:
    trust: float
    freshness: float
    consistency: float
    total: float
    reason_codes: List[str] = field(default_factory=list)


@dataclass
class DigestRecord:
    nutrient: OnchainNutrient
    score: DigestScore
    accepted: bool
    xp_gain: int
    reason: str


@dataclass
class DigestResult:
    records: List[DigestRecord]
    intake_count: int
    accepted_count: int
    avg_digest_score: float
    xp_gain_total: int

    @property
    def accepted(self) -> List[DigestRecord]:
        return [record for record in self.records if record.accepted]


@dataclass
class AutonomyGovernorDecision:
    allow: bool
    level: str
    reasons: List[str] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RecentPost:
    id: str
    content: str
    kind: str
    created_at: str
    meta: Dict[str, Any] = field(default_factory=dict)


def _as_float(value: Any, fallback: float) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback
