from __future__ import annotations

import re
from typing import Any, Dict, List

from .content_guard import sanitize
from .drafting import detect_language
from .models import AutonomyGovernorDecision, BudgetBucket, EventEvidencePlan
from .state import round_half_up


RISK_SIGNAL_PATTERNS = [
    re.compile(r"hack|exploit|breach|rug|depeg|liquidation|bankrun|sanction|lawsuit|fraud|outage", re.I),
    re.compile(r"해킹|익스플로잇|디페그|청산|런|제재|소송|사기|중단|사고", re.I),
]
ASSERTIVE_TONE_PATTERNS = [
    re.compile(r"100%|확정|무조건|반드시|지금\s*매수|all\s*in|guaranteed|sure\s*win|certainly", re.I),
]


def evidence_source_flags(plan: EventEvidencePlan) -> Dict[str, Any]:
    sources = {item.source for item in plan.evidence}
    return {
        "has_onchain_evidence": "onchain" in sources,
        "has_cross_source_evidence": len(sources) >= 2,
        "evidence_source_diversity": len(sources),
    }


def compute_risk_score(lines: List[str]) -> int:
    joined = " ".join(sanitize(line) for line in lines).strip()
    if not joined:
        return 0
    score = 0
    for pattern in RISK_SIGNAL_PATTERNS:
        score += len(pattern.findall(joined)) * 2
    return max(0, min(10, score))


def has_assertive_tone(text: str) -> bool:
    return any(pattern.search(text) for pattern in ASSERTIVE_TONE_PATTERNS)


def evaluate_autonomy_governor(
    post_text: str,
    trend_summary: str,
    plan: EventEvidencePlan,
    usage: BudgetBucket,
    cfg: Any,
) -> AutonomyGovernorDecision:
    """Last check before a post is dispatched.

    Any block rule forces ``block``; high risk without assertive phrasing and
    single-source evidence only downgrade an otherwise clean decision to ``warn``.
    """
    reasons: List[str] = []
    level = "allow"

    projected = round_half_up(usage.est_total_cost_usd + cfg.x_api_estimated_create_cost_usd, 3)
    utilization = projected / cfg.x_api_daily_max_usd if cfg.x_api_daily_max_usd > 0 else 0.0
    if cfg.x_api_cost_guard_enabled and utilization > cfg.autonomy_max_budget_utilization:
        reasons.append(
            f"budget_utilization_exceeded({round_half_up(utilization, 2)} > "
            f"{round_half_up(cfg.autonomy_max_budget_utilization, 2)})"
        )
        level = "block"

    flags = evidence_source_flags(plan)
    if cfg.require_onchain_evidence and not flags["has_onchain_evidence"]:
        reasons.append("missing_onchain_evidence")
        level = "block"

    if cfg.require_cross_source_evidence and not flags["has_cross_source_evidence"]:
        reasons.append("missing_cross_source_evidence")
        level = "block"

    normalized = sanitize(post_text)
    language_ok = not cfg.enforce_korean_posts or detect_language(normalized) == "ko"
    if not language_ok:
        reasons.append("post_language_not_korean")
        level = "block"

    risk_score = compute_risk_score([trend_summary, plan.event.headline, normalized])
    assertive = has_assertive_tone(normalized)
    if risk_score >= cfg.autonomy_risk_block_score and assertive:
        reasons.append(f"risk_assertive_block(score={risk_score})")
        level = "block"
    elif risk_score >= cfg.autonomy_risk_block_score and level != "block":
        reasons.append(f"risk_high_watch(score={risk_score})")
        level = "warn"

    if flags["evidence_source_diversity"] <= 1 and level == "allow":
        reasons.append("evidence_source_diversity_low")
        level = "warn"

    return AutonomyGovernorDecision(
        allow=level != "block",
        level=level,
        reasons=reasons,
        diagnostics={
            "budget_utilization": round_half_up(utilization, 2),
            "projected_cost_usd": projected,
            "risk_score": risk_score,
            "language_ok": language_ok,
            "assertive_tone": assertive,
            **flags,
        },
    )
