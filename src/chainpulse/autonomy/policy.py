from __future__ import annotations

import math
import random
from typing import Any, Dict, Optional

from .models import AdaptivePolicy
from .state import clamp


DEFAULT_DAILY_TARGET = 20

# Prefix of a gate rejection reason -> policy feedback bucket.
REASON_CODE_PREFIXES = [
    ("market-mismatch", "market-mismatch"),
    ("duplicate", "duplicate"),
    ("narrative-duplicate", "duplicate"),
    ("opening-repeat", "duplicate"),
    ("topic-diversity", "topic-diversity"),
    ("topic-density", "topic-density"),
    ("too-short", "too-short"),
    ("event-anchor", "evidence-contract"),
    ("evidence-anchor", "evidence-contract"),
    ("language-mismatch", "language-mismatch"),
    ("fallback", "fallback"),
]


def default_adaptive_policy() -> AdaptivePolicy:
    return AdaptivePolicy(
        post_duplicate_threshold=0.74,
        post_narrative_threshold=0.7,
        reply_duplicate_threshold=0.84,
        reply_narrative_threshold=0.78,
        min_trend_score=2.8,
        min_trend_engagement=4,
        min_source_trust=0.32,
        rationale="default",
    )


def build_adaptive_policy(
    target: int, today_count: int, timezone: str, store: Any, metrics: Optional[Dict[str, Any]] = None
) -> AdaptivePolicy:
    """Retune gate thresholds from quota progress and today's generation metrics."""
    policy = default_adaptive_policy()
    if metrics is None:
        metrics = store.get_today_post_generation_metrics(timezone)
    post_runs = int(metrics.get("post_runs", 0))
    fail_load = metrics.get("post_failures", 0) / post_runs if post_runs > 0 else 0.0
    progress = today_count / target if target > 0 else 1.0
    reasons = ["default"]

    if progress < 0.45:
        policy.min_trend_score -= 0.2
        policy.min_source_trust -= 0.03
        reasons.append("under-target")
    elif progress > 1.05:
        policy.post_duplicate_threshold -= 0.05
        policy.post_narrative_threshold -= 0.05
        policy.reply_duplicate_threshold -= 0.03
        policy.reply_narrative_threshold -= 0.03
        policy.min_trend_score += 0.35
        policy.min_trend_engagement += 1
        policy.min_source_trust += 0.05
        reasons.append("over-target")

    if metrics.get("fallback_rate", 0) >= 0.35 or fail_load >= 0.5:
        policy.min_trend_score -= 0.1
        reasons.append("high-fallback-or-fail")

    if (metrics.get("fail_reasons") or {}).get("duplicate", 0) >= 2:
        policy.post_duplicate_threshold -= 0.03
        policy.post_narrative_threshold -= 0.03
        policy.reply_duplicate_threshold -= 0.02
        policy.reply_narrative_threshold -= 0.02
        reasons.append("duplicate-heavy")

    policy.post_duplicate_threshold = clamp(policy.post_duplicate_threshold, 0.65, 0.86)
    policy.post_narrative_threshold = clamp(policy.post_narrative_threshold, 0.62, 0.84)
    policy.reply_duplicate_threshold = clamp(policy.reply_duplicate_threshold, 0.74, 0.9)
    policy.reply_narrative_threshold = clamp(policy.reply_narrative_threshold, 0.7, 0.86)
    policy.min_trend_score = clamp(policy.min_trend_score, 2.2, 4.2)
    policy.min_trend_engagement = int(math.floor(clamp(policy.min_trend_engagement, 3, 12)))
    policy.min_source_trust = clamp(policy.min_source_trust, 0.24, 0.55)
    policy.rationale = "+".join(reasons)
    return policy


def normalize_daily_target(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        value = DEFAULT_DAILY_TARGET
    return int(clamp(math.floor(value), 1, 100))


def random_int(minimum: int, maximum: int, rng: Optional[random.Random] = None) -> int:
    if maximum <= minimum:
        return minimum
    return (rng or random).randint(minimum, maximum)


def to_reason_code(reason: str) -> str:
    normalized = str(reason or "").strip().lower()
    if not normalized:
        return "unknown"
    for prefix, code in REASON_CODE_PREFIXES:
        if normalized.startswith(prefix):
            return code
    return "quality-gate"
