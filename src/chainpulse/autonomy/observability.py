from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Config
from .memory import TelemetryStore
from .models import AdaptivePolicy, BudgetBucket, LaneUsage
from .state import round_half_up, utc_now_iso


logger = logging.getLogger("chainpulse.autonomy")


def pick_top_fail_reasons(fail_reasons: Dict[str, int], max_items: int = 3) -> List[Dict[str, Any]]:
    rows = [{"reason": reason, "count": int(count)} for reason, count in (fail_reasons or {}).items()]
    rows.sort(key=lambda row: -row["count"])
    return rows[: max(1, max_items)]


def build_cycle_event(
    cfg: Config,
    store: TelemetryStore,
    target: int,
    executed: int,
    remaining: int,
    policy: AdaptivePolicy,
    cache_metrics: Optional[Dict[str, int]] = None,
    budget: Optional[BudgetBucket] = None,
    lane_usage: Optional[LaneUsage] = None,
) -> Dict[str, Any]:
    tz = cfg.timezone
    metrics = store.get_today_post_generation_metrics(tz)
    progress = (target - remaining) / target if target > 0 else 1.0
    event: Dict[str, Any] = {
        "type": "quota_cycle",
        "timestamp": utc_now_iso(),
        "timezone": tz,
        "target": target,
        "executed": executed,
        "remaining": remaining,
        "progress_ratio": round_half_up(progress, 3),
        "activity": {
            "today": store.get_today_activity_count(tz),
            "posts": store.get_today_post_count(tz),
            "replies": store.get_today_reply_count(tz),
        },
        "post_generation": {
            "runs": metrics["post_runs"],
            "successes": metrics["post_successes"],
            "failures": metrics["post_failures"],
            "retry_count_total": metrics["total_retries"],
            "retry_count_avg": metrics["avg_retries"],
            "fallback_rate": metrics["fallback_rate"],
            "fail_reasons_top": pick_top_fail_reasons(metrics["fail_reasons"]),
        },
        "policy": {
            "rationale": policy.rationale,
            "min_trend_score": round_half_up(policy.min_trend_score, 2),
            "min_trend_engagement": policy.min_trend_engagement,
            "min_source_trust": round_half_up(policy.min_source_trust, 2),
            "post_duplicate_threshold": round_half_up(policy.post_duplicate_threshold, 2),
            "reply_duplicate_threshold": round_half_up(policy.reply_duplicate_threshold, 2),
        },
        "runtime": {
            "post_language": cfg.post_language,
            "reply_language_mode": cfg.reply_language_mode,
            "post_min_interval_minutes": cfg.post_min_interval_minutes,
            "max_posts_per_cycle": cfg.max_posts_per_cycle,
            "min_news_source_trust": round_half_up(cfg.min_news_source_trust, 2),
            "min_trend_tweet_source_trust": round_half_up(cfg.min_trend_tweet_source_trust, 2),
            "min_trend_tweet_score": round_half_up(cfg.min_trend_tweet_score, 2),
            "min_trend_tweet_engagement": cfg.min_trend_tweet_engagement,
            "topic_max_same_tag_24h": cfg.topic_max_same_tag_24h,
            "topic_block_consecutive_tag": cfg.topic_block_consecutive_tag,
        },
    }
    if budget is not None:
        event["budget"] = {
            "date_key": budget.date_key,
            "read_requests": budget.read_requests,
            "create_requests": budget.create_requests,
            "est_total_cost_usd": budget.est_total_cost_usd,
        }
    if lane_usage is not None:
        event["lane_usage"] = {"total_posts": lane_usage.total_posts, "by_lane": dict(lane_usage.by_lane)}
    if cache_metrics is not None:
        event["cache"] = dict(cache_metrics)
    return event


def append_event(path: Optional[Path], event: Dict[str, Any]) -> bool:
    if path is None:
        return False
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event, ensure_ascii=True) + "\n")
    except OSError as e:
        logger.warning("Metric event write failed path=%s error=%s", path, e)
        return False
    return True


def emit_cycle_observability(cfg: Config, event: Dict[str, Any]) -> None:
    if not cfg.observability_enabled:
        return
    if cfg.observability_stdout_json:
        print(f"[METRIC] {json.dumps(event, ensure_ascii=True)}", flush=True)
    append_event(cfg.observability_event_log_path, event)
