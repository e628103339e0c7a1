from __future__ import annotations

import logging
import math
import random
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..platform_client import PlatformAuthError
from .budget_ledger import BudgetLedger, create_policy, read_policy
from .config import Config
from .content_guard import sanitize
from .digest import digest_nutrients
from .discovery import build_search_query, rank_trend_candidates
from .drafting import GenerationError, detect_language
from .event_evidence import (
    build_event_evidence_fallback_post,
    build_onchain_evidence,
    build_trend_events,
    compute_lane_usage,
    plan_event_evidence_act,
    validate_event_evidence_contract,
)
from .fear_greed import detect_fear_greed_event, parse_fear_greed_point
from .governor import evaluate_autonomy_governor
from .memory import TelemetryStore
from .models import AdaptivePolicy, DigestResult, EventEvidencePlan, NarrativePlan, RecentPost
from .narrative import build_narrative_plan, validate_narrative_novelty
from .observability import build_cycle_event, emit_cycle_observability
from .policy import build_adaptive_policy, default_adaptive_policy, normalize_daily_target, random_int, to_reason_code
from .quality import ContentQualityRules, evaluate_post_quality, evaluate_reply_quality, resolve_content_quality_rules
from .signal_fingerprint import build_signal_fingerprint
from .signals import SignalSource, TrendContext, format_market_anchors, pick_post_angle
from .state import clamp, resolve_timezone, utc_now


CYCLE_PHASES = ("init", "digest_ingest", "mention_pass", "action_loop", "finalize")
TREND_CANDIDATE_COUNT = 24
NUTRIENT_LEDGER_WINDOW = 120

logger = logging.getLogger("chainpulse.autonomy")


def _empty_cache_metrics() -> Dict[str, int]:
    return {
        "trend_context_hits": 0,
        "trend_context_misses": 0,
        "trend_candidates_hits": 0,
        "trend_candidates_misses": 0,
    }


@dataclass
class CycleCache:
    """Per-cycle memo of the trend context and candidate searches."""

    trend: Optional[TrendContext] = None
    trend_failed: bool = False
    candidates: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    metrics: Dict[str, int] = field(default_factory=_empty_cache_metrics)


@dataclass
class CycleResult:
    target: int
    executed: int
    remaining: int
    posts: int = 0
    replies: int = 0
    digest_gated: bool = False
    event: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _PostContext:
    trend: TrendContext
    plan: EventEvidencePlan
    narrative: NarrativePlan
    recent_posts: List[RecentPost]
    own_texts: List[str]
    rules: ContentQualityRules
    required_tokens: List[str]
    fear_greed_event: Dict[str, Any]


class CycleScheduler:
    """Runs quota cycles: digest intake, mention replies, then a bounded
    post/reply action loop, ending with one observability event.

    Every collaborator is injected. ``now`` and ``sleep`` let tests drive the
    loop without wall-clock waits.
    """

    def __init__(
        self,
        cfg: Config,
        store: TelemetryStore,
        ledger: BudgetLedger,
        signals: SignalSource,
        generator: Any,
        client: Any = None,
        now: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.ledger = ledger
        self.signals = signals
        self.generator = generator
        self.client = client
        self.now = now or utc_now
        self.sleep = sleep or time.sleep
        self.rng = rng or random.Random()
        self.phase = "idle"
        self._dry_seq = 0

    # cycle

    def run_cycle(self) -> CycleResult:
        cfg = self.cfg
        tz = cfg.timezone
        target = normalize_daily_target(cfg.daily_target)
        max_actions = int(clamp(cfg.max_actions_per_cycle, 1, 10))
        cache = CycleCache()

        self._enter("init")
        remaining = target - self.store.get_today_activity_count(tz)
        if remaining <= 0:
            logger.info("Quota met target=%s", target)
            return self._finalize(cache, target, 0, 0, default_adaptive_policy())

        policy = build_adaptive_policy(target, target - remaining, tz, self.store)
        logger.info("Quota progress done=%s target=%s max_actions=%s", target - remaining, target, max_actions)
        logger.info(
            "Policy rationale=%s post_dup=%.2f reply_dup=%.2f min_trend_score=%.2f min_source_trust=%.2f",
            policy.rationale,
            policy.post_duplicate_threshold,
            policy.reply_duplicate_threshold,
            policy.min_trend_score,
            policy.min_source_trust,
        )

        self._enter("digest_ingest")
        digest = self._digest_ingest(cache)
        digest_gated = digest.accepted_count == 0
        if digest_gated:
            logger.info("Digest gate closed intake=%s accepted=0 proactive_actions=suppressed", digest.intake_count)

        self._enter("mention_pass")
        mention_budget = min(remaining, max(1, max_actions // 2))
        replies = self._mention_pass(mention_budget, policy, cache)
        executed = replies
        remaining = target - self.store.get_today_activity_count(tz)

        self._enter("action_loop")
        posts = 0
        post_goal = max(3, int(math.floor(target * 0.25)))
        while not digest_gated and executed < max_actions and remaining > 0:
            before = executed
            today_posts = self.store.get_today_post_count(tz)
            can_post = posts < cfg.max_posts_per_cycle
            prefer_post = can_post and today_posts < post_goal and executed % 2 == 0

            if prefer_post:
                if self._try_post(policy, cache, digest):
                    executed += 1
                    posts += 1
            else:
                replied = self._try_reply(policy, cache)
                executed += replied
                replies += replied

            if executed == before:
                if prefer_post:
                    replied = self._try_reply(policy, cache)
                    executed += replied
                    replies += replied
                elif can_post and self._try_post(policy, cache, digest):
                    executed += 1
                    posts += 1

            if executed == before:
                logger.info("Quota carry-forward remaining=%s reason=no-action-possible", remaining)
                break
            remaining = target - self.store.get_today_activity_count(tz)

        return self._finalize(cache, target, executed, remaining, policy, posts, replies, digest_gated)

    def _enter(self, phase: str) -> None:
        self.phase = phase
        logger.debug("Cycle phase=%s", phase)

    def _finalize(
        self,
        cache: CycleCache,
        target: int,
        executed: int,
        remaining: int,
        policy: AdaptivePolicy,
        posts: int = 0,
        replies: int = 0,
        digest_gated: bool = False,
    ) -> CycleResult:
        self._enter("finalize")
        tz = self.cfg.timezone
        remaining = max(0, remaining)
        event = build_cycle_event(
            self.cfg,
            self.store,
            target,
            executed,
            remaining,
            policy,
            cache_metrics=cache.metrics,
            budget=self.ledger.get_today_usage(tz),
            lane_usage=compute_lane_usage(self.store.get_recent_posts(40, "post")),
        )
        emit_cycle_observability(self.cfg, event)
        logger.debug("Cycle cache metrics=%s", cache.metrics)
        self.store.commit()
        return CycleResult(
            target=target,
            executed=executed,
            remaining=remaining,
            posts=posts,
            replies=replies,
            digest_gated=digest_gated,
            event=event,
        )

    # collaborators

    def _trend_context(self, cache: CycleCache) -> Optional[TrendContext]:
        if cache.trend is not None or cache.trend_failed:
            cache.metrics["trend_context_hits"] += 1
            return cache.trend
        cache.metrics["trend_context_misses"] += 1
        try:
            cache.trend = self.signals.collect_trend_context(
                self.store, self.cfg.min_news_source_trust, self.cfg.seed_keywords
            )
        except Exception as e:
            logger.warning("Signal feed unavailable error=%s", e)
            cache.trend_failed = True
        return cache.trend

    def _digest_ingest(self, cache: CycleCache) -> DigestResult:
        trend = self._trend_context(cache)
        nutrients = trend.nutrients if trend is not None else []
        result = digest_nutrients(
            nutrients,
            self.store.get_recent_nutrient_ledger(NUTRIENT_LEDGER_WINDOW),
            min_digest_score=self.cfg.min_digest_score,
            max_items=self.cfg.digest_max_items,
            now=self.now(),
        )
        if result.records:
            self.store.record_nutrient_batch_intake(result.records)
        logger.info(
            "Digest intake=%s accepted=%s avg_score=%.2f xp=%s",
            result.intake_count,
            result.accepted_count,
            result.avg_digest_score,
            result.xp_gain_total,
        )
        return result

    def _read_admitted(self, kind: str, min_interval_minutes: int) -> bool:
        cfg = self.cfg
        policy = read_policy(cfg, kind, min_interval_minutes)
        decision = self.ledger.check_read_allowance(policy)
        if not decision.allowed:
            logger.info(
                "Budget blocked kind=%s reason=%s wait_seconds=%s",
                kind,
                decision.block_reason,
                decision.wait_seconds,
            )
            return False
        usage = self.ledger.record_read(policy)
        logger.info(
            "Budget read=%s/%s total_est=$%.3f/$%.2f kind=%s",
            usage.read_requests,
            cfg.x_api_daily_read_request_limit,
            usage.est_total_cost_usd,
            cfg.x_api_daily_max_usd,
            kind,
        )
        return True

    def _dispatch(self, kind: str, text: str, reply_to: Optional[str] = None) -> Optional[str]:
        cfg = self.cfg
        if cfg.dry_run:
            self._dry_seq += 1
            dry_id = f"dry-{kind.split(':')[0]}-{int(self.now().timestamp())}-{self._dry_seq}"
            logger.info("Dry run kind=%s id=%s reply_to=%s text=%s", kind, dry_id, reply_to, text)
            return dry_id

        policy = create_policy(cfg, kind)
        decision = self.ledger.check_create_allowance(policy)
        if not decision.allowed:
            logger.info(
                "Budget blocked kind=%s reason=%s wait_seconds=%s",
                kind,
                decision.block_reason,
                decision.wait_seconds,
            )
            return None
        usage = self.ledger.record_create(policy)
        logger.info(
            "Budget create=%s/%s total_est=$%.3f/$%.2f kind=%s",
            usage.create_requests,
            cfg.x_api_daily_create_request_limit,
            usage.est_total_cost_usd,
            cfg.x_api_daily_max_usd,
            kind,
        )
        try:
            if reply_to:
                created = self.client.create_reply(text, reply_to)
            else:
                created = self.client.create_post(text)
        except PlatformAuthError:
            raise
        except Exception as e:
            logger.warning("Dispatch failed kind=%s error=%s", kind, e)
            return None
        return created or None

    def _reply_language(self, text: str) -> str:
        mode = self.cfg.reply_language_mode
        if mode in {"ko", "en"}:
            return mode
        return detect_language(text)

    def _draft_reply(self, text: str, author: str, trend: Optional[TrendContext], language: str) -> Optional[str]:
        summary = trend.summary if trend is not None else ""
        anchors = format_market_anchors(trend.market_rows if trend is not None else [])
        try:
            reply = self.generator.draft_reply(text, author, summary, anchors, language)
        except GenerationError as e:
            logger.warning("Reply generation failed error=%s", e)
            return None
        if not reply or len(reply) < 5:
            return None
        if detect_language(reply) != language:
            rewritten = self.generator.rewrite_language(reply, language, 180)
            if rewritten:
                reply = rewritten
        return sanitize(reply)

    # mentions

    def _mention_pass(self, budget: int, policy: AdaptivePolicy, cache: CycleCache) -> int:
        if budget <= 0 or self.client is None:
            return 0
        if not self._read_admitted("mentions", self.cfg.mention_read_min_interval_minutes):
            return 0
        try:
            mentions = self.client.get_mentions(since_id=self.store.get_last_mention_id())
        except PlatformAuthError:
            raise
        except Exception as e:
            logger.warning("Engage mention read failed error=%s", e)
            return 0
        if not mentions:
            logger.info("Engage mentions=0")
            return 0

        trend = self._trend_context(cache)
        market_rows = trend.market_rows if trend is not None else []
        recent_reply_texts = self.store.get_recent_own_texts(50, "reply")
        own_texts = self.store.get_recent_own_texts(20)
        replied = 0
        # Oldest first; the cursor only moves past mentions that need no further action.
        for mention in reversed(mentions):
            if replied >= budget:
                break
            mention_id = str(mention.get("id") or "")
            if not mention_id:
                continue
            cleaned = re.sub(r"@\w+", "", str(mention.get("text") or "")).strip()
            if self.store.has_replied_to(mention_id) or not cleaned:
                self.store.set_last_mention_id(mention_id)
                continue
            author = (mention.get("author") or {}).get("username") or ""
            reply = self._draft_reply(cleaned, author, trend, self._reply_language(cleaned))
            if not reply:
                logger.info("Engage mention pending id=%s reason=empty-draft", mention_id)
                break
            ok, reason = evaluate_reply_quality(reply, market_rows, recent_reply_texts, own_texts, policy)
            if not ok:
                logger.info("Engage mention pending id=%s reason=%s", mention_id, reason)
                break
            reply_id = self._dispatch("reply:mention", reply, mention_id)
            if not reply_id:
                logger.info("Engage mention pending id=%s reason=dispatch-blocked", mention_id)
                break
            self.store.mark_replied(mention_id)
            self.store.save_post(reply_id, reply, "reply", {"target_id": mention_id, "source": "mention"})
            self.store.set_last_mention_id(mention_id)
            recent_reply_texts.append(reply)
            replied += 1
            logger.info("Reply success id=%s target=%s source=mention", reply_id, mention_id)
        return replied

    # proactive replies

    def _trend_candidates(self, trend: TrendContext, cache: CycleCache) -> List[Dict[str, Any]]:
        cfg = self.cfg
        query = build_search_query(trend.keywords)
        key = "|".join([
            query,
            str(TREND_CANDIDATE_COUNT),
            f"{cfg.min_trend_tweet_source_trust:.2f}",
            f"{cfg.min_trend_tweet_score:.2f}",
            str(cfg.min_trend_tweet_engagement),
        ])
        if key in cache.candidates:
            cache.metrics["trend_candidates_hits"] += 1
            return cache.candidates[key]
        cache.metrics["trend_candidates_misses"] += 1
        if self.client is None:
            return []
        if not self._read_admitted("trend-search", cfg.trend_read_min_interval_minutes):
            return []
        try:
            posts = self.client.search_recent(query, max_results=TREND_CANDIDATE_COUNT)
        except PlatformAuthError:
            raise
        except Exception as e:
            logger.warning("Engage trend search failed error=%s", e)
            posts = []
        ranked = rank_trend_candidates(
            posts,
            trend.keywords,
            self.store,
            cfg.min_trend_tweet_source_trust,
            cfg.min_trend_tweet_score,
            cfg.min_trend_tweet_engagement,
            max_results=TREND_CANDIDATE_COUNT,
        )
        cache.candidates[key] = ranked
        return ranked

    def _try_reply(self, policy: AdaptivePolicy, cache: CycleCache, goal: int = 1) -> int:
        trend = self._trend_context(cache)
        if trend is None:
            return 0
        candidates = self._trend_candidates(trend, cache)
        if not candidates:
            logger.info("Engage candidates=0")
            return 0

        recent_reply_texts = self.store.get_recent_own_texts(50, "reply")
        own_texts = self.store.get_recent_own_texts(20)
        trust_updates: List[Tuple[str, float, float]] = []
        replied = 0
        try:
            for candidate in candidates:
                if replied >= goal:
                    break
                text = str(candidate.get("text") or "")
                target_id = str(candidate.get("id") or "")
                source_key = candidate["source_key"]
                source_trust = candidate["source_trust"]
                score = candidate["trend_score"]
                engagement = candidate["trend_engagement"]

                if len(text) < 30:
                    continue
                if 0 < score < policy.min_trend_score:
                    continue
                if 0 < engagement < policy.min_trend_engagement:
                    continue
                if source_trust < policy.min_source_trust:
                    trust_updates.append((source_key, -0.004, source_trust))
                    continue
                if text.startswith("RT @") or text.startswith("@"):
                    continue
                if not target_id or self.store.has_replied_to(target_id):
                    continue

                author = (candidate.get("author") or {}).get("username") or ""
                reply = self._draft_reply(text, author, trend, self._reply_language(text))
                if not reply:
                    continue
                ok, reason = evaluate_reply_quality(reply, trend.market_rows, recent_reply_texts, own_texts, policy)
                if not ok:
                    logger.info("Engage quality gate failed target=%s reason=%s", target_id, reason)
                    trust_updates.append((source_key, -0.01, source_trust))
                    continue

                reply_id = self._dispatch("reply:engagement", reply, target_id)
                if not reply_id:
                    break
                self.store.mark_replied(target_id)
                self.store.save_post(reply_id, reply, "reply", {"target_id": target_id, "source_key": source_key})
                trust_updates.append((source_key, 0.015, source_trust))
                recent_reply_texts.append(reply)
                replied += 1
                logger.info("Reply success id=%s target=%s score=%.2f", reply_id, target_id, score)
        finally:
            if trust_updates:
                self.store.apply_source_trust_delta_batch(trust_updates)
        return replied

    # posts

    def _gate_post(self, text: str, ctx: _PostContext, policy: AdaptivePolicy) -> str:
        ok, reason = evaluate_post_quality(
            text,
            ctx.trend.market_rows,
            ctx.recent_posts,
            ctx.own_texts,
            policy,
            rules=ctx.rules,
            required_trend_tokens=ctx.required_tokens,
            fear_greed_event=ctx.fear_greed_event,
            now=self.now(),
        )
        if not ok:
            return reason
        contract = validate_event_evidence_contract(text, ctx.plan)
        if not contract["ok"]:
            return contract["reason"]
        ok, reason = validate_narrative_novelty(text, ctx.recent_posts, ctx.narrative)
        if not ok:
            return reason
        if detect_language(text) != self.cfg.post_language:
            return "language-mismatch"
        return ""

    def _post_interval_open(self) -> bool:
        minimum = self.cfg.post_min_interval_minutes
        last = self.store.get_last_post_at("post")
        if minimum <= 0 or last is None:
            return True
        minutes = (self.now() - last).total_seconds() / 60
        if 0 <= minutes < minimum:
            logger.info("Post skipped reason=min-interval minutes_since_last=%s required=%s", int(minutes), minimum)
            return False
        return True

    def _try_post(self, policy: AdaptivePolicy, cache: CycleCache, digest: DigestResult) -> bool:
        cfg = self.cfg
        tz = cfg.timezone
        if not self._post_interval_open():
            return False
        if digest.accepted_count == 0:
            logger.info("Post skipped reason=digest-gate")
            return False
        trend = self._trend_context(cache)
        if trend is None:
            logger.info("Post skipped reason=no-signal")
            return False

        recent_posts = self.store.get_recent_posts(120, "post")
        nutrients = [
            replace(record.nutrient, metadata={**record.nutrient.metadata, "digest_score": record.score.total})
            for record in digest.accepted
        ]
        events = build_trend_events(trend.news_rows, self.now().isoformat())
        evidence = build_onchain_evidence(nutrients, cfg.evidence_max_items)
        plan = plan_event_evidence_act(events, evidence, recent_posts)
        if plan is None:
            logger.info("Post skipped reason=no-plan events=%s evidence=%s", len(events), len(evidence))
            return False
        if plan.lane_quota_limited:
            logger.info("Post lane quota limited lane=%s projected_ratio=%s", plan.lane, plan.lane_projected_ratio)

        narrative = build_narrative_plan(plan, recent_posts, cfg.post_language)
        fingerprint = build_signal_fingerprint(
            trend.market_context, trend.onchain_context, trend.summary, plan.event.headline
        )
        window = cfg.signal_fingerprint_window
        if window > 0 and fingerprint["key"] in self.store.get_recent_signal_fingerprints(window):
            logger.info("Post skipped reason=same-signal-regime fingerprint=%s", fingerprint["key"])
            return False

        fear_greed_point = parse_fear_greed_point(trend.market_context)
        fear_greed_event = detect_fear_greed_event(
            fear_greed_point,
            self.store.get_last_fear_greed(),
            cfg.fear_greed_min_delta,
            cfg.fear_greed_require_regime_change,
        )
        fear_greed_event["required"] = cfg.fear_greed_event_required

        ctx = _PostContext(
            trend=trend,
            plan=plan,
            narrative=narrative,
            recent_posts=recent_posts,
            own_texts=self.store.get_recent_own_texts(20),
            rules=resolve_content_quality_rules({
                "min_post_length": cfg.post_min_length,
                "topic_max_same_tag_24h": cfg.topic_max_same_tag_24h,
                "topic_block_consecutive_tag": cfg.topic_block_consecutive_tag,
            }),
            required_tokens=plan.event.keywords[:4],
            fear_greed_event=fear_greed_event,
        )
        post_angle = pick_post_angle(self.store.get_today_post_count(tz), recent_posts)
        logger.info(
            "Post plan lane=%s mode=%s headline=%s evidence=%s",
            plan.lane,
            narrative.mode,
            plan.event.headline,
            ",".join(item.nutrient_id for item in plan.evidence),
        )

        post_text, attempts, last_reason = self._generate_post(ctx, policy, post_angle)
        used_fallback = False
        if post_text is None:
            fallback = build_event_evidence_fallback_post(plan, post_angle, cfg.post_language, cfg.post_max_chars)
            if fallback and detect_language(fallback) != cfg.post_language:
                fallback = self.generator.rewrite_language(fallback, cfg.post_language, cfg.post_max_chars) or fallback
            reason = self._gate_post(fallback, ctx, policy) if fallback else "empty-text"
            if not reason:
                post_text = fallback
                used_fallback = True
                logger.info("Post fallback accepted lane=%s", plan.lane)
            else:
                logger.info("Post fallback rejected reason=%s", reason)
                last_reason = reason or last_reason

        retries = max(0, attempts - 1)
        if post_text is None:
            self.store.record_post_generation(tz, retries, False, False, to_reason_code(last_reason or "unknown"))
            logger.info("Post generation failed reason=%s", last_reason or "unknown")
            return False

        decision = evaluate_autonomy_governor(
            post_text, trend.summary, plan, self.ledger.get_today_usage(tz), cfg
        )
        if not decision.allow:
            logger.warning("Governor blocked level=%s reasons=%s", decision.level, ",".join(decision.reasons))
            self.store.record_post_generation(tz, retries, used_fallback, False, "governor-block")
            return False
        if decision.level == "warn":
            logger.info("Governor warn reasons=%s", ",".join(decision.reasons))

        post_id = self._dispatch("post:briefing", post_text)
        if not post_id:
            return False

        self.store.save_post(post_id, post_text, "post", {
            "lane": plan.lane,
            "narrative_mode": narrative.mode,
            "fingerprint": fingerprint["key"],
            "event_id": plan.event.id,
        })
        self.store.remember_signal_fingerprint(fingerprint["key"])
        if fear_greed_point:
            self.store.set_last_fear_greed(fear_greed_point)
        self.store.record_post_generation(tz, retries, used_fallback, True)
        if trend.news_sources:
            self.store.apply_source_trust_delta_batch(
                [(source["key"], 0.006, source["trust"]) for source in trend.news_sources[:3]]
            )
        logger.info("Post success id=%s lane=%s fallback=%s text=%s", post_id, plan.lane, used_fallback, post_text[:60])
        return True

    def _generate_post(self, ctx: _PostContext, policy: AdaptivePolicy, post_angle: str) -> Tuple[Optional[str], int, str]:
        cfg = self.cfg
        local_date = self.now().astimezone(resolve_timezone(cfg.timezone)).date().isoformat()
        recent_texts = [post.content for post in ctx.recent_posts]
        market_anchors = format_market_anchors(ctx.trend.market_rows)
        rejection = ""
        attempts = 0
        for attempt in range(cfg.post_generation_max_attempts):
            attempts = attempt + 1
            try:
                candidate = self.generator.draft_post(
                    plan=ctx.plan,
                    narrative=ctx.narrative,
                    trend_summary=ctx.trend.summary,
                    post_angle=post_angle,
                    market_anchors=market_anchors,
                    recent_texts=recent_texts,
                    rejection_feedback=rejection,
                    local_date=local_date,
                )
            except GenerationError as e:
                logger.warning("Post draft failed attempt=%s error=%s", attempts, e)
                continue
            if candidate is None:
                break
            candidate = sanitize(candidate)
            if len(candidate) < cfg.post_min_length:
                rejection = "too-short"
                continue
            if detect_language(candidate) != cfg.post_language:
                candidate = self.generator.rewrite_language(candidate, cfg.post_language, cfg.post_max_chars) or candidate
            reason = self._gate_post(candidate, ctx, policy)
            if reason:
                rejection = reason
                logger.info(
                    "Post quality gate failed reason=%s attempt=%s/%s",
                    reason,
                    attempts,
                    cfg.post_generation_max_attempts,
                )
                continue
            return candidate, attempts, ""
        return None, attempts, rejection

    # loop

    def next_wait_minutes(self, result: CycleResult) -> int:
        if result.remaining <= 0:
            return self.cfg.quota_met_wait_minutes
        return random_int(self.cfg.min_loop_minutes, self.cfg.max_loop_minutes, self.rng)

    def run_loop(self, max_cycles: Optional[int] = None) -> int:
        """Repeat cycles until ``max_cycles`` (0 or None from config means forever).

        Returns the number of cycles run. No sleep follows the final cycle.
        """
        cfg = self.cfg
        limit = cfg.max_cycles if max_cycles is None else max_cycles
        logger.info(
            "Loop starting min_loop_minutes=%s max_loop_minutes=%s post_language=%s reply_language_mode=%s dry_run=%s",
            cfg.min_loop_minutes,
            cfg.max_loop_minutes,
            cfg.post_language,
            cfg.reply_language_mode,
            cfg.dry_run,
        )
        cycles = 0
        while True:
            cycles += 1
            try:
                result = self.run_cycle()
                wait_minutes = self.next_wait_minutes(result)
                reason = "quota_met" if result.remaining <= 0 else "next_cycle"
                logger.info(
                    "Quota cycle=%s executed=%s remaining=%s target=%s",
                    cycles,
                    result.executed,
                    result.remaining,
                    result.target,
                )
            except PlatformAuthError as e:
                logger.error("Cycle=%s auth_error=%s", cycles, e)
                self.store.flush()
                wait_minutes = cfg.min_loop_minutes
                reason = "auth_error_backoff"
            except Exception as e:
                logger.exception("Cycle=%s loop_error=%s", cycles, e)
                self.store.flush()
                wait_minutes = cfg.min_loop_minutes
                reason = "loop_error_backoff"

            if limit and cycles >= limit:
                return cycles
            logger.info("Sleeping seconds=%s reason=%s", wait_minutes * 60, reason)
            self.sleep(wait_minutes * 60)
