from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import os


DEFAULT_SEED_KEYWORDS = [
    "onchain",
    "layer2",
    "ETF",
    "liquidity",
    "macro",
    "AI agent",
]

DEFAULT_PERSONA_HINT = (
    "You are an autonomous crypto market observer. "
    "Lead with one evidence-backed claim, cite only the numbers you were given, "
    "avoid hype and financial advice, and never use hashtags or emoji."
)


@dataclass
class Config:
    # scheduler
    daily_target: int
    timezone: str
    max_actions_per_cycle: int
    min_loop_minutes: int
    max_loop_minutes: int
    quota_met_wait_minutes: int
    max_cycles: int
    # engagement
    post_generation_max_attempts: int
    post_max_chars: int
    post_min_length: int
    post_min_interval_minutes: int
    max_posts_per_cycle: int
    post_language: str
    reply_language_mode: str
    min_news_source_trust: float
    min_trend_tweet_source_trust: float
    min_trend_tweet_score: float
    min_trend_tweet_engagement: int
    topic_max_same_tag_24h: int
    topic_block_consecutive_tag: bool
    signal_fingerprint_window: int
    seed_keywords: List[str]
    # autonomy governor
    require_onchain_evidence: bool
    require_cross_source_evidence: bool
    enforce_korean_posts: bool
    autonomy_max_budget_utilization: float
    autonomy_risk_block_score: int
    # digest
    min_digest_score: float
    digest_max_items: int
    evidence_max_items: int
    # fear/greed
    fear_greed_min_delta: int
    fear_greed_require_regime_change: bool
    fear_greed_event_required: bool
    # x api cost guard
    x_api_cost_guard_enabled: bool
    x_api_daily_max_usd: float
    x_api_estimated_read_cost_usd: float
    x_api_estimated_create_cost_usd: float
    x_api_daily_read_request_limit: int
    x_api_daily_create_request_limit: int
    mention_read_min_interval_minutes: int
    trend_read_min_interval_minutes: int
    create_min_interval_minutes: int
    # observability
    observability_enabled: bool
    observability_stdout_json: bool
    observability_event_log_path: Optional[Path]
    # paths
    memory_path: Optional[Path]
    budget_path: Optional[Path]
    signal_feed_path: Optional[Path]
    signal_feed_url: Optional[str]
    # llm
    openai_api_key: Optional[str]
    openai_base_url: str
    openai_model: str
    openai_temperature: float
    persona_hint: str
    # runtime
    dry_run: bool
    log_level: str
    log_path: Optional[Path]


def _parse_csv_env(env_key: str) -> List[str]:
    value = os.getenv(env_key, "")
    if not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_bool(env_key: str, default: bool) -> bool:
    raw = os.getenv(env_key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def _env_int(env_key: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.getenv(env_key, "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, min(maximum, value))


def _env_float(env_key: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(env_key, "").strip()
    try:
        value = float(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, min(maximum, value))


def _env_path(env_key: str, default: str) -> Optional[Path]:
    raw = os.getenv(env_key, default).strip()
    return Path(raw) if raw else None


def _env_choice(env_key: str, default: str, allowed: set) -> str:
    value = os.getenv(env_key, default).strip().lower()
    if value in allowed:
        return value
    return default


def load_config() -> Config:
    daily_target = _env_int("CHAINPULSE_DAILY_TARGET", 20, 1, 100)
    timezone = os.getenv("CHAINPULSE_TIMEZONE", "Asia/Seoul").strip() or "Asia/Seoul"
    max_actions_per_cycle = _env_int("CHAINPULSE_MAX_ACTIONS_PER_CYCLE", 4, 1, 10)
    min_loop_minutes = _env_int("CHAINPULSE_MIN_LOOP_MINUTES", 25, 5, 180)
    max_loop_minutes = _env_int("CHAINPULSE_MAX_LOOP_MINUTES", 70, min_loop_minutes, 240)
    quota_met_wait_minutes = _env_int("CHAINPULSE_QUOTA_MET_WAIT_MINUTES", 60, 5, 240)
    max_cycles = _env_int("CHAINPULSE_MAX_CYCLES", 0, 0, 1_000_000)

    post_generation_max_attempts = _env_int("CHAINPULSE_POST_GENERATION_MAX_ATTEMPTS", 2, 1, 4)
    post_max_chars = _env_int("CHAINPULSE_POST_MAX_CHARS", 220, 120, 280)
    post_min_length = _env_int("CHAINPULSE_POST_MIN_LENGTH", 20, 10, 120)
    post_min_interval_minutes = _env_int("CHAINPULSE_POST_MIN_INTERVAL_MINUTES", 90, 0, 360)
    max_posts_per_cycle = _env_int("CHAINPULSE_MAX_POSTS_PER_CYCLE", 1, 0, 4)
    post_language = _env_choice("CHAINPULSE_POST_LANGUAGE", "ko", {"ko", "en"})
    reply_language_mode = _env_choice("CHAINPULSE_REPLY_LANGUAGE_MODE", "match", {"match", "ko", "en"})
    min_news_source_trust = _env_float("CHAINPULSE_MIN_NEWS_SOURCE_TRUST", 0.28, 0.05, 0.9)
    min_trend_tweet_source_trust = _env_float("CHAINPULSE_MIN_TREND_TWEET_SOURCE_TRUST", 0.24, 0.05, 0.9)
    min_trend_tweet_score = _env_float("CHAINPULSE_MIN_TREND_TWEET_SCORE", 3.2, 0.5, 12.0)
    min_trend_tweet_engagement = _env_int("CHAINPULSE_MIN_TREND_TWEET_ENGAGEMENT", 6, 1, 200)
    topic_max_same_tag_24h = _env_int("CHAINPULSE_TOPIC_MAX_SAME_TAG_24H", 2, 1, 8)
    topic_block_consecutive_tag = _env_bool("CHAINPULSE_TOPIC_BLOCK_CONSECUTIVE_TAG", True)
    signal_fingerprint_window = _env_int("CHAINPULSE_SIGNAL_FINGERPRINT_WINDOW", 3, 0, 24)
    seed_keywords = _parse_csv_env("CHAINPULSE_SEED_KEYWORDS") or DEFAULT_SEED_KEYWORDS[:]

    require_onchain_evidence = _env_bool("CHAINPULSE_REQUIRE_ONCHAIN_EVIDENCE", True)
    require_cross_source_evidence = _env_bool("CHAINPULSE_REQUIRE_CROSS_SOURCE_EVIDENCE", False)
    enforce_korean_posts = _env_bool("CHAINPULSE_ENFORCE_KOREAN_POSTS", post_language == "ko")
    autonomy_max_budget_utilization = _env_float("CHAINPULSE_AUTONOMY_MAX_BUDGET_UTILIZATION", 0.92, 0.1, 1.0)
    autonomy_risk_block_score = _env_int("CHAINPULSE_AUTONOMY_RISK_BLOCK_SCORE", 6, 1, 10)

    min_digest_score = _env_float("CHAINPULSE_MIN_DIGEST_SCORE", 0.5, 0.2, 0.95)
    digest_max_items = _env_int("CHAINPULSE_DIGEST_MAX_ITEMS", 24, 1, 64)
    evidence_max_items = _env_int("CHAINPULSE_EVIDENCE_MAX_ITEMS", 12, 2, 30)

    fear_greed_min_delta = _env_int("CHAINPULSE_FEAR_GREED_MIN_DELTA", 10, 1, 100)
    fear_greed_require_regime_change = _env_bool("CHAINPULSE_FEAR_GREED_REQUIRE_REGIME_CHANGE", False)
    fear_greed_event_required = _env_bool("CHAINPULSE_FEAR_GREED_EVENT_REQUIRED", True)

    x_api_cost_guard_enabled = _env_bool("CHAINPULSE_X_API_COST_GUARD_ENABLED", True)
    x_api_daily_max_usd = _env_float("CHAINPULSE_X_API_DAILY_MAX_USD", 0.5, 0.01, 100.0)
    x_api_estimated_read_cost_usd = _env_float("CHAINPULSE_X_API_ESTIMATED_READ_COST_USD", 0.012, 0.001, 10.0)
    x_api_estimated_create_cost_usd = _env_float("CHAINPULSE_X_API_ESTIMATED_CREATE_COST_USD", 0.01, 0.001, 10.0)
    x_api_daily_read_request_limit = _env_int("CHAINPULSE_X_API_DAILY_READ_REQUEST_LIMIT", 24, 1, 1000)
    x_api_daily_create_request_limit = _env_int("CHAINPULSE_X_API_DAILY_CREATE_REQUEST_LIMIT", 24, 1, 1000)
    mention_read_min_interval_minutes = _env_int("CHAINPULSE_MENTION_READ_MIN_INTERVAL_MINUTES", 30, 0, 1440)
    trend_read_min_interval_minutes = _env_int("CHAINPULSE_TREND_READ_MIN_INTERVAL_MINUTES", 45, 0, 1440)
    create_min_interval_minutes = _env_int("CHAINPULSE_CREATE_MIN_INTERVAL_MINUTES", 3, 0, 1440)

    observability_enabled = _env_bool("CHAINPULSE_OBSERVABILITY_ENABLED", True)
    observability_stdout_json = _env_bool("CHAINPULSE_OBSERVABILITY_STDOUT_JSON", False)
    observability_event_log_path = _env_path(
        "CHAINPULSE_OBSERVABILITY_EVENT_LOG_PATH", "data/metrics/cycle-events.jsonl"
    )

    memory_path = _env_path("CHAINPULSE_MEMORY_PATH", "data/memory.json")
    budget_path = _env_path("CHAINPULSE_BUDGET_PATH", "data/x-api-budget.json")
    signal_feed_path = _env_path("CHAINPULSE_SIGNAL_FEED_PATH", "data/signal-feed.json")
    signal_feed_url = os.getenv("CHAINPULSE_SIGNAL_FEED_URL", "").strip() or None

    openai_api_key = os.getenv("OPENAI_API_KEY") or None
    openai_base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
    openai_model = os.getenv("CHAINPULSE_OPENAI_MODEL", "gpt-4o-mini")
    openai_temperature = _env_float("CHAINPULSE_OPENAI_TEMPERATURE", 0.7, 0.0, 2.0)
    persona_hint = os.getenv("CHAINPULSE_PERSONA_HINT", "").strip() or DEFAULT_PERSONA_HINT

    dry_run = _env_bool("CHAINPULSE_DRY_RUN", False)
    log_level = os.getenv("CHAINPULSE_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_path = _env_path("CHAINPULSE_LOG_PATH", "")

    return Config(
        daily_target=daily_target,
        timezone=timezone,
        max_actions_per_cycle=max_actions_per_cycle,
        min_loop_minutes=min_loop_minutes,
        max_loop_minutes=max_loop_minutes,
        quota_met_wait_minutes=quota_met_wait_minutes,
        max_cycles=max_cycles,
        post_generation_max_attempts=post_generation_max_attempts,
        post_max_chars=post_max_chars,
        post_min_length=post_min_length,
        post_min_interval_minutes=post_min_interval_minutes,
        max_posts_per_cycle=max_posts_per_cycle,
        post_language=post_language,
        reply_language_mode=reply_language_mode,
        min_news_source_trust=min_news_source_trust,
        min_trend_tweet_source_trust=min_trend_tweet_source_trust,
        min_trend_tweet_score=min_trend_tweet_score,
        min_trend_tweet_engagement=min_trend_tweet_engagement,
        topic_max_same_tag_24h=topic_max_same_tag_24h,
        topic_block_consecutive_tag=topic_block_consecutive_tag,
        signal_fingerprint_window=signal_fingerprint_window,
        seed_keywords=seed_keywords,
        require_onchain_evidence=require_onchain_evidence,
        require_cross_source_evidence=require_cross_source_evidence,
        enforce_korean_posts=enforce_korean_posts,
        autonomy_max_budget_utilization=autonomy_max_budget_utilization,
        autonomy_risk_block_score=autonomy_risk_block_score,
        min_digest_score=min_digest_score,
        digest_max_items=digest_max_items,
        evidence_max_items=evidence_max_items,
        fear_greed_min_delta=fear_greed_min_delta,
        fear_greed_require_regime_change=fear_greed_require_regime_change,
        fear_greed_event_required=fear_greed_event_required,
        x_api_cost_guard_enabled=x_api_cost_guard_enabled,
        x_api_daily_max_usd=x_api_daily_max_usd,
        x_api_estimated_read_cost_usd=x_api_estimated_read_cost_usd,
        x_api_estimated_create_cost_usd=x_api_estimated_create_cost_usd,
        x_api_daily_read_request_limit=x_api_daily_read_request_limit,
        x_api_daily_create_request_limit=x_api_daily_create_request_limit,
        mention_read_min_interval_minutes=mention_read_min_interval_minutes,
        trend_read_min_interval_minutes=trend_read_min_interval_minutes,
        create_min_interval_minutes=create_min_interval_minutes,
        observability_enabled=observability_enabled,
        observability_stdout_json=observability_stdout_json,
        observability_event_log_path=observability_event_log_path,
        memory_path=memory_path,
        budget_path=budget_path,
        signal_feed_path=signal_feed_path,
        signal_feed_url=signal_feed_url,
        openai_api_key=openai_api_key,
        openai_base_url=openai_base_url,
        openai_model=openai_model,
        openai_temperature=openai_temperature,
        persona_hint=persona_hint,
        dry_run=dry_run,
        log_level=log_level,
        log_path=log_path,
    )
