from __future__ import annotations

import logging
from typing import Optional

from ..platform_client import PlatformAuthError, PlatformClient
from .budget_ledger import BudgetLedger
from .config import Config, load_config
from .drafting import TextGenerator
from .logging_utils import setup_logging
from .memory import TelemetryStore
from .scheduler import CycleResult, CycleScheduler
from .signals import SignalSource


def build_client(cfg: Config, logger: logging.Logger) -> Optional[PlatformClient]:
    try:
        return PlatformClient()
    except PlatformAuthError as e:
        if not cfg.dry_run:
            raise
        logger.warning("Platform credentials missing; dry run continues without reads error=%s", e)
        return None


def build_scheduler(cfg: Config, logger: logging.Logger) -> CycleScheduler:
    store = TelemetryStore(cfg.memory_path)
    ledger = BudgetLedger(cfg.budget_path)
    signals = SignalSource(path=cfg.signal_feed_path, url=cfg.signal_feed_url)
    generator = TextGenerator(cfg)
    client = build_client(cfg, logger)
    logger.info(
        (
            "Autonomy wiring memory_path=%s budget_path=%s signal_feed=%s openai_configured=%s "
            "platform_client=%s dry_run=%s timezone=%s daily_target=%s"
        ),
        cfg.memory_path,
        cfg.budget_path,
        cfg.signal_feed_url or cfg.signal_feed_path,
        bool(cfg.openai_api_key),
        client is not None,
        cfg.dry_run,
        cfg.timezone,
        cfg.daily_target,
    )
    if cfg.log_path:
        logger.info("File logging enabled path=%s", cfg.log_path)

    return CycleScheduler(cfg, store, ledger, signals, generator, client)


def run_once(cfg: Optional[Config] = None) -> CycleResult:
    cfg = cfg or load_config()
    logger = setup_logging(cfg)
    scheduler = build_scheduler(cfg, logger)
    try:
        return scheduler.run_cycle()
    finally:
        scheduler.store.flush()


def run_loop(cfg: Optional[Config] = None) -> int:
    cfg = cfg or load_config()
    logger = setup_logging(cfg)
    scheduler = build_scheduler(cfg, logger)
    try:
        return scheduler.run_loop()
    except KeyboardInterrupt:
        logger.info("Loop interrupted")
        return 0
    finally:
        scheduler.store.flush()


if __name__ == "__main__":
    run_loop()
