from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import Config
from .models import AdmissionDecision, BudgetBucket
from .state import (
    clamp_int,
    clamp_number,
    load_json_document,
    local_date_key,
    parse_iso,
    round_half_up,
    save_json_document,
    utc_now,
)


KEEP_DAYS = 21
COST_EPSILON = 1e-9
READ = "read"
CREATE = "create"

logger = logging.getLogger("chainpulse.autonomy")


@dataclass
class BudgetPolicy:
    enabled: bool
    timezone: str
    daily_max_usd: float
    estimated_cost_usd: float
    daily_request_limit: int
    kind: str
    min_interval_minutes: int = 0


def read_policy(cfg: Config, kind: str, min_interval_minutes: int) -> BudgetPolicy:
    return BudgetPolicy(
        enabled=cfg.x_api_cost_guard_enabled,
        timezone=cfg.timezone,
        daily_max_usd=cfg.x_api_daily_max_usd,
        estimated_cost_usd=cfg.x_api_estimated_read_cost_usd,
        daily_request_limit=cfg.x_api_daily_read_request_limit,
        kind=kind,
        min_interval_minutes=min_interval_minutes,
    )


def create_policy(cfg: Config, kind: str) -> BudgetPolicy:
    return BudgetPolicy(
        enabled=cfg.x_api_cost_guard_enabled,
        timezone=cfg.timezone,
        daily_max_usd=cfg.x_api_daily_max_usd,
        estimated_cost_usd=cfg.x_api_estimated_create_cost_usd,
        daily_request_limit=cfg.x_api_daily_create_request_limit,
        kind=kind,
        min_interval_minutes=cfg.create_min_interval_minutes,
    )


def normalize_kind(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"[^a-z0-9:_-]", "", value)
    return value or "unknown"


def round_usd(value: float) -> float:
    return round_half_up(value, 4)


def _empty_state(now_iso: str) -> Dict[str, Any]:
    return {"usage_by_date": {}, "last_request_at_by_kind": {}, "last_updated": now_iso}


class BudgetLedger:
    """Daily read/create request counters and estimated USD spend.

    Both request classes draw down one shared daily USD ceiling. Blocks are
    returned as AdmissionDecision values; only recording mutates state. With
    ``path=None`` the ledger never touches disk.
    """

    def __init__(self, path: Optional[Path] = None, now: Optional[Callable[[], datetime]] = None) -> None:
        self.path = path
        self.now = now or utc_now
        self.state = self._load()

    # admission

    def check_read_allowance(self, policy: BudgetPolicy) -> AdmissionDecision:
        return self._check_allowance(policy, READ)

    def check_create_allowance(self, policy: BudgetPolicy) -> AdmissionDecision:
        return self._check_allowance(policy, CREATE)

    def record_read(self, policy: BudgetPolicy) -> BudgetBucket:
        return self._record_usage(policy, READ)

    def record_create(self, policy: BudgetPolicy) -> BudgetBucket:
        return self._record_usage(policy, CREATE)

    def get_today_usage(self, timezone: str) -> BudgetBucket:
        row = self._ensure_bucket(local_date_key(self.now(), timezone))
        return self._snapshot(row)

    def _check_allowance(self, policy: BudgetPolicy, request_type: str) -> AdmissionDecision:
        estimated_cost = clamp_number(policy.estimated_cost_usd, 0, 100, 0)
        daily_max_usd = clamp_number(policy.daily_max_usd, 0, 1000, 0)
        daily_limit = clamp_int(policy.daily_request_limit, 0, 1_000_000, 0)
        min_interval = clamp_int(policy.min_interval_minutes, 0, 24 * 60, 0)
        kind = normalize_kind(policy.kind)

        now = self.now()
        row = self._ensure_bucket(local_date_key(now, policy.timezone))
        today_count = row["read_requests"] if request_type == READ else row["create_requests"]
        projected = round_usd(row["est_total_cost_usd"] + estimated_cost)
        remaining = max(0, daily_limit - today_count)

        def decision(allowed: bool, reason: Optional[str] = None, wait: Optional[int] = None,
                     remaining_requests: int = remaining) -> AdmissionDecision:
            return AdmissionDecision(
                allowed=allowed,
                block_reason=reason,
                wait_seconds=wait,
                projected_cost_usd=projected,
                remaining_requests=remaining_requests,
                today_request_count=today_count,
                today_read_requests=row["read_requests"],
                today_create_requests=row["create_requests"],
            )

        if not policy.enabled:
            return decision(True)

        if min_interval > 0:
            wait_seconds = self._wait_seconds(self.state["last_request_at_by_kind"].get(kind), min_interval, now)
            if wait_seconds > 0:
                return decision(False, "min-interval", wait_seconds)

        if daily_limit > 0 and today_count >= daily_limit:
            return decision(False, "daily-request-limit", remaining_requests=0)

        if daily_max_usd > 0 and projected - daily_max_usd > COST_EPSILON:
            return decision(False, "daily-usd-limit")

        return decision(True)

    # recording

    def _record_usage(self, policy: BudgetPolicy, request_type: str) -> BudgetBucket:
        now = self.now()
        now_iso = now.isoformat()
        row = self._ensure_bucket(local_date_key(now, policy.timezone))
        kind = normalize_kind(policy.kind)
        cost = clamp_number(policy.estimated_cost_usd, 0, 100, 0)

        if request_type == READ:
            row["read_requests"] += 1
            row["est_read_cost_usd"] = round_usd(row["est_read_cost_usd"] + cost)
        else:
            row["create_requests"] += 1
            row["est_create_cost_usd"] = round_usd(row["est_create_cost_usd"] + cost)

        row["est_total_cost_usd"] = round_usd(row["est_read_cost_usd"] + row["est_create_cost_usd"])
        row["counts_by_kind"][kind] = int(row["counts_by_kind"].get(kind, 0)) + 1
        row["updated_at"] = now_iso
        self.state["last_request_at_by_kind"][kind] = now_iso
        self.state["last_updated"] = now_iso

        self._compact(KEEP_DAYS)
        self.save()
        return self._snapshot(row)

    def _compact(self, keep_days: int) -> None:
        usage = self.state["usage_by_date"]
        if len(usage) <= keep_days:
            return
        for key in sorted(usage.keys())[: len(usage) - keep_days]:
            del usage[key]

    @staticmethod
    def _wait_seconds(last_request_at: Optional[str], min_interval_minutes: int, now: datetime) -> int:
        last = parse_iso(last_request_at)
        if last is None or min_interval_minutes <= 0:
            return 0
        cooldown = min_interval_minutes * 60.0
        elapsed = (now - last).total_seconds()
        if elapsed >= cooldown:
            return 0
        return max(1, int(math.ceil(cooldown - elapsed)))

    def _ensure_bucket(self, date_key: str) -> Dict[str, Any]:
        usage = self.state["usage_by_date"]
        if date_key not in usage:
            usage[date_key] = {
                "date_key": date_key,
                "read_requests": 0,
                "create_requests": 0,
                "est_read_cost_usd": 0.0,
                "est_create_cost_usd": 0.0,
                "est_total_cost_usd": 0.0,
                "counts_by_kind": {},
                "updated_at": self.now().isoformat(),
            }
        return usage[date_key]

    @staticmethod
    def _snapshot(row: Dict[str, Any]) -> BudgetBucket:
        return BudgetBucket(
            date_key=row["date_key"],
            read_requests=row["read_requests"],
            create_requests=row["create_requests"],
            est_read_cost_usd=row["est_read_cost_usd"],
            est_create_cost_usd=row["est_create_cost_usd"],
            est_total_cost_usd=row["est_total_cost_usd"],
            counts_by_kind=dict(row["counts_by_kind"]),
            updated_at=row.get("updated_at", ""),
        )

    # persistence

    def _load(self) -> Dict[str, Any]:
        now_iso = self.now().isoformat()
        if self.path is None:
            return _empty_state(now_iso)
        try:
            raw = load_json_document(self.path)
        except (OSError, ValueError) as e:
            logger.warning("Budget ledger load failed path=%s error=%s", self.path, e)
            return _empty_state(now_iso)
        if not isinstance(raw, dict):
            return _empty_state(now_iso)
        return self._normalize_state(raw, now_iso)

    def _normalize_state(self, raw: Dict[str, Any], now_iso: str) -> Dict[str, Any]:
        usage: Dict[str, Any] = {}
        for key, value in (raw.get("usage_by_date") or {}).items():
            if not isinstance(value, dict):
                continue
            read_cost = value.get("est_read_cost_usd", value.get("read_cost_usd"))
            create_cost = value.get("est_create_cost_usd", value.get("create_cost_usd"))
            est_read = round_usd(clamp_number(read_cost, 0, 1_000_000, 0))
            est_create = round_usd(clamp_number(create_cost, 0, 1_000_000, 0))
            by_kind: Dict[str, int] = {}
            raw_kinds = value.get("counts_by_kind")
            if isinstance(raw_kinds, dict):
                for kind, count in raw_kinds.items():
                    by_kind[normalize_kind(kind)] = clamp_int(count, 0, 1_000_000, 0)
            date_key = value.get("date_key")
            usage[key] = {
                "date_key": date_key if isinstance(date_key, str) and date_key else key,
                "read_requests": clamp_int(value.get("read_requests"), 0, 1_000_000, 0),
                "create_requests": clamp_int(value.get("create_requests"), 0, 1_000_000, 0),
                "est_read_cost_usd": est_read,
                "est_create_cost_usd": est_create,
                "est_total_cost_usd": round_usd(est_read + est_create),
                "counts_by_kind": by_kind,
                "updated_at": value.get("updated_at") if isinstance(value.get("updated_at"), str) else now_iso,
            }

        last_by_kind: Dict[str, str] = {}
        merged = dict(raw.get("last_request_at_by_kind") or {})
        merged.update(raw.get("last_read_at_by_kind") or {})
        for kind, stamp in merged.items():
            if isinstance(stamp, str):
                last_by_kind[normalize_kind(kind)] = stamp

        last_updated = raw.get("last_updated")
        return {
            "usage_by_date": usage,
            "last_request_at_by_kind": last_by_kind,
            "last_updated": last_updated if isinstance(last_updated, str) else now_iso,
        }

    def save(self) -> None:
        if self.path is None:
            return
        try:
            save_json_document(self.path, self.state)
        except OSError as e:
            logger.warning("Budget ledger save failed path=%s error=%s", self.path, e)
