from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .models import DigestRecord, RecentPost
from .state import (
    clamp,
    load_json_document,
    local_date_key,
    parse_iso,
    resolve_timezone,
    round_half_up,
    save_json_document,
    utc_now,
)


MAX_POSTS = 400
MAX_REPLIED_IDS = 1000
MAX_NUTRIENT_LEDGER = 240
MAX_SIGNAL_FINGERPRINTS = 48
MAX_APPLIED_EVENT_KEYS = 500
METRICS_KEEP_DAYS = 14
SOURCE_TRUST_MIN = 0.05
SOURCE_TRUST_MAX = 0.95

logger = logging.getLogger("chainpulse.autonomy")


def _default_memory() -> Dict[str, Any]:
    return {
        "posts": [],
        "replied_ids": [],
        "last_mention_id": None,
        "post_generation": {},
        "nutrient_ledger": [],
        "source_trust": {},
        "last_fear_greed": None,
        "signal_fingerprints": [],
        "applied_event_keys": [],
        "last_updated": None,
    }


def _empty_metrics() -> Dict[str, Any]:
    return {
        "post_runs": 0,
        "post_successes": 0,
        "post_failures": 0,
        "total_retries": 0,
        "fallback_used": 0,
        "fail_reasons": {},
    }


def load_memory(path: Path) -> Dict[str, Any]:
    try:
        data = load_json_document(path)
    except (OSError, ValueError) as e:
        logger.warning("Memory load failed path=%s error=%s", path, e)
        return _default_memory()
    if not isinstance(data, dict):
        return _default_memory()
    defaults = _default_memory()
    for key, value in defaults.items():
        if key not in data:
            data[key] = value
        elif value is not None and not isinstance(data[key], type(value)):
            data[key] = value
    return data


class TelemetryStore:
    """Persisted agent telemetry: own posts, generation metrics, nutrient
    ledger and source trust.

    Mutations stay in memory until ``commit()``; ``path=None`` keeps the store
    purely in memory.
    """

    def __init__(self, path: Optional[Path] = None, now: Optional[Callable[[], datetime]] = None) -> None:
        self.path = path
        self.now = now or utc_now
        self.data = load_memory(path) if path is not None else _default_memory()
        self.dirty = False

    # posts

    def save_post(self, post_id: str, content: str, kind: str = "post", meta: Optional[Dict[str, Any]] = None) -> None:
        posts = self.data["posts"]
        if any(row.get("id") == post_id for row in posts):
            return
        posts.append({
            "id": post_id,
            "content": content,
            "kind": kind,
            "created_at": self.now().isoformat(),
            "meta": dict(meta or {}),
        })
        if len(posts) > MAX_POSTS:
            self.data["posts"] = posts[-MAX_POSTS:]
        self.dirty = True

    def get_recent_posts(self, count: int = 20, kind: Optional[str] = None) -> List[RecentPost]:
        rows = [row for row in self.data["posts"] if kind is None or row.get("kind") == kind]
        return [
            RecentPost(
                id=str(row.get("id") or ""),
                content=str(row.get("content") or ""),
                kind=str(row.get("kind") or "post"),
                created_at=str(row.get("created_at") or ""),
                meta=dict(row.get("meta") or {}),
            )
            for row in rows[-count:]
        ] if count > 0 else []

    def get_recent_own_texts(self, count: int = 20, kind: Optional[str] = None) -> List[str]:
        return [post.content for post in self.get_recent_posts(count, kind)]

    def _today_count(self, tz_name: str, kinds: Tuple[str, ...]) -> int:
        today = local_date_key(self.now(), tz_name)
        count = 0
        for row in self.data["posts"]:
            if row.get("kind") not in kinds:
                continue
            stamp = parse_iso(row.get("created_at"))
            if stamp is not None and local_date_key(stamp, tz_name) == today:
                count += 1
        return count

    def get_today_activity_count(self, tz_name: str) -> int:
        return self._today_count(tz_name, ("post", "reply", "quote"))

    def get_today_post_count(self, tz_name: str) -> int:
        return self._today_count(tz_name, ("post",))

    def get_today_reply_count(self, tz_name: str) -> int:
        return self._today_count(tz_name, ("reply",))

    def get_last_post_at(self, kind: str = "post") -> Optional[datetime]:
        for row in reversed(self.data["posts"]):
            if row.get("kind") == kind:
                return parse_iso(row.get("created_at"))
        return None

    # mentions

    def has_replied_to(self, target_id: str) -> bool:
        return str(target_id) in self.data["replied_ids"]

    def mark_replied(self, target_id: str) -> None:
        target = str(target_id)
        if target in self.data["replied_ids"]:
            return
        self.data["replied_ids"].append(target)
        self.data["replied_ids"] = self.data["replied_ids"][-MAX_REPLIED_IDS:]
        self.dirty = True

    def get_last_mention_id(self) -> Optional[str]:
        return self.data.get("last_mention_id")

    def set_last_mention_id(self, mention_id: str) -> None:
        if self.data.get("last_mention_id") != mention_id:
            self.data["last_mention_id"] = mention_id
            self.dirty = True

    # post generation metrics

    def _claim_event_key(self, event_key: Optional[str]) -> bool:
        if not event_key:
            return True
        applied = self.data["applied_event_keys"]
        if event_key in applied:
            return False
        applied.append(event_key)
        self.data["applied_event_keys"] = applied[-MAX_APPLIED_EVENT_KEYS:]
        self.dirty = True
        return True

    def record_post_generation(
        self,
        tz_name: str,
        retry_count: int,
        used_fallback: bool,
        success: bool,
        fail_reason: Optional[str] = None,
        event_key: Optional[str] = None,
    ) -> None:
        if not self._claim_event_key(event_key):
            return
        day = local_date_key(self.now(), tz_name)
        table = self.data["post_generation"]
        row = table.setdefault(day, _empty_metrics())
        row["post_runs"] += 1
        row["total_retries"] += max(0, int(retry_count))
        if used_fallback:
            row["fallback_used"] += 1
        if success:
            row["post_successes"] += 1
        else:
            row["post_failures"] += 1
            code = fail_reason or "unknown"
            row["fail_reasons"][code] = int(row["fail_reasons"].get(code, 0)) + 1
        self._compact_metrics(tz_name)
        self.dirty = True

    def _compact_metrics(self, tz_name: str) -> None:
        cutoff = (self.now().astimezone(resolve_timezone(tz_name)).date() - timedelta(days=METRICS_KEEP_DAYS)).isoformat()
        table = self.data["post_generation"]
        for key in [key for key in table if key < cutoff]:
            del table[key]

    def get_today_post_generation_metrics(self, tz_name: str) -> Dict[str, Any]:
        row = dict(self.data["post_generation"].get(local_date_key(self.now(), tz_name)) or _empty_metrics())
        row["fail_reasons"] = dict(row.get("fail_reasons") or {})
        runs = row["post_runs"]
        row["avg_retries"] = round_half_up(row["total_retries"] / runs, 2) if runs else 0.0
        row["fallback_rate"] = round_half_up(row["fallback_used"] / runs, 2) if runs else 0.0
        return row

    # nutrients

    def record_nutrient_batch_intake(self, records: Iterable[DigestRecord]) -> int:
        ledger = self.data["nutrient_ledger"]
        known = {row.get("nutrient_id") for row in ledger}
        added = 0
        for record in records:
            nutrient = record.nutrient
            if not nutrient.id or nutrient.id in known:
                continue
            known.add(nutrient.id)
            ledger.append({
                "nutrient_id": nutrient.id,
                "source": nutrient.source,
                "category": nutrient.category,
                "label": nutrient.label,
                "value": nutrient.value,
                "accepted": record.accepted,
                "xp_gain": record.xp_gain,
                "digest_score": {
                    "trust": record.score.trust,
                    "freshness": record.score.freshness,
                    "consistency": record.score.consistency,
                    "total": record.score.total,
                },
                "reason": record.reason,
                "recorded_at": self.now().isoformat(),
            })
            added += 1
        if added:
            self.data["nutrient_ledger"] = ledger[-MAX_NUTRIENT_LEDGER:]
            self.dirty = True
        return added

    def get_recent_nutrient_ledger(self, limit: int = 120) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.data["nutrient_ledger"][-limit:]] if limit > 0 else []

    # source trust

    def get_source_trust(self, key: str, fallback: float = 0.5) -> float:
        value = self.data["source_trust"].get(str(key or "").strip().lower())
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        return fallback

    def apply_source_trust_delta_batch(
        self, updates: Iterable[Tuple[str, float, float]], event_key: Optional[str] = None
    ) -> None:
        """Apply ``(source_key, delta, fallback)`` updates, clamped to the trust band."""
        if not self._claim_event_key(event_key):
            return
        table = self.data["source_trust"]
        for source_key, delta, fallback in updates:
            key = str(source_key or "").strip().lower()
            if not key:
                continue
            current = self.get_source_trust(key, fallback)
            table[key] = round_half_up(clamp(current + delta, SOURCE_TRUST_MIN, SOURCE_TRUST_MAX), 4)
            self.dirty = True

    # fear/greed and fingerprints

    def get_last_fear_greed(self) -> Optional[Dict[str, Any]]:
        return self.data.get("last_fear_greed")

    def set_last_fear_greed(self, point: Dict[str, Any]) -> None:
        self.data["last_fear_greed"] = dict(point)
        self.dirty = True

    def get_recent_signal_fingerprints(self, count: int) -> List[str]:
        return list(self.data["signal_fingerprints"][-count:]) if count > 0 else []

    def remember_signal_fingerprint(self, key: str) -> None:
        self.data["signal_fingerprints"].append(key)
        self.data["signal_fingerprints"] = self.data["signal_fingerprints"][-MAX_SIGNAL_FINGERPRINTS:]
        self.dirty = True

    # persistence

    def commit(self) -> bool:
        if not self.dirty or self.path is None:
            self.dirty = False
            return False
        self.data["last_updated"] = self.now().isoformat()
        try:
            save_json_document(self.path, self.data)
        except OSError as e:
            logger.warning("Memory save failed path=%s error=%s", self.path, e)
            return False
        self.dirty = False
        return True

    def flush(self) -> None:
        self.commit()
