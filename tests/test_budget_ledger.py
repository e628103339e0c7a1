import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from chainpulse.autonomy.budget_ledger import BudgetLedger, BudgetPolicy, normalize_kind


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.value = start

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value = self.value + timedelta(**kwargs)


def _policy(**overrides) -> BudgetPolicy:
    values = dict(
        enabled=True,
        timezone="Asia/Seoul",
        daily_max_usd=0.5,
        estimated_cost_usd=0.012,
        daily_request_limit=24,
        kind="mentions",
        min_interval_minutes=0,
    )
    values.update(overrides)
    return BudgetPolicy(**values)


class BudgetLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock(datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc))
        self.ledger = BudgetLedger(None, now=self.clock)

    def test_total_cost_is_sum_of_recorded_costs(self) -> None:
        read = _policy(estimated_cost_usd=0.012)
        create = _policy(estimated_cost_usd=0.01, kind="post:briefing")
        totals = []
        for _ in range(3):
            totals.append(self.ledger.record_read(read).est_total_cost_usd)
            totals.append(self.ledger.record_create(create).est_total_cost_usd)

        bucket = self.ledger.get_today_usage("Asia/Seoul")
        self.assertAlmostEqual(bucket.est_total_cost_usd, 0.066, places=6)
        self.assertAlmostEqual(bucket.est_read_cost_usd, 0.036, places=6)
        self.assertAlmostEqual(bucket.est_create_cost_usd, 0.03, places=6)
        self.assertEqual(bucket.read_requests, 3)
        self.assertEqual(bucket.create_requests, 3)
        self.assertEqual(totals, sorted(totals))
        self.assertEqual(bucket.counts_by_kind, {"mentions": 3, "post:briefing": 3})

    def test_min_interval_blocks_until_clock_advances(self) -> None:
        policy = _policy(min_interval_minutes=30)
        self.ledger.record_read(policy)

        decision = self.ledger.check_read_allowance(policy)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.block_reason, "min-interval")
        self.assertEqual(decision.wait_seconds, 1800)

        self.clock.advance(minutes=10)
        decision = self.ledger.check_read_allowance(policy)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.wait_seconds, 1200)

        self.clock.advance(minutes=20)
        self.assertTrue(self.ledger.check_read_allowance(policy).allowed)

    def test_min_interval_is_per_kind(self) -> None:
        self.ledger.record_read(_policy(kind="mentions", min_interval_minutes=30))
        decision = self.ledger.check_read_allowance(_policy(kind="trend-search", min_interval_minutes=30))
        self.assertTrue(decision.allowed)

    def test_daily_request_limit(self) -> None:
        policy = _policy(daily_request_limit=2)
        self.ledger.record_read(policy)
        self.assertEqual(self.ledger.check_read_allowance(policy).remaining_requests, 1)
        self.ledger.record_read(policy)

        decision = self.ledger.check_read_allowance(policy)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.block_reason, "daily-request-limit")
        self.assertEqual(decision.remaining_requests, 0)
        self.assertEqual(decision.today_read_requests, 2)

        # create requests have their own counter
        self.assertTrue(self.ledger.check_create_allowance(_policy(daily_request_limit=2)).allowed)

    def test_daily_usd_limit_projects_next_request(self) -> None:
        policy = _policy(daily_max_usd=0.03, estimated_cost_usd=0.012, daily_request_limit=100)
        self.ledger.record_read(policy)
        self.ledger.record_read(policy)

        decision = self.ledger.check_create_allowance(policy)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.block_reason, "daily-usd-limit")
        self.assertGreater(decision.projected_cost_usd, 0.03)
        self.assertAlmostEqual(decision.projected_cost_usd, 0.036, places=6)

    def test_exact_budget_is_still_admitted(self) -> None:
        policy = _policy(daily_max_usd=0.03, estimated_cost_usd=0.01, daily_request_limit=100)
        self.ledger.record_create(policy)
        self.ledger.record_create(policy)
        decision = self.ledger.check_create_allowance(policy)
        self.assertTrue(decision.allowed)
        self.assertAlmostEqual(decision.projected_cost_usd, 0.03, places=6)

    def test_disabled_guard_always_allows(self) -> None:
        policy = _policy(enabled=False, daily_request_limit=1, min_interval_minutes=60)
        self.ledger.record_read(policy)
        self.ledger.record_read(policy)
        decision = self.ledger.check_read_allowance(policy)
        self.assertTrue(decision.allowed)
        self.assertIsNone(decision.block_reason)

    def test_new_local_day_starts_fresh_bucket(self) -> None:
        policy = _policy(daily_request_limit=1)
        self.ledger.record_read(policy)
        self.assertFalse(self.ledger.check_read_allowance(policy).allowed)

        # 15:00 UTC is midnight in Seoul
        self.clock.value = datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)
        decision = self.ledger.check_read_allowance(policy)
        self.assertTrue(decision.allowed)
        self.assertEqual(self.ledger.get_today_usage("Asia/Seoul").date_key, "2026-03-02")

    def test_only_recent_days_are_kept(self) -> None:
        policy = _policy()
        for _ in range(25):
            self.ledger.record_read(policy)
            self.clock.advance(days=1)
        self.assertEqual(len(self.ledger.state["usage_by_date"]), 21)

    def test_normalize_kind(self) -> None:
        self.assertEqual(normalize_kind("  Trend Search! "), "trend-search")
        self.assertEqual(normalize_kind(""), "unknown")
        self.assertEqual(normalize_kind("post:briefing"), "post:briefing")


class BudgetLedgerPersistenceTests(unittest.TestCase):
    def test_state_survives_reload(self) -> None:
        clock = _Clock(datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc))
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "budget.json"
            ledger = BudgetLedger(path, now=clock)
            ledger.record_read(_policy(min_interval_minutes=30))
            self.assertTrue(path.exists())

            reloaded = BudgetLedger(path, now=clock)
            decision = reloaded.check_read_allowance(_policy(min_interval_minutes=30))
            self.assertFalse(decision.allowed)
            self.assertEqual(reloaded.get_today_usage("Asia/Seoul").read_requests, 1)

    def test_legacy_fields_are_migrated(self) -> None:
        clock = _Clock(datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc))
        legacy = {
            "usage_by_date": {
                "2026-03-01": {
                    "read_requests": 2,
                    "create_requests": 1,
                    "read_cost_usd": 0.024,
                    "create_cost_usd": 0.01,
                    "counts_by_kind": {"Mentions": 2},
                }
            },
            "last_read_at_by_kind": {"mentions": "2026-03-01T02:50:00+00:00"},
        }
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "budget.json"
            path.write_text(json.dumps(legacy), encoding="utf-8")
            ledger = BudgetLedger(path, now=clock)

        bucket = ledger.get_today_usage("Asia/Seoul")
        self.assertEqual(bucket.read_requests, 2)
        self.assertAlmostEqual(bucket.est_total_cost_usd, 0.034, places=6)
        self.assertEqual(bucket.counts_by_kind, {"mentions": 2})
        decision = ledger.check_read_allowance(_policy(min_interval_minutes=30))
        self.assertEqual(decision.block_reason, "min-interval")
        self.assertEqual(decision.wait_seconds, 1200)

    def test_corrupt_file_starts_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "budget.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertLogs("chainpulse.autonomy", level="WARNING"):
                ledger = BudgetLedger(path)
        self.assertEqual(ledger.state["usage_by_date"], {})


if __name__ == "__main__":
    unittest.main()
