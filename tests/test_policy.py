import random
import unittest

from chainpulse.autonomy.policy import (
    build_adaptive_policy,
    default_adaptive_policy,
    normalize_daily_target,
    random_int,
    to_reason_code,
)


class _MetricsStore:
    def __init__(self, metrics) -> None:
        self.metrics = metrics
        self.calls = []

    def get_today_post_generation_metrics(self, timezone):
        self.calls.append(timezone)
        return self.metrics


class AdaptivePolicyTests(unittest.TestCase):
    def test_under_target_loosens_trend_floors(self) -> None:
        policy = build_adaptive_policy(20, 2, "Asia/Seoul", None, metrics={"post_runs": 0})
        self.assertEqual(policy.rationale, "default+under-target")
        self.assertAlmostEqual(policy.min_trend_score, 2.6)
        self.assertAlmostEqual(policy.min_source_trust, 0.29)
        self.assertAlmostEqual(policy.post_duplicate_threshold, 0.74)

    def test_over_target_tightens_everything(self) -> None:
        policy = build_adaptive_policy(20, 22, "Asia/Seoul", None, metrics={})
        self.assertEqual(policy.rationale, "default+over-target")
        self.assertAlmostEqual(policy.post_duplicate_threshold, 0.69)
        self.assertAlmostEqual(policy.post_narrative_threshold, 0.65)
        self.assertAlmostEqual(policy.reply_duplicate_threshold, 0.81)
        self.assertAlmostEqual(policy.min_trend_score, 3.15)
        self.assertEqual(policy.min_trend_engagement, 5)
        self.assertAlmostEqual(policy.min_source_trust, 0.37)

    def test_mid_progress_keeps_defaults(self) -> None:
        policy = build_adaptive_policy(20, 10, "Asia/Seoul", None, metrics={"post_runs": 4, "post_failures": 1})
        self.assertEqual(policy.rationale, "default")
        self.assertEqual(policy.to_dict(), {**default_adaptive_policy().to_dict(), "rationale": "default"})

    def test_high_failure_load(self) -> None:
        policy = build_adaptive_policy(
            20, 10, "Asia/Seoul", None, metrics={"post_runs": 4, "post_failures": 2, "fallback_rate": 0.0}
        )
        self.assertEqual(policy.rationale, "default+high-fallback-or-fail")
        self.assertAlmostEqual(policy.min_trend_score, 2.7)

    def test_duplicate_heavy_day(self) -> None:
        policy = build_adaptive_policy(
            20, 22, "Asia/Seoul", None, metrics={"post_runs": 5, "fail_reasons": {"duplicate": 3}}
        )
        self.assertEqual(policy.rationale, "default+over-target+duplicate-heavy")
        self.assertAlmostEqual(policy.post_duplicate_threshold, 0.66)
        self.assertAlmostEqual(policy.reply_duplicate_threshold, 0.79)
        self.assertAlmostEqual(policy.reply_narrative_threshold, 0.73)

    def test_clamps_hold_under_stacked_adjustments(self) -> None:
        policy = build_adaptive_policy(
            20, 0, "Asia/Seoul", None,
            metrics={"post_runs": 2, "post_failures": 2, "fallback_rate": 1.0, "fail_reasons": {"duplicate": 9}},
        )
        self.assertGreaterEqual(policy.min_trend_score, 2.2)
        self.assertGreaterEqual(policy.post_duplicate_threshold, 0.65)
        self.assertGreaterEqual(policy.min_source_trust, 0.24)

    def test_reads_metrics_from_store(self) -> None:
        store = _MetricsStore({"post_runs": 0})
        build_adaptive_policy(20, 5, "UTC", store)
        self.assertEqual(store.calls, ["UTC"])


class HelperTests(unittest.TestCase):
    def test_to_reason_code(self) -> None:
        self.assertEqual(to_reason_code("narrative-duplicate sim=0.81"), "duplicate")
        self.assertEqual(to_reason_code("duplicate-own-text"), "duplicate")
        self.assertEqual(to_reason_code("opening-repeat"), "duplicate")
        self.assertEqual(to_reason_code("market-mismatch btc_claim=$120,000"), "market-mismatch")
        self.assertEqual(to_reason_code("event-anchor-missing"), "evidence-contract")
        self.assertEqual(to_reason_code("evidence-anchor-missing"), "evidence-contract")
        self.assertEqual(to_reason_code("topic-density tag=macro"), "topic-density")
        self.assertEqual(to_reason_code("signal-lane-repeat lane=btc"), "quality-gate")
        self.assertEqual(to_reason_code(""), "unknown")

    def test_normalize_daily_target(self) -> None:
        self.assertEqual(normalize_daily_target(500), 100)
        self.assertEqual(normalize_daily_target(0), 1)
        self.assertEqual(normalize_daily_target(7.9), 7)
        self.assertEqual(normalize_daily_target("x"), 20)
        self.assertEqual(normalize_daily_target(True), 20)

    def test_random_int(self) -> None:
        self.assertEqual(random_int(30, 30), 30)
        self.assertEqual(random_int(40, 10), 40)
        rng = random.Random(7)
        for _ in range(20):
            self.assertTrue(25 <= random_int(25, 70, rng) <= 70)


if __name__ == "__main__":
    unittest.main()
