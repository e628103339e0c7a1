import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from chainpulse.autonomy.memory import TelemetryStore, load_memory
from chainpulse.autonomy.models import DigestRecord, DigestScore, OnchainNutrient


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.value = start

    def __call__(self) -> datetime:
        return self.value


def _record(nutrient_id: str, accepted: bool = True) -> DigestRecord:
    nutrient = OnchainNutrient(id=nutrient_id, source="onchain", category="flow", label="USDT netflow", value="+$1M")
    score = DigestScore(trust=0.8, freshness=0.8, consistency=0.7, total=0.77, reason_codes=["high-quality"])
    return DigestRecord(nutrient=nutrient, score=score, accepted=accepted, xp_gain=9 if accepted else 0, reason="")


class TelemetryStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock(datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc))
        self.store = TelemetryStore(None, now=self.clock)

    def test_posts_are_deduped_and_counted_per_local_day(self) -> None:
        self.store.save_post("1", "first post", "post")
        self.store.save_post("1", "first post again", "post")
        self.store.save_post("2", "a reply", "reply")
        self.assertEqual(self.store.get_today_post_count("Asia/Seoul"), 1)
        self.assertEqual(self.store.get_today_reply_count("Asia/Seoul"), 1)
        self.assertEqual(self.store.get_today_activity_count("Asia/Seoul"), 2)

        self.clock.value = datetime(2026, 3, 1, 16, 0, tzinfo=timezone.utc)
        self.assertEqual(self.store.get_today_activity_count("Asia/Seoul"), 0)
        self.assertEqual(self.store.get_today_activity_count("UTC"), 2)

    def test_recent_posts_filter_by_kind(self) -> None:
        self.store.save_post("1", "post one", "post", meta={"lane": "macro"})
        self.store.save_post("2", "reply one", "reply")
        self.store.save_post("3", "post two", "post")
        posts = self.store.get_recent_posts(5, kind="post")
        self.assertEqual([post.id for post in posts], ["1", "3"])
        self.assertEqual(posts[0].meta, {"lane": "macro"})
        self.assertEqual(self.store.get_recent_own_texts(1), ["post two"])
        self.assertEqual(self.store.get_last_post_at("post"), self.clock.value)

    def test_mentions(self) -> None:
        self.assertFalse(self.store.has_replied_to("99"))
        self.store.mark_replied(99)
        self.assertTrue(self.store.has_replied_to("99"))
        self.store.set_last_mention_id("120")
        self.assertEqual(self.store.get_last_mention_id(), "120")

    def test_post_generation_metrics(self) -> None:
        self.store.record_post_generation("Asia/Seoul", 1, used_fallback=False, success=True)
        self.store.record_post_generation("Asia/Seoul", 2, used_fallback=True, success=False, fail_reason="duplicate")
        self.store.record_post_generation(
            "Asia/Seoul", 2, used_fallback=True, success=False, fail_reason="duplicate", event_key="run-1"
        )
        self.store.record_post_generation(
            "Asia/Seoul", 2, used_fallback=True, success=False, fail_reason="duplicate", event_key="run-1"
        )
        metrics = self.store.get_today_post_generation_metrics("Asia/Seoul")
        self.assertEqual(metrics["post_runs"], 3)
        self.assertEqual(metrics["post_successes"], 1)
        self.assertEqual(metrics["post_failures"], 2)
        self.assertEqual(metrics["fail_reasons"], {"duplicate": 2})
        self.assertAlmostEqual(metrics["avg_retries"], 1.67)
        self.assertAlmostEqual(metrics["fallback_rate"], 0.67)

    def test_old_metrics_are_compacted(self) -> None:
        self.store.record_post_generation("UTC", 0, used_fallback=False, success=True)
        self.clock.value = self.clock.value + timedelta(days=20)
        self.store.record_post_generation("UTC", 0, used_fallback=False, success=True)
        self.assertEqual(list(self.store.data["post_generation"].keys()), ["2026-03-21"])

    def test_nutrient_intake_skips_known_ids(self) -> None:
        self.assertEqual(self.store.record_nutrient_batch_intake([_record("a"), _record("b", False)]), 2)
        self.assertEqual(self.store.record_nutrient_batch_intake([_record("a"), _record("c")]), 1)
        ledger = self.store.get_recent_nutrient_ledger(10)
        self.assertEqual([row["nutrient_id"] for row in ledger], ["a", "b", "c"])
        self.assertEqual(ledger[0]["digest_score"]["consistency"], 0.7)
        self.assertFalse(ledger[1]["accepted"])

    def test_source_trust_deltas_are_clamped(self) -> None:
        self.assertEqual(self.store.get_source_trust("news:coindesk", 0.6), 0.6)
        self.store.apply_source_trust_delta_batch([("News:CoinDesk", 0.015, 0.6), ("", 0.5, 0.5)])
        self.assertAlmostEqual(self.store.get_source_trust("news:coindesk"), 0.615)
        self.store.apply_source_trust_delta_batch([("x:whale", 2.0, 0.5)])
        self.assertEqual(self.store.get_source_trust("x:whale"), 0.95)

    def test_source_trust_event_key_applies_once(self) -> None:
        for _ in range(2):
            self.store.apply_source_trust_delta_batch([("x:alice", -0.01, 0.5)], event_key="reply:1")
        self.assertAlmostEqual(self.store.get_source_trust("x:alice"), 0.49)

    def test_fingerprints_keep_order(self) -> None:
        for key in ("a", "b", "c"):
            self.store.remember_signal_fingerprint(key)
        self.assertEqual(self.store.get_recent_signal_fingerprints(2), ["b", "c"])
        self.assertEqual(self.store.get_recent_signal_fingerprints(0), [])


class TelemetryPersistenceTests(unittest.TestCase):
    def test_commit_and_reload(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "memory.json"
            store = TelemetryStore(path)
            self.assertFalse(store.commit())

            store.save_post("1", "hello chain", "post")
            store.set_last_fear_greed({"value": 40, "label": "Fear"})
            self.assertTrue(store.commit())
            self.assertFalse(store.commit())

            reloaded = TelemetryStore(path)
            self.assertEqual(reloaded.get_recent_own_texts(), ["hello chain"])
            self.assertEqual(reloaded.get_last_fear_greed(), {"value": 40, "label": "Fear"})

    def test_claimed_event_key_survives_reload(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "memory.json"
            store = TelemetryStore(path)
            store.apply_source_trust_delta_batch([("", 0.015, 0.5)], event_key="reply:7")
            self.assertTrue(store.commit())

            reloaded = TelemetryStore(path)
            reloaded.apply_source_trust_delta_batch([("x:alice", 0.015, 0.5)], event_key="reply:7")
            self.assertEqual(reloaded.get_source_trust("x:alice", 0.5), 0.5)
            self.assertFalse(reloaded.commit())

    def test_load_memory_repairs_types(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "memory.json"
            path.write_text(json.dumps({"posts": {}, "replied_ids": ["1"]}), encoding="utf-8")
            data = load_memory(path)
        self.assertEqual(data["posts"], [])
        self.assertEqual(data["replied_ids"], ["1"])
        self.assertEqual(data["source_trust"], {})

    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            data = load_memory(Path(tmp) / "absent.json")
        self.assertEqual(data["posts"], [])
        self.assertIsNone(data["last_mention_id"])


if __name__ == "__main__":
    unittest.main()
