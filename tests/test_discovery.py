import unittest

from chainpulse.autonomy.discovery import (
    FALLBACK_QUERY,
    blend_source_trust,
    build_search_query,
    build_source_key,
    estimate_source_fallback_trust,
    rank_trend_candidates,
    sanitize_trend_keywords,
)
from chainpulse.autonomy.memory import TelemetryStore


def _post(post_id, author_id, username, text, likes=0, retweets=0, followers=0, verified=False):
    return {
        "id": post_id,
        "text": text,
        "author_id": author_id,
        "lang": "en",
        "metrics": {"like_count": likes, "retweet_count": retweets},
        "author": {"username": username, "followers_count": followers, "verified": verified},
    }


POSTS = [
    _post("a1", "1", "chainwatch", "Rollup sequencer fees dropped after the blob upgrade went live",
          likes=200, retweets=50, followers=50000, verified=True),
    _post("a2", "1", "chainwatch", "Layer2 settlement costs keep sliding on the main rollups this week",
          likes=100, followers=50000, verified=True),
    _post("b1", "2", "deskflow", "Exchange netflow for stablecoins turned positive again overnight",
          likes=60, followers=2000),
    _post("c1", "3", "quietdesk", "Validator queue lengths look unchanged compared with last month"),
    _post("d1", "4", "short", "fees down"),
]


class DiscoveryHelperTests(unittest.TestCase):
    def test_sanitize_trend_keywords(self):
        raw = ["ETF", "ETF", "a", "12345", "https://x.example", "@bob", "#tag", " blobs ", "x" * 31, None]
        self.assertEqual(sanitize_trend_keywords(raw), ["ETF", "blobs"])

    def test_build_search_query(self):
        self.assertEqual(
            build_search_query(["ETF", "blobs"]),
            '("ETF" OR "blobs") -is:retweet -is:reply -is:quote',
        )
        self.assertEqual(build_search_query(["1"]), f"({FALLBACK_QUERY}) -is:retweet -is:reply -is:quote")

    def test_build_source_key(self):
        self.assertEqual(build_source_key("Alice.Eth", "1"), "x:aliceeth")
        self.assertEqual(build_source_key(None, "ABC"), "x:abc")
        self.assertEqual(build_source_key("", None), "x:unknown")

    def test_fallback_trust_tiers(self):
        self.assertEqual(estimate_source_fallback_trust(True, 30000), 0.66)
        self.assertEqual(estimate_source_fallback_trust(True, 10), 0.58)
        self.assertEqual(estimate_source_fallback_trust(False, 100000), 0.62)
        self.assertEqual(estimate_source_fallback_trust(False, 10000), 0.56)
        self.assertEqual(estimate_source_fallback_trust(False, 3000), 0.5)
        self.assertEqual(estimate_source_fallback_trust(False, True), 0.42)
        self.assertEqual(estimate_source_fallback_trust(False, "big"), 0.42)

    def test_blend_source_trust(self):
        self.assertEqual(blend_source_trust(0.5, False, 0), 0.51)
        self.assertEqual(blend_source_trust(0.95, True, 10 ** 9), 0.95)


class RankTrendCandidateTests(unittest.TestCase):
    def test_one_row_per_author_above_floors(self):
        ranked = rank_trend_candidates(POSTS, ["rollup"], TelemetryStore(None), 0.24, 3.2, 6)
        self.assertEqual([row["id"] for row in ranked], ["a1", "b1"])
        self.assertEqual(ranked[0]["source_key"], "x:chainwatch")
        self.assertEqual(ranked[0]["trend_engagement"], 300)
        self.assertGreater(ranked[0]["source_trust"], ranked[1]["source_trust"])

    def test_falls_back_to_best_rows(self):
        ranked = rank_trend_candidates([POSTS[3], POSTS[4]], [], TelemetryStore(None), 0.24, 3.2, 6)
        self.assertEqual([row["id"] for row in ranked], ["c1"])

    def test_trust_floor_filters_everything(self):
        self.assertEqual(rank_trend_candidates(POSTS, [], TelemetryStore(None), 0.9, 3.2, 6), [])

    def test_learned_trust_is_used(self):
        store = TelemetryStore(None)
        store.apply_source_trust_delta_batch([("x:deskflow", 0.4, 0.42)])
        ranked = rank_trend_candidates(POSTS, [], store, 0.24, 3.2, 6)
        by_id = {row["id"]: row for row in ranked}
        self.assertGreater(by_id["b1"]["source_trust"], 0.8)


if __name__ == "__main__":
    unittest.main()
