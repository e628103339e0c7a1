import unittest
from datetime import datetime, timedelta, timezone

from chainpulse.autonomy.models import RecentPost
from chainpulse.autonomy.policy import default_adaptive_policy
from chainpulse.autonomy.quality import (
    ContentQualityRules,
    build_signal_lane,
    evaluate_post_quality,
    evaluate_reply_quality,
    extract_narrative_motifs,
    infer_topic_tag,
    resolve_content_quality_rules,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MARKET_ROWS = [{"symbol": "BTC", "name": "Bitcoin", "price": 97000.0, "change_24h": 1.2}]


def _post(content: str, hours_ago: float = 1.0) -> RecentPost:
    created = NOW - timedelta(hours=hours_ago)
    return RecentPost(id=f"p{hours_ago}", content=content, kind="post", created_at=created.isoformat())


class TopicTagTests(unittest.TestCase):
    def test_first_matching_rule_wins(self) -> None:
        self.assertEqual(infer_topic_tag("Fear and greed index slid while $BTC held"), "sentiment")
        self.assertEqual(infer_topic_tag("FOMC minutes land tomorrow"), "macro")
        self.assertEqual(infer_topic_tag("Quiet weekend"), "general")

    def test_motifs_include_ending_kind(self) -> None:
        self.assertIn("question-ending", extract_narrative_motifs("Is the whale bid real?"))
        self.assertIn("observation-ending", extract_narrative_motifs("Whale wallets kept buying."))

    def test_signal_lane_orders_by_priority(self) -> None:
        lane = build_signal_lane("Bitcoin whale wallets grew while fear index sank")
        self.assertEqual(lane, "sentiment-fear|whale-flow|btc|observation-ending")

    def test_rules_are_clamped(self) -> None:
        rules = resolve_content_quality_rules({"min_post_length": 500, "topic_block_consecutive_tag": "yes"})
        self.assertEqual(rules.min_post_length, 120)
        self.assertTrue(rules.topic_block_consecutive_tag)


class PostQualityTests(unittest.TestCase):
    def setUp(self) -> None:
        self.policy = default_adaptive_policy()

    def evaluate(self, text, recent_posts=None, own=None, **kwargs):
        return evaluate_post_quality(
            text,
            MARKET_ROWS,
            recent_posts or [],
            own or [],
            self.policy,
            ContentQualityRules(),
            now=NOW,
            **kwargs,
        )

    def test_passes_clean_post(self) -> None:
        ok, reason = self.evaluate(
            "Solana validators pushed a client upgrade and fees stayed flat overnight",
            required_trend_tokens=["solana"],
        )
        self.assertTrue(ok, reason)

    def test_too_short(self) -> None:
        self.assertEqual(self.evaluate("gm"), (False, "too-short"))

    def test_market_mismatch(self) -> None:
        ok, reason = self.evaluate("BTC $120,000 looks like the next stop for this cycle")
        self.assertFalse(ok)
        self.assertTrue(reason.startswith("market-mismatch"))

    def test_duplicate_own_text(self) -> None:
        text = "Stablecoin supply on rollups keeps climbing into the weekend"
        self.assertEqual(self.evaluate(text, own=[text]), (False, "duplicate-own-text"))

    def test_signal_lane_repeat(self) -> None:
        ok, reason = self.evaluate(
            "Ethereum gas fees dropped to a yearly low this week",
            recent_posts=[_post("Ethereum staking queue keeps growing as validators wait")],
        )
        self.assertFalse(ok)
        self.assertEqual(reason, "signal-lane-repeat lane=eth|observation-ending")

    def test_topic_diversity_blocks_consecutive_tag(self) -> None:
        ok, reason = self.evaluate(
            "Fed minutes pushed rate cut odds lower this week",
            recent_posts=[_post("FOMC week is here and desks stay cautious?")],
        )
        self.assertFalse(ok)
        self.assertEqual(reason, "topic-diversity tag=macro")

    def test_old_posts_do_not_count_for_topic_gates(self) -> None:
        ok, reason = self.evaluate(
            "Fed minutes pushed rate cut odds lower this week",
            recent_posts=[_post("FOMC week is here and desks stay cautious?", hours_ago=30)],
        )
        self.assertTrue(ok, reason)

    def test_trend_token_missing(self) -> None:
        ok, reason = self.evaluate(
            "Validators pushed a client upgrade and fees stayed flat overnight",
            required_trend_tokens=["firedancer", "$sol"],
        )
        self.assertEqual((ok, reason), (False, "trend-token-missing"))

    def test_sentiment_post_requires_fear_greed_event(self) -> None:
        text = "Fear and greed index barely moved while liquidity thinned"
        ok, reason = self.evaluate(text, fear_greed_event={"required": True, "is_event": False})
        self.assertEqual((ok, reason), (False, "fear-greed-event-missing"))

        ok, _ = self.evaluate(text, fear_greed_event={"required": True, "is_event": True})
        self.assertTrue(ok)


class ReplyQualityTests(unittest.TestCase):
    def test_reply_topic_skew(self) -> None:
        recent_replies = [
            "Ethereum blob fees collapsed after the upgrade went live",
            "Restaking yields on ethereum look thinner than last month",
            "ethereum validators queue is shrinking fast this week",
            "L2 settlement on ethereum keeps getting cheaper, builders notice",
            "FOMC minutes land tomorrow, desks are hedging early",
        ]
        ok, reason = evaluate_reply_quality(
            "Ethereum priority tips barely moved, blockspace feels calm",
            MARKET_ROWS,
            recent_replies,
            [],
            default_adaptive_policy(),
        )
        self.assertFalse(ok)
        self.assertEqual(reason, "reply-topic-skew tag=ethereum")

    def test_reply_consecutive_topic(self) -> None:
        ok, reason = evaluate_reply_quality(
            "CPI print and the Fed path decide the next leg",
            MARKET_ROWS,
            ["FOMC minutes land tomorrow, desks are hedging", "Macro desks are trimming risk before payrolls"],
            [],
            default_adaptive_policy(),
        )
        self.assertFalse(ok)
        self.assertEqual(reason, "topic-diversity tag=macro")

    def test_reply_passes(self) -> None:
        ok, reason = evaluate_reply_quality(
            "Solana fees stayed flat through the validator client rollout",
            MARKET_ROWS,
            ["FOMC minutes land tomorrow, desks are hedging early"],
            [],
            default_adaptive_policy(),
        )
        self.assertTrue(ok, reason)


if __name__ == "__main__":
    unittest.main()
