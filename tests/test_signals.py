import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from requests import exceptions as requests_exceptions

from chainpulse.autonomy.memory import TelemetryStore
from chainpulse.autonomy.models import OnchainNutrient, RecentPost
from chainpulse.autonomy.signals import (
    DEFAULT_TREND_KEYWORDS,
    NO_MARKET_ANCHORS,
    POST_ANGLES,
    SignalFeedError,
    SignalSource,
    estimate_news_source_fallback_trust,
    extract_title_keywords,
    format_market_anchors,
    format_market_context,
    format_onchain_context,
    normalize_market_row,
    pick_post_angle,
)


FEED = {
    "market": [
        {"symbol": "btc", "name": "Bitcoin", "price": 97000.4, "change24h": 1.234},
        {"symbol": "ETH", "name": "Ethereum", "price": "3400", "change_24h": -0.71},
        {"symbol": "", "price": 1},
    ],
    "news": [
        {"title": "Stablecoin netflow to exchanges jumps", "source": "Twitter", "summary": "USDT leads"},
        {"title": "SEC delays the spot SOL ETF decision again", "source": "CoinDesk", "category": "regulation"},
        {"summary": "no title"},
    ],
    "fear_greed": {"value": 25, "label": "Fear"},
    "nutrients": [
        {
            "id": "n1",
            "source": "onchain",
            "category": "fees",
            "label": "BTC fee rate",
            "value": "8 sat/vB",
            "evidence": "mempool median",
            "trust": 0.8,
            "freshness": 0.9,
            "metadata": {"provider": "mempool.space"},
        },
        {"id": "n2", "source": "market", "category": "price", "label": "BTC 24h", "value": "+1.2%"},
    ],
}


class _Resp:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class SignalHelperTests(unittest.TestCase):
    def test_normalize_market_row(self) -> None:
        self.assertEqual(
            normalize_market_row({"symbol": "btc", "price": "97000", "change24h": "1.5"}),
            {"symbol": "BTC", "name": "BTC", "price": 97000.0, "change_24h": 1.5},
        )
        self.assertIsNone(normalize_market_row({"symbol": "BTC", "price": "n/a"}))
        self.assertEqual(normalize_market_row({"symbol": "SOL", "price": 150})["change_24h"], 0.0)

    def test_market_anchor_lines(self) -> None:
        rows = [{"symbol": "BTC", "name": "Bitcoin", "price": 97000.4, "change_24h": 1.234}]
        self.assertEqual(format_market_anchors(rows), "- BTC: $97,000 (+1.23%)")
        self.assertEqual(format_market_anchors([]), NO_MARKET_ANCHORS)

    def test_market_context_lines(self) -> None:
        rows = [{"symbol": "ETH", "name": "Ethereum", "price": 3400.0, "change_24h": -0.71}]
        self.assertEqual(
            format_market_context(rows, {"value": 25, "label": "Fear"}),
            "FearGreed 25 (Fear)\n- ETH $3,400.00 (-0.7%)",
        )
        self.assertEqual(format_market_context([], None), "")

    def test_onchain_context_skips_other_sources(self) -> None:
        nutrients = [
            OnchainNutrient(id="1", source="onchain", category="fees", label="BTC fee rate", value="8 sat/vB",
                            evidence="mempool median", metadata={"provider": "mempool.space"}),
            OnchainNutrient(id="2", source="news", category="x", label="headline", value="1"),
        ]
        self.assertEqual(
            format_onchain_context(nutrients),
            "- BTC fee rate: 8 sat/vB | mempool median (source: mempool.space)",
        )

    def test_news_source_trust(self) -> None:
        self.assertEqual(estimate_news_source_fallback_trust("CoinDesk"), 0.62)
        self.assertEqual(estimate_news_source_fallback_trust("twitter"), 0.45)
        self.assertEqual(estimate_news_source_fallback_trust("The Block"), 0.52)

    def test_title_keywords(self) -> None:
        self.assertEqual(
            extract_title_keywords("SEC delays the spot SOL ETF decision again"),
            ["SEC", "delays", "spot", "SOL"],
        )
        self.assertEqual(extract_title_keywords("Join the private airdrop group"), [])

    def test_post_angle_skips_last_topic(self) -> None:
        self.assertEqual(pick_post_angle(0, []), POST_ANGLES[0])
        recent = [RecentPost(id="1", content="Fear index slid again", kind="post", created_at="")]
        self.assertEqual(pick_post_angle(0, recent), POST_ANGLES[1])


class SignalSourceTests(unittest.TestCase):
    def _write_feed(self, tmp: str, feed) -> Path:
        path = Path(tmp) / "feed.json"
        path.write_text(json.dumps(feed), encoding="utf-8")
        return path

    def test_collect_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = SignalSource(path=self._write_feed(tmp, FEED))
            context = source.collect_trend_context(TelemetryStore(None), 0.28, ["restaking"])

        self.assertEqual([row["symbol"] for row in context.market_rows], ["BTC", "ETH"])
        self.assertEqual(context.keywords[:4], ["$BTC", "Bitcoin", "$ETH", "Ethereum"])
        self.assertIn("restaking", context.keywords)
        self.assertEqual(context.headlines[0], "SEC delays the spot SOL ETF decision again")
        self.assertEqual(context.news_rows[0]["source_key"], "news:coindesk")
        self.assertEqual(context.news_sources[1], {"key": "news:twitter", "trust": 0.45})
        self.assertTrue(context.market_context.startswith("FearGreed 25 (Fear)\n- BTC $97,000.40 (+1.2%)"))
        self.assertEqual(context.onchain_context, "- BTC fee rate: 8 sat/vB | mempool median (source: mempool.space)")
        self.assertEqual([n.id for n in context.nutrients], ["n1", "n2"])
        self.assertTrue(context.summary.startswith("마켓 흐름: BTC +1.2% | ETH -0.7%"))

    def test_news_trust_floor_and_fallback(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = SignalSource(path=self._write_feed(tmp, FEED))
            strict = source.collect_trend_context(TelemetryStore(None), 0.5)
            impossible = source.collect_trend_context(TelemetryStore(None), 0.9)
        self.assertEqual([row["source_key"] for row in strict.news_rows], ["news:coindesk"])
        self.assertEqual(len(impossible.news_rows), 2)

    def test_learned_trust_overrides_fallback(self) -> None:
        store = TelemetryStore(None)
        store.apply_source_trust_delta_batch([("news:twitter", 0.3, 0.45)])
        with tempfile.TemporaryDirectory() as tmp:
            context = SignalSource(path=self._write_feed(tmp, FEED)).collect_trend_context(store)
        self.assertEqual(context.news_rows[0]["source_key"], "news:twitter")

    def test_missing_feed_file_uses_default_keywords(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = SignalSource(path=Path(tmp) / "absent.json")
            with self.assertLogs("chainpulse.autonomy", level="WARNING"):
                context = source.collect_trend_context(TelemetryStore(None))
        self.assertEqual(context.keywords, DEFAULT_TREND_KEYWORDS)
        self.assertEqual(context.market_rows, [])

    def test_unreadable_feed_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "feed.json"
            path.write_text("{broken", encoding="utf-8")
            with self.assertRaises(SignalFeedError):
                SignalSource(path=path).fetch_feed()

    @patch("chainpulse.autonomy.signals.requests.get")
    def test_fetch_from_url(self, mock_get) -> None:
        mock_get.return_value = _Resp(200, FEED)
        data = SignalSource(url="https://feeds.example/signal.json").fetch_feed()
        self.assertEqual(data["fear_greed"]["value"], 25)
        mock_get.assert_called_once_with("https://feeds.example/signal.json", timeout=30)

    @patch("chainpulse.autonomy.signals.requests.get")
    def test_url_errors_raise_feed_error(self, mock_get) -> None:
        source = SignalSource(url="https://feeds.example/signal.json")
        cases = [
            _Resp(503, text="unavailable"),
            _Resp(200, ValueError("bad json")),
            _Resp(200, ["not", "an", "object"]),
        ]
        for resp in cases:
            mock_get.return_value = resp
            with self.assertRaises(SignalFeedError):
                source.fetch_feed()

        mock_get.side_effect = requests_exceptions.Timeout("slow")
        with self.assertRaises(SignalFeedError):
            source.fetch_feed()


if __name__ == "__main__":
    unittest.main()
