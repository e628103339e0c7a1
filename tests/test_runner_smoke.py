import json
import os
import tempfile
import unittest
import warnings
from pathlib import Path
from unittest.mock import patch


FEED = {
    "market": [{"symbol": "BTC", "name": "Bitcoin", "price": 97000, "change_24h": 1.2}],
    "news": [{"title": "Stablecoin netflow to exchanges jumps overnight", "source": "CoinDesk"}],
    "fear_greed": {"value": 25, "label": "Fear"},
    "nutrients": [
        {"id": "n1", "source": "onchain", "category": "flow", "label": "USDT exchange netflow", "value": "+$120M",
         "trust": 0.85, "freshness": 0.9},
        {"id": "n2", "source": "market", "category": "derivatives", "label": "Perp funding", "value": "0.012%",
         "trust": 0.8, "freshness": 0.9},
    ],
}


class RunnerSmokeTests(unittest.TestCase):
    def test_runner_startup_smoke(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            feed_path = root / "signal-feed.json"
            feed_path.write_text(json.dumps(FEED), encoding="utf-8")
            env = {
                "CHAINPULSE_DRY_RUN": "1",
                "CHAINPULSE_MAX_CYCLES": "1",
                "CHAINPULSE_LOG_LEVEL": "INFO",
                "CHAINPULSE_MEMORY_PATH": str(root / "memory.json"),
                "CHAINPULSE_BUDGET_PATH": str(root / "budget.json"),
                "CHAINPULSE_SIGNAL_FEED_PATH": str(feed_path),
                "CHAINPULSE_OBSERVABILITY_EVENT_LOG_PATH": str(root / "events.jsonl"),
            }
            with patch.dict(os.environ, env, clear=True), patch(
                "chainpulse.platform_client.CREDENTIALS_PATH", root / "credentials.json"
            ):
                from chainpulse.autonomy.runner import run_loop

                with warnings.catch_warnings():
                    warnings.filterwarnings("ignore", category=ResourceWarning)
                    cycles = run_loop()

            self.assertEqual(cycles, 1)
            events = (root / "events.jsonl").read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(events), 1)
            self.assertEqual(json.loads(events[0])["type"], "quota_cycle")
            self.assertTrue((root / "memory.json").exists())


if __name__ == "__main__":
    unittest.main()
