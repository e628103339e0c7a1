import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from chainpulse.cli import build_parser, cmd_digest


class CliTests(unittest.TestCase):
    def test_parser_commands(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["loop", "--max-cycles", "2"])
        self.assertEqual(args.command, "loop")
        self.assertEqual(args.max_cycles, 2)

        args = parser.parse_args(["digest", "nutrients.json", "--min-score", "0.6"])
        self.assertEqual(args.file, "nutrients.json")
        self.assertEqual(args.min_score, 0.6)

        with self.assertRaises(SystemExit), redirect_stdout(io.StringIO()), patch("sys.stderr", io.StringIO()):
            parser.parse_args([])

    def test_digest_command_prints_scores(self) -> None:
        rows = [
            {"id": "n1", "source": "onchain", "category": "flow", "label": "USDT netflow", "value": "+$120M",
             "trust": 0.85, "freshness": 0.9},
            {"id": "n2", "source": "news", "category": "rumor", "label": "Unverified listing", "value": "soon",
             "trust": 0.2, "freshness": 0.3},
        ]
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nutrients.json"
            path.write_text(json.dumps({"nutrients": rows}), encoding="utf-8")
            env = {"CHAINPULSE_MEMORY_PATH": str(Path(tmp) / "memory.json")}
            args = build_parser().parse_args(["digest", str(path)])
            out = io.StringIO()
            with patch.dict(os.environ, env, clear=True), redirect_stdout(out):
                cmd_digest(args)
            self.assertFalse((Path(tmp) / "memory.json").exists())

        data = json.loads(out.getvalue())
        self.assertEqual(data["intake_count"], 2)
        self.assertEqual(data["accepted_count"], 1)
        self.assertEqual([record["accepted"] for record in data["records"]], [True, False])
        self.assertEqual(data["records"][0]["score"]["total"], 0.82)


if __name__ == "__main__":
    unittest.main()
