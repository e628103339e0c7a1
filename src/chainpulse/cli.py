import argparse
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

from .autonomy.budget_ledger import BudgetLedger
from .autonomy.config import load_config
from .autonomy.digest import digest_nutrients
from .autonomy.memory import TelemetryStore
from .autonomy.models import OnchainNutrient
from .autonomy.runner import run_loop, run_once
from .platform_client import PlatformAuthError


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False))


def cmd_cycle(_: argparse.Namespace) -> None:
    """Run one quota cycle and print its summary."""
    result = run_once()
    print_json({
        "target": result.target,
        "executed": result.executed,
        "remaining": result.remaining,
        "posts": result.posts,
        "replies": result.replies,
        "digest_gated": result.digest_gated,
    })


def cmd_loop(args: argparse.Namespace) -> None:
    """Run the scheduler loop until interrupted or --max-cycles is reached."""
    cfg = load_config()
    if args.max_cycles is not None:
        cfg.max_cycles = max(0, args.max_cycles)
    run_loop(cfg)


def cmd_budget(_: argparse.Namespace) -> None:
    """Show today's external API budget bucket."""
    cfg = load_config()
    ledger = BudgetLedger(cfg.budget_path)
    print_json(ledger.get_today_usage(cfg.timezone).to_dict())


def cmd_digest(args: argparse.Namespace) -> None:
    """Score a nutrient file without recording anything.

    Example:

        chainpulse digest data/nutrients.json --min-score 0.55
    """
    path = Path(args.file)
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    rows = data.get("nutrients", []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise SystemExit(f"{path} must hold a list of nutrients or an object with a 'nutrients' list.")

    cfg = load_config()
    store = TelemetryStore(cfg.memory_path)
    result = digest_nutrients(
        [OnchainNutrient.from_dict(row) for row in rows if isinstance(row, dict)],
        store.get_recent_nutrient_ledger(120),
        min_digest_score=args.min_score if args.min_score is not None else cfg.min_digest_score,
        max_items=cfg.digest_max_items,
    )
    print_json({
        "intake_count": result.intake_count,
        "accepted_count": result.accepted_count,
        "avg_digest_score": result.avg_digest_score,
        "xp_gain_total": result.xp_gain_total,
        "records": [
            {
                "id": record.nutrient.id,
                "label": record.nutrient.label,
                "accepted": record.accepted,
                "xp_gain": record.xp_gain,
                "reason": record.reason,
                "score": asdict(record.score),
            }
            for record in result.records
        ],
    })


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Quota-driven content scheduler for an autonomous crypto posting agent.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_cycle = subparsers.add_parser("cycle", help="Run one quota cycle")
    p_cycle.set_defaults(func=cmd_cycle)

    p_loop = subparsers.add_parser("loop", help="Run the scheduler loop")
    p_loop.add_argument("--max-cycles", type=int, help="Stop after this many cycles (0 runs forever)")
    p_loop.set_defaults(func=cmd_loop)

    p_budget = subparsers.add_parser("budget", help="Show today's API budget usage")
    p_budget.set_defaults(func=cmd_budget)

    p_digest = subparsers.add_parser("digest", help="Score a nutrient JSON file")
    p_digest.add_argument("file", help="Path to a JSON list of nutrients or {'nutrients': [...]}")
    p_digest.add_argument("--min-score", type=float, help="Override the minimum digest score")
    p_digest.set_defaults(func=cmd_digest)

    return parser


def main() -> None:
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except PlatformAuthError as e:
        raise SystemExit(str(e))
    except (OSError, ValueError, RuntimeError) as e:
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
