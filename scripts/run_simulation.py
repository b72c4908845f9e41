"""Offline simulation of the progression policy with synthetic learner personas."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engine_settings import EngineSettingsError, load_settings
from engines.simulation import LearningSimulation
from env_validation import EnvironmentError, validate_environment


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--steps",
        type=int,
        default=30,
        help="Generate/complete cycles per persona (default: 30)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible runs",
    )
    parser.add_argument(
        "--settings",
        type=str,
        default=None,
        help="Optional engine settings JSON file",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON report",
    )
    return parser


def _write_output(report: dict, output_path: str | None) -> None:
    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if output_path:
        Path(output_path).write_text(payload + "\n", encoding="utf-8")
    print(payload)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        validate_environment()
        settings = load_settings(args.settings)
    except (EnvironmentError, EngineSettingsError, FileNotFoundError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    simulation = LearningSimulation(settings=settings, random_seed=args.seed)
    episodes = simulation.run(steps=args.steps)
    metrics = simulation.summarise(episodes)
    report = {
        "steps": args.steps,
        "seed": args.seed,
        "personas": [asdict(item) for item in metrics],
    }
    _write_output(report, args.output)

    repeats = sum(item.immediate_repeats for item in metrics)
    if repeats:
        print(f"{repeats} immediate task repeats detected.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
