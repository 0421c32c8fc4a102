#!/usr/bin/env python3
"""Estimate point prevalence from a registry CSV.

Example:
    python scripts/run_prevalence.py registry.csv --config configs/default.yaml \
        --years 5 10 --n-boot 200 --json results/prevalence.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import pandas as pd

# ── Project imports ──────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from prevest.config import load_config
from prevest.estimate import estimate_from_config
from prevest.perf import StageTimer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Estimate point prevalence from registry data.",
        epilog="Example: python scripts/run_prevalence.py registry.csv --years 5 10",
    )
    parser.add_argument("registry", help="Registry CSV, one row per subject")
    parser.add_argument(
        "--config", type=str, default=str(PROJECT_ROOT / "configs" / "default.yaml"),
        help="Base config YAML (default: configs/default.yaml)",
    )
    parser.add_argument(
        "--scenario", type=str, default=None,
        help="Scenario YAML merged over the base config",
    )
    parser.add_argument("--years", type=int, nargs="+", default=None,
                        help="Override estimation.num_years_to_estimate")
    parser.add_argument("--population-size", type=float, default=None,
                        help="Override estimation.population_size")
    parser.add_argument("--n-boot", type=int, default=None,
                        help="Override bootstrap.n_boot")
    parser.add_argument("--n-cores", type=int, default=None,
                        help="Override simulation.n_cores")
    parser.add_argument("--seed", type=int, default=None,
                        help="Override simulation.seed")
    parser.add_argument("--json", type=str, default=None,
                        help="Write the result summary to this JSON file")
    parser.add_argument("--timing", action="store_true",
                        help="Print per-stage timing")
    parser.add_argument("--verbose", action="store_true",
                        help="Log progress to stderr")
    return parser


def _overrides(args) -> dict:
    out = {}
    if args.years is not None:
        out.setdefault('estimation', {})['num_years_to_estimate'] = args.years
    if args.population_size is not None:
        out.setdefault('estimation', {})['population_size'] = args.population_size
    if args.n_boot is not None:
        out.setdefault('bootstrap', {})['n_boot'] = args.n_boot
    if args.n_cores is not None:
        out.setdefault('simulation', {})['n_cores'] = args.n_cores
    if args.seed is not None:
        out.setdefault('simulation', {})['seed'] = args.seed
    return out


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = load_config(args.config, args.scenario, _overrides(args))
    data = pd.read_csv(args.registry)
    timer = StageTimer(enabled=args.timing)

    result = estimate_from_config(data, config, timer=timer)
    print(result)
    print()
    print(result.summary())
    if args.timing:
        print()
        print(timer.report())

    if args.json:
        out_path = Path(args.json)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, 'w') as f:
            json.dump(result.to_dict(), f, indent=2)
        print(f"\nWrote {out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
