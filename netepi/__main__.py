"""Command-line entry point: ``python -m netepi CONFIG [SCENARIO] [options]``.

Runs the configured simulation and logs one line per run with its final
state. Nothing is written to disk except an optional log file.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from netepi.config import load_config
from netepi.errors import ParameterError
from netepi.logging_utils import LEVEL_NAMES, setup_logging
from netepi.model import run_network_simulation

logger = logging.getLogger("netepi")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netepi",
        description="Network-based stochastic epidemic simulation",
    )
    parser.add_argument("config", help="Base configuration YAML")
    parser.add_argument("scenario", nargs="?", default=None,
                        help="Optional scenario override YAML")
    parser.add_argument("--runs", type=int, default=None, help="Number of replicate runs")
    parser.add_argument("--steps", type=int, default=None, help="Steps per run")
    parser.add_argument("--seed", type=int, default=None, help="Master random seed")
    parser.add_argument("--workers", type=int, default=None,
                        help="Worker processes for replicate runs")
    parser.add_argument("--log-level", default=None, type=str.upper, choices=LEVEL_NAMES,
                        help="Logging level (overrides the config)")
    parser.add_argument("--log-file", default=None, help="Also log to this file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    control = {}
    for key, value in (('n_runs', args.runs), ('n_steps', args.steps),
                       ('seed', args.seed), ('parallel_workers', args.workers)):
        if value is not None:
            control[key] = value
    overrides = {'control': control} if control else None

    try:
        config = load_config(args.config, args.scenario, sweep_overrides=overrides)
    except (ParameterError, FileNotFoundError) as exc:
        setup_logging(args.log_level or "INFO", args.log_file)
        logger.error("Invalid configuration: %s", exc)
        return 2

    setup_logging(args.log_level or config.logging.level,
                  args.log_file or config.logging.log_file)
    results = run_network_simulation(config)

    for record in results:
        last = {name: values[-1] for name, values in record.epi.items()
                if name.split('_g')[0] in ('s_num', 'i_num', 'r_num', 'num')}
        state = ", ".join(f"{k}={int(v)}" for k, v in last.items())
        if record.completed:
            logger.info("Run %d (%s) final step %d: %s",
                        record.run, record.model, record.steps_completed, state)
        else:
            logger.warning("Run %d (%s) FAILED after %d steps [%s: %s]: %s",
                           record.run, record.model, record.steps_completed,
                           record.error_type, record.error, state)
    return 0 if not results.failed else 1


if __name__ == "__main__":
    sys.exit(main())
