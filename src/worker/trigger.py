#!/usr/bin/env python3
"""
Run one reduction pass from the command line (cron, CI, operators).

Exit status is 0 for completed, no-op and cancelled runs and 1 when the
run could not claim or read its dedup row.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from src.errors import RunFatalError
from src.logging_config import setup_logging
from src.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the daily price reduction pass")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Bypass the once-per-day guard (operator-initiated run)",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Cancel processing after this many seconds",
    )
    return parser


async def run(force: bool = False, deadline: Optional[float] = None) -> int:
    try:
        summary = await task_runner.run_reductions(
            trigger="cli", force=force, deadline_seconds=deadline
        )
    except RunFatalError as e:
        logger.error(f"Reduction run failed: {e}")
        return 1
    finally:
        await task_runner.close()

    print(
        f"status={summary.status} date={summary.run_date} eligible={summary.attempted} "
        f"success={summary.success} skip={summary.skip} fail={summary.fail}"
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    return asyncio.run(run(force=args.force, deadline=args.deadline))


if __name__ == "__main__":
    sys.exit(main())
