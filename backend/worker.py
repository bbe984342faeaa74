"""
Standalone absence reconciliation worker.

    python -m backend.worker --interval-minutes 5
    python -m backend.worker --once
"""

import argparse
import asyncio
import logging

from backend.config import ABSENCE_JOB_INTERVAL_MINUTES
from backend.logging_config import setup_logging
from backend.services.absence import AbsenceSweeper, reconcile_expired_sessions
from database.db import create_tables

logger = logging.getLogger(__name__)


async def run_forever(interval_minutes: float) -> None:
    sweeper = AbsenceSweeper(interval_minutes=interval_minutes)
    sweeper.start()
    try:
        # the sweeper task never finishes on its own
        await asyncio.Event().wait()
    finally:
        await sweeper.stop()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Mark absences for expired attendance sessions.")
    parser.add_argument("--interval-minutes", type=float, default=ABSENCE_JOB_INTERVAL_MINUTES)
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args(argv)

    if args.interval_minutes <= 0:
        parser.error("--interval-minutes must be positive")

    setup_logging()
    create_tables()

    if args.once:
        report = reconcile_expired_sessions()
        logger.info("Single sweep finished: %s", report)
        return report

    try:
        asyncio.run(run_forever(args.interval_minutes))
    except KeyboardInterrupt:
        logger.info("Absence worker interrupted")


if __name__ == "__main__":
    main()
