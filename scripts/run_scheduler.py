#!/usr/bin/env python3
"""Run the journey and queued-message scheduler as a daemon or a single tick."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Ensure the project source is importable when running the script directly.
_project_root = Path(__file__).resolve().parent.parent
_src = _project_root / "src"
if str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from comms.core.config import Settings  # noqa: E402
from comms.services import create_services  # noqa: E402

logger = logging.getLogger("comms.scheduler.cli")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Execute due journey steps and deliver due queued messages."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit (for cron).",
    )
    parser.add_argument(
        "--inactivity",
        action="store_true",
        help="With --once, also scan for inactive users.",
    )
    parser.add_argument(
        "--inactivity-every",
        type=int,
        default=60,
        help="In daemon mode, scan for inactive users every N ticks (default: 60).",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()

    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    services = create_services(settings)
    await services.startup()
    try:
        if args.once:
            report = await services.scheduler.tick(include_inactivity=args.inactivity)
            print(report.model_dump_json(indent=2))
            sys.exit(1 if report.journeys.failed else 0)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        logger.info(
            "Scheduler started as %s, ticking every %ds",
            settings.journey.worker_id, settings.journey.tick_interval_seconds,
        )
        await services.scheduler.run_forever(stop, inactivity_every=args.inactivity_every)
        logger.info("Scheduler stopped")
    finally:
        await services.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
