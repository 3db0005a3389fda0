"""
Standalone Heartbeat Monitor
============================

Runs the staleness scan without the HTTP API:

    python -m continuity.monitor [--interval SECONDS] [--once]

Stops on SIGINT / SIGTERM.
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

import structlog

from continuity.core.config import settings
from continuity.core.database import close_db, init_db
from continuity.core.logging import configure_logging
from continuity.core.services import build_services

logger = structlog.get_logger()


async def run(interval: Optional[int] = None, once: bool = False) -> int:
    await init_db()
    services = build_services()
    monitor = services.monitor
    if interval:
        monitor.check_interval = interval

    try:
        if once:
            notices = await monitor.check_stale()
            logger.info("Stale check finished", stale=len(notices))
            return 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still raises
                logger.debug("Signal handler unavailable", signal=sig.name)

        await monitor.start()
        await stop.wait()
        await monitor.stop()
        return 0
    finally:
        await services.fix_agent.shutdown()
        await close_db()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Supervisor Continuity heartbeat monitor")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help=f"Seconds between scans (default {settings.HEARTBEAT_CHECK_INTERVAL_SECONDS})",
    )
    parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    args = parser.parse_args(argv)

    configure_logging()
    return asyncio.run(run(interval=args.interval, once=args.once))


if __name__ == "__main__":
    sys.exit(main())
