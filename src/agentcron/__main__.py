"""Entry point: python -m agentcron"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from datetime import datetime

from agentcron.infrastructure.logger import logger
from agentcron.scheduling.cron_job import ScheduleConfigError, next_fire_time
from agentcron.scheduling.timezone import resolve_timezone


async def main() -> None:
    from agentcron.app import Orchestrator

    orchestrator = Orchestrator()

    # Handle graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await orchestrator.start()

        # Wait for shutdown signal
        await shutdown_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await orchestrator.shutdown()


def preview(expression: str, timezone: str | None, count: int, after: datetime | None = None) -> list[datetime]:
    """The next `count` fire times of `expression` in `timezone`."""
    zone = resolve_timezone(timezone)
    times: list[datetime] = []
    current = after
    for _ in range(count):
        current = next_fire_time(expression, zone, current)
        times.append(current)
    return times


def run_preview(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="agentcron preview", description="Print upcoming fire times of a cron expression")
    parser.add_argument("expression", help='Cron expression, e.g. "0 9 * * 1-5"')
    parser.add_argument("--tz", default="UTC", help="Timezone (IANA name, abbreviation, city or UTC offset)")
    parser.add_argument("-n", type=int, default=5, help="Number of fire times to print")
    args = parser.parse_args(argv)

    try:
        times = preview(args.expression, args.tz, max(1, args.n))
    except ScheduleConfigError as err:
        print(str(err), file=sys.stderr)
        return 2

    print(f"{args.expression} in {resolve_timezone(args.tz)}")
    for fire_at in times:
        print(f"  {fire_at.isoformat()}  ({fire_at.strftime('%a')})")
    return 0


def run() -> None:
    if len(sys.argv) > 1 and sys.argv[1] == "preview":
        sys.exit(run_preview(sys.argv[2:]))

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
