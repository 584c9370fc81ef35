"""Run the renewal sweep manually.

Usage:
    python -m scripts.run_renewal_sweep
    python -m scripts.run_renewal_sweep --loop [interval_seconds]
"""

import asyncio
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from paysub.core.config import settings
from paysub.core.container import ServiceContainer
from paysub.core.logging import setup_logging


async def run_once(container: ServiceContainer):
    """Run one sweep and print its summary."""
    print("\n" + "=" * 60)
    print("Running Renewal Sweep")
    print("=" * 60)

    summary = await container.renewal_scheduler.run_sweep()

    result = summary.as_dict()
    print(f"\nResults:")
    print(f"  Due subscriptions: {result['due']}")
    for outcome, count in sorted(result["outcomes"].items()):
        print(f"    {outcome}: {count}")
    print(f"  Suspended: {result['suspended']}")
    print(f"  Expired: {result['expired']}")
    print(f"  Reminders sent: {result['reminders_sent']}")
    print(f"  Errors: {result['errors']}")
    print(f"  Run at: {result['started_at']}")


async def run_loop(container: ServiceContainer, interval: int):
    """Sweep every interval seconds until interrupted."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    print(f"Sweeping every {interval}s, Ctrl+C to stop")
    await container.renewal_scheduler.run_forever(interval, stop_event)


async def main():
    setup_logging(level=settings.LOG_LEVEL, json_format=False)

    loop_mode = len(sys.argv) > 1 and sys.argv[1] == "--loop"
    interval = int(sys.argv[2]) if loop_mode and len(sys.argv) > 2 else settings.RENEWAL_INTERVAL_SECONDS

    container = ServiceContainer.from_settings(settings)
    try:
        if loop_mode:
            await run_loop(container, interval)
        else:
            await run_once(container)
    finally:
        await container.aclose()


if __name__ == "__main__":
    asyncio.run(main())
