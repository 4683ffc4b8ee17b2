"""
POLAR BRIDGE - Headless worker.

Runs the watchers, settlement retry sweep, accrual and liquidation jobs
without the HTTP surface. Exits non-zero when a job halts.

    python -m polarbridge.worker
"""

import asyncio
import logging
import signal
import sys

from polarbridge.core.config import get_settings
from polarbridge.core.log import configure_logging
from polarbridge.services.runtime import BridgeRuntime

logger = logging.getLogger(__name__)

HEALTH_CHECK_SECONDS = 5.0


async def run() -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    runtime = BridgeRuntime.from_settings(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await runtime.start()
    try:
        while not stop.is_set():
            if not runtime.healthy:
                logger.critical(f"[WORKER] Halted: {runtime.health()}")
                return 1
            try:
                await asyncio.wait_for(stop.wait(), timeout=HEALTH_CHECK_SECONDS)
            except asyncio.TimeoutError:
                continue
        return 0
    finally:
        await runtime.stop()


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
