"""
Polar Bridge - Periodic Jobs

Cooperative loop around one async callable:

- the loop awaits each iteration, so runs never overlap
- a manual trigger while a run is in flight is skipped (single-flight)
- FatalError halts the job and marks it unhealthy; other failures are
  logged and retried on the next interval
- stop() cancels the loop and waits for it
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from polarbridge.core.errors import FatalError
from polarbridge.models.schemas import utc_now

logger = logging.getLogger(__name__)


class JobHealth(BaseModel):
    name: str
    interval_seconds: float
    running: bool = False
    halted: bool = False
    runs: int = 0
    skipped: int = 0
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None


class PeriodicJob:

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.name = name
        self.func = func
        self.interval = interval_seconds
        self.clock = clock
        self.health = JobHealth(name=name, interval_seconds=interval_seconds)
        self._task: Optional[asyncio.Task] = None
        self._busy = False

    @property
    def healthy(self) -> bool:
        return not self.health.halted

    async def run_once(self) -> bool:
        """Run one iteration now. Returns False when skipped because a run is in flight."""
        if self._busy:
            self.health.skipped += 1
            logger.debug(f"[JOB:{self.name}] Previous run still in flight, skipping")
            return False

        self._busy = True
        try:
            await self.func()
            self.health.runs += 1
            self.health.last_success = self.clock()
        except FatalError as e:
            self.health.halted = True
            self.health.last_error = f"{e.code}: {e.message}"
            self.health.last_error_at = self.clock()
            logger.critical(f"[JOB:{self.name}] Halted on fatal error: {e.message}")
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.health.last_error = repr(e)
            self.health.last_error_at = self.clock()
            logger.exception(f"[JOB:{self.name}] Run failed, retrying next interval")
        finally:
            self._busy = False
        return True

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except FatalError:
                return
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is not None:
            return
        self.health.running = True
        self._task = asyncio.create_task(self._loop(), name=f"job:{self.name}")
        logger.info(f"[JOB:{self.name}] Started, every {self.interval}s")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        self.health.running = False
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info(f"[JOB:{self.name}] Stopped")
