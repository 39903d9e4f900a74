"""
Async Utilities - periodic drivers for the keeper loops.

Usage:
    task = PeriodicTask("crank", scheduler.tick, interval_secs=5)
    task.start()
    ...
    await task.stop()
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Fires a coroutine function on a fixed interval.

    Runs do not queue: when a tick arrives while the previous run is still in
    progress, the tick is skipped. stop() cancels the timer only; a run that
    is already in progress is left to finish.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_secs: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self.func = func
        self.interval_secs = interval_secs
        self.run_immediately = run_immediately
        self._timer: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self._running = False
        self.runs = 0
        self.skipped = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        if self._running:
            logger.warning(f"[{self.name}] already running")
            return
        self._running = True
        self._timer = asyncio.create_task(self._loop(), name=f"{self.name}.timer")
        logger.info(f"[{self.name}] started, every {self.interval_secs}s")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        logger.info(f"[{self.name}] stopped")

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for an in-progress run to finish."""
        if self.busy:
            await asyncio.wait({self._current}, timeout=timeout)

    def fire(self) -> bool:
        """Start a run now unless one is in progress. Returns False when skipped."""
        if self.busy:
            self.skipped += 1
            logger.debug(f"[{self.name}] previous run still in progress, skipping tick")
            return False
        self._current = asyncio.create_task(self._run_once(), name=f"{self.name}.run")
        return True

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval_secs)
        while self._running:
            self.fire()
            await asyncio.sleep(self.interval_secs)

    async def _run_once(self) -> None:
        self.runs += 1
        try:
            await self.func()
        except Exception as exc:
            self.failures += 1
            logger.error(f"[{self.name}] run failed: {type(exc).__name__}: {exc}", exc_info=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "busy": self.busy,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "interval_secs": self.interval_secs,
        }
