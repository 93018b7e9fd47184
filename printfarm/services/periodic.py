import asyncio
import logging
from typing import Optional


class PeriodicWorker:
    """
    Fixed-interval driver. Each subclass implements `run_cycle`; a failing
    cycle is logged and the loop carries on with the next tick.
    """

    name = "PeriodicWorker"

    def __init__(self, interval: float):
        self.interval = interval
        self.is_running = False
        self._task: Optional[asyncio.Task] = None
        self._logger = logging.getLogger(self.name)

    async def run_cycle(self) -> None:
        raise NotImplementedError

    async def _loop(self):
        self._logger.info(f"{self.name} started (every {self.interval}s).")
        while self.is_running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(f"Error in {self.name} cycle: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task and not self._task.done():
            return self._task
        self.is_running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        return self._task

    async def stop(self) -> None:
        self.is_running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._logger.info(f"{self.name} stopped.")
