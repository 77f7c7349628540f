"""
Periodic background loops.

Each sweep (challenge expiry, cache eviction, renewal checks) runs as its
own asyncio task. A failing iteration is logged and the loop carries on,
so one broken worker never takes down its siblings.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union


logger = logging.getLogger(__name__)

WorkerFunc = Callable[[], Union[None, Awaitable[None]]]


class PeriodicWorker:
    """
    Runs a callback at a fixed interval on the running event loop.

    The callback may be a plain function or a coroutine function.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: WorkerFunc,
        initial_delay: Optional[float] = None,
    ):
        """
        Initialize the worker.

        Args:
            name: Name used in log lines
            interval: Seconds between runs
            func: Callback to run
            initial_delay: Seconds before the first run (defaults to interval)
        """
        self.name = name
        self.interval = interval
        self.func = func
        self.initial_delay = interval if initial_delay is None else initial_delay
        self.run_count = 0
        self.fail_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        """Check if the worker task is running."""
        return self._task is not None and not self._task.done()

    async def run_once(self) -> bool:
        """Run the callback once. Returns False if it raised."""
        self.run_count += 1
        try:
            result = self.func()
            if inspect.isawaitable(result):
                await result
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.fail_count += 1
            logger.exception("[WORKER] %s iteration failed: %s", self.name, e)
            return False

    async def _loop(self) -> None:
        logger.info("[WORKER] %s started (every %s seconds)", self.name, self.interval)
        try:
            await asyncio.sleep(self.initial_delay)
            while True:
                await self.run_once()
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info("[WORKER] %s cancelled", self.name)
            raise

    def start(self) -> None:
        """Start the background task on the running loop."""
        if self.is_running:
            logger.warning("[WORKER] %s already running", self.name)
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)

    def stop(self) -> None:
        """Stop the background task."""
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("[WORKER] %s stopped", self.name)
        self._task = None
