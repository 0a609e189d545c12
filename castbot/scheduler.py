"""
Background task scheduling: bounded polling and periodic jobs.

Tasks are plain asyncio tasks owned by a ``TaskScheduler`` instance. All
errors are logged so a failing job never disrupts inbound event handling.
The sleep function is injectable so tests can run schedules without
waiting on the wall clock.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PollingTask:
    """Run ``check`` up to ``max_attempts`` times, ``interval`` seconds apart.

    ``check`` receives the attempt number and returns True once a terminal
    state was observed, which stops the sequence. An exception from
    ``check`` is logged and counts as a used attempt. When the budget runs
    out without a terminal state, ``on_exhausted`` is awaited once.
    """

    def __init__(
        self,
        name: str,
        check: Callable[[int], Awaitable[bool]],
        interval: float,
        max_attempts: int,
        on_exhausted: Optional[Callable[[], Awaitable[None]]] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.name = name
        self.interval = interval
        self.max_attempts = max_attempts
        self.attempts = 0
        self._check = check
        self._on_exhausted = on_exhausted
        self._sleep = sleep

    async def run(self) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            await self._sleep(self.interval)
            self.attempts = attempt
            try:
                if await self._check(attempt):
                    logger.info("%s finished after %d attempt(s)", self.name, attempt)
                    return True
            except Exception:
                logger.exception("%s attempt %d failed", self.name, attempt)

        logger.info("%s gave up after %d attempts", self.name, self.max_attempts)
        if self._on_exhausted is not None:
            try:
                await self._on_exhausted()
            except Exception:
                logger.exception("%s exhaustion callback failed", self.name)
        return False


class TaskScheduler:
    """Keeps track of named background tasks for the lifetime of the app."""

    def __init__(self, sleep: Sleep = asyncio.sleep):
        self.sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, name: str, job: Awaitable) -> asyncio.Task:
        """Start ``job`` in the background; a running task of the same name is cancelled."""
        existing = self._tasks.get(name)
        if existing and not existing.done():
            existing.cancel()

        task = asyncio.create_task(self._run(name, job), name=name)
        self._tasks[name] = task
        return task

    def schedule_polling(self, polling: PollingTask) -> asyncio.Task:
        return self.schedule(polling.name, polling.run())

    def start_periodic(self, name: str, interval: float, job: Callable[[], Awaitable]) -> asyncio.Task:
        """Run ``job`` every ``interval`` seconds until the scheduler shuts down."""
        return self.schedule(name, self._periodic(name, interval, job))

    async def _periodic(self, name: str, interval: float, job: Callable[[], Awaitable]):
        while True:
            await self.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("Periodic job %s failed", name)

    async def _run(self, name: str, job: Awaitable):
        try:
            return await job
        except asyncio.CancelledError:
            logger.debug("Task %s cancelled", name)
        except Exception:
            logger.exception("Task %s failed", name)
        finally:
            if self._tasks.get(name) is asyncio.current_task():
                self._tasks.pop(name, None)

    def pending(self) -> List[str]:
        return sorted(name for name, task in self._tasks.items() if not task.done())

    async def drain(self):
        """Wait until every currently scheduled task has finished."""
        while True:
            running = [task for task in self._tasks.values() if not task.done()]
            if not running:
                break
            await asyncio.gather(*running, return_exceptions=True)

    async def shutdown(self):
        pending = self.pending()
        if pending:
            logger.info("Cancelling background tasks: %s", ", ".join(pending))
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
