"""
Supervised job tasks.

JobTaskRunner owns every detached pipeline task. Each task carries a
CancellationToken checked between stages, and a done-callback error
boundary reports unexpected crashes instead of losing them.

QueueClaimer feeds queued jobs to the runner in deployments where several
worker processes share one job store; the conditional claim inside
JobOrchestrator.run() decides which worker actually proceeds.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Raised at a stage boundary when the runner is shutting down."""


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled()


TaskFactory = Callable[[CancellationToken], Awaitable]
CrashHandler = Callable[[str, BaseException], Awaitable[None]]


class JobTaskRunner:
    """
    Usage:
        runner = JobTaskRunner(on_crash=orchestrator.handle_crash)
        runner.submit(job_id, lambda token: orchestrator.run(job_id, token))
        ...
        await runner.shutdown()
    """

    def __init__(self, on_crash: Optional[CrashHandler] = None):
        self.on_crash = on_crash
        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._crash_tasks: set[asyncio.Task] = set()
        self._closed = False

    def submit(self, key: str, factory: TaskFactory) -> Optional[asyncio.Task]:
        """Start a task unless one with the same key is already running."""
        if self._closed:
            logger.warning(f"Runner is shut down; not starting {key}")
            return None

        existing = self._tasks.get(key)
        if existing and not existing.done():
            return existing

        token = CancellationToken()
        task = asyncio.create_task(factory(token), name=f"job:{key}")
        self._tasks[key] = task
        self._tokens[key] = token
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            self._tasks.pop(key, None)
            self._tokens.pop(key, None)

        if task.cancelled():
            logger.info(f"Task {key} cancelled")
            return

        exc = task.exception()
        if exc is None or isinstance(exc, JobCancelled):
            return

        logger.error(f"Task {key} crashed: {type(exc).__name__}: {exc}", exc_info=exc)
        if self.on_crash:
            crash = asyncio.create_task(self.on_crash(key, exc))
            self._crash_tasks.add(crash)
            crash.add_done_callback(self._crash_tasks.discard)

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return bool(task and not task.done())

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for every running task (and crash handler) to finish."""
        while self._tasks or self._crash_tasks:
            pending = [*self._tasks.values(), *self._crash_tasks]
            await asyncio.wait(pending, timeout=timeout)
            if timeout is not None:
                break

    async def shutdown(self, grace: float = 10.0) -> None:
        """Signal tokens, give tasks a grace period, then cancel what is left."""
        self._closed = True
        for token in self._tokens.values():
            token.cancel()

        pending = [t for t in self._tasks.values() if not t.done()]
        if pending:
            logger.info(f"Waiting up to {grace}s for {len(pending)} job task(s)")
            done, still_running = await asyncio.wait(pending, timeout=grace)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)


class QueueClaimer:
    """Periodically hands queued jobs to a dispatch callable."""

    def __init__(
        self,
        list_queued: Callable[[], Awaitable[list]],
        dispatch: Callable[[str], None],
        interval: float = 2.0,
    ):
        self.list_queued = list_queued
        self.dispatch = dispatch
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    async def poll_once(self) -> int:
        jobs = await self.list_queued()
        for job in jobs:
            self.dispatch(job.id)
        return len(jobs)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                count = await self.poll_once()
                if count:
                    logger.info(f"Dispatched {count} queued job(s)")
            except Exception as e:
                logger.error(f"Queue poll failed: {type(e).__name__}: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self._loop(), name="queue-claimer")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
