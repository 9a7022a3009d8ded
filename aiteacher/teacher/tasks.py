"""
Best-effort background jobs (mastery updates after a response is delivered).
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple

from aiteacher.shared.logging import get_logger, log_with_context

logger = get_logger(__name__)


class BackgroundTaskQueue:
    """
    Tracks fire-and-forget coroutines so they can be awaited in tests and at shutdown.

    A failed job is logged and counted, never re-raised to the submitter.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.failures: List[Tuple[str, BaseException]] = []
        self.metrics = {
            "submitted": 0,
            "succeeded": 0,
            "failed": 0,
            "cancelled": 0,
        }

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, job: Awaitable[Any], name: str, **context) -> asyncio.Task:
        """Schedule a job; `context` is attached to the failure log."""
        self.metrics["submitted"] += 1
        task = asyncio.create_task(self._run(job, name, context), name=name)
        self.track(task)
        return task

    def track(self, task: asyncio.Task):
        """Keep a reference to an already created task until it finishes."""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Awaitable[Any], name: str, context: Dict[str, Any]):
        try:
            await job
        except asyncio.CancelledError:
            self.metrics["cancelled"] += 1
            raise
        except Exception as e:
            self.metrics["failed"] += 1
            self.failures.append((name, e))
            log_with_context(
                logger, logging.ERROR, f"Background job {name} failed: {e}",
                action="background_job_failed", job=name, **context,
            )
        else:
            self.metrics["succeeded"] += 1

    async def drain(self, timeout: Optional[float] = None):
        """Wait until every tracked task, including ones submitted meanwhile, is done."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            await asyncio.wait(set(self._tasks), timeout=remaining)
            if deadline is not None and loop.time() >= deadline:
                break

    async def shutdown(self, timeout: float = 5.0):
        """Drain with a deadline, then cancel whatever is left."""
        await self.drain(timeout=timeout)
        leftover = list(self._tasks)
        for task in leftover:
            task.cancel()
        if leftover:
            logger.warning("Cancelled %d unfinished background jobs", len(leftover))
            await asyncio.gather(*leftover, return_exceptions=True)
