"""Background job runner with an observable error channel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobFailure:
    name: str
    error: BaseException
    failed_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


class BackgroundJobRunner:
    """Runs fire-and-forget coroutines as tracked ``asyncio`` tasks.

    Every failure is logged with the job name and kept in ``failures``
    (bounded to the most recent ``max_failures``). ``drain`` awaits all
    outstanding jobs and is called on application shutdown. Job names are
    unique among pending jobs.
    """

    def __init__(self, *, max_failures: int = 100) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._max_failures = max_failures
        self.failures: list[JobFailure] = []

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def is_pending(self, name: str) -> bool:
        return name in self._named

    def submit(
        self, name: str, coro: Coroutine[Any, Any, Any]
    ) -> asyncio.Task[Any]:
        """Schedule ``coro``; a job already pending under ``name`` wins."""
        pending = self._named.get(name)
        if pending is not None:
            coro.close()
            logger.info("Background job %s already pending", name)
            return pending
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        self._named[name] = task
        task.add_done_callback(self._finished)
        logger.debug("Submitted background job %s", name)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if self._named.get(task.get_name()) is task:
            del self._named[task.get_name()]
        if task.cancelled():
            logger.warning("Background job %s was cancelled", task.get_name())
            return
        error = task.exception()
        if error is None:
            return
        logger.error(
            "Background job %s failed: %s",
            task.get_name(),
            error,
            exc_info=error,
        )
        self.failures.append(JobFailure(name=task.get_name(), error=error))
        del self.failures[: -self._max_failures]

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
