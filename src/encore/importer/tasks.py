"""Supervised background tasks for fire-and-forget import triggers.

The runner keeps a strong reference to every task it starts, logs any
failure, and pushes a :class:`TaskOutcome` onto :attr:`TaskRunner.outcomes`
so callers that care can observe results after the fact.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TaskOutcome:
    name: str
    ok: bool
    result: Any = None
    error: str | None = None
    finished_at: datetime | None = None


class TaskRunner:
    def __init__(self, *, max_outcomes: int = 1000) -> None:
        self._tasks: set[asyncio.Task] = set()
        self.outcomes: asyncio.Queue[TaskOutcome] = asyncio.Queue(maxsize=max_outcomes)
        self._closed = False

    @property
    def active(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        if self._closed:
            coro.close()
            msg = "TaskRunner is shut down"
            raise RuntimeError(msg)
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        log.debug("task_submitted", task=name)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        now = datetime.now(UTC)
        if task.cancelled():
            outcome = TaskOutcome(task.get_name(), ok=False, error="cancelled", finished_at=now)
        elif (exc := task.exception()) is not None:
            log.error("background_task_failed", task=task.get_name(), error=str(exc), exc_info=exc)
            outcome = TaskOutcome(task.get_name(), ok=False, error=str(exc), finished_at=now)
        else:
            outcome = TaskOutcome(task.get_name(), ok=True, result=task.result(), finished_at=now)

        if self.outcomes.full():
            self.outcomes.get_nowait()
        self.outcomes.put_nowait(outcome)

    async def shutdown(self, *, timeout: float | None = 30.0) -> None:
        """Wait for running tasks, cancelling whatever is left after *timeout*."""
        self._closed = True
        if not self._tasks:
            return
        pending = set(self._tasks)
        _done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            log.warning("background_tasks_cancelled", count=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
