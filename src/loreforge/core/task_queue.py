"""Bounded-concurrency FIFO executor with rate-limit-aware reinsertion."""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, List, Optional

from ..errors import QueueRejection, RateLimitedError, is_rate_limited


Executable = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff applied when a task is reinserted after a rate limit.

    ``max_attempts=None`` never gives up; ``backoff_seconds=0`` retries at once.
    """

    max_attempts: Optional[int] = 5
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        if self.backoff_seconds <= 0:
            return 0.0
        delay = self.backoff_seconds * math.pow(2, max(0, attempt - 1))
        return float(min(self.max_backoff_seconds, delay))

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


@dataclass
class Task:
    identifier: str
    owner_id: str
    execute: Executable
    future: asyncio.Future
    enqueued_at: datetime
    label: Optional[str] = None
    rate_limited: int = 0
    not_before: float = 0.0
    runner: Optional[asyncio.Task] = field(default=None, repr=False)


@dataclass(frozen=True)
class PendingTaskInfo:
    task_id: str
    owner_id: str
    enqueued_at: datetime


@dataclass(frozen=True)
class QueueSnapshot:
    length: int
    active_count: int
    processing: bool
    items: List[PendingTaskInfo]

    def as_dict(self) -> dict:
        return {
            "length": self.length,
            "active_count": self.active_count,
            "processing": self.processing,
            "items": [
                {
                    "task_id": item.task_id,
                    "owner_id": item.owner_id,
                    "enqueued_at": item.enqueued_at.isoformat(),
                }
                for item in self.items
            ],
        }


class TaskQueue:
    """Admit async work FIFO and run at most ``concurrency_limit`` at once.

    A task whose executable fails with a rate-limit marker goes back to the
    front of the pending list instead of failing its caller. Every other
    failure rejects the caller's handle with :class:`QueueRejection`.
    State is only touched from the owning event loop, so no lock is held.
    """

    def __init__(
        self,
        concurrency_limit: int = 3,
        *,
        retry_policy: RetryPolicy | None = None,
        logger: logging.Logger | None = None,
        metrics=None,
    ) -> None:
        if int(concurrency_limit) < 1:
            raise ValueError("concurrency_limit must be >= 1")
        self.concurrency_limit = int(concurrency_limit)
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logger or logging.getLogger("loreforge")
        self.metrics = metrics
        self._pending: Deque[Task] = deque()
        self._active_count = 0
        self._draining = False
        self._wakeup: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    async def add(self, execute: Executable, owner_id: str, *, label: str | None = None) -> Any:
        """Enqueue ``execute`` for ``owner_id`` and wait for its outcome.

        Cancelling the awaiting caller drops the task from the pending list,
        or cancels it if it is already running.
        """

        loop = asyncio.get_running_loop()
        task = Task(
            identifier=uuid.uuid4().hex[:12],
            owner_id=str(owner_id),
            execute=execute,
            future=loop.create_future(),
            enqueued_at=datetime.now(timezone.utc),
            label=label,
        )
        self._pending.append(task)
        self.logger.debug("Queued task %s for owner %s (pending=%d)", task.identifier, task.owner_id, len(self._pending))
        self._drain()
        try:
            return await asyncio.shield(task.future)
        except asyncio.CancelledError:
            self._abandon(task)
            raise

    # ------------------------------------------------------------------
    def get_position(self, owner_id: str) -> int:
        """1-based index of the owner's first pending task, 0 if none pending."""

        for index, task in enumerate(self._pending, start=1):
            if task.owner_id == owner_id:
                return index
        return 0

    def get_snapshot(self) -> QueueSnapshot:
        items = [
            PendingTaskInfo(task_id=task.identifier, owner_id=task.owner_id, enqueued_at=task.enqueued_at)
            for task in self._pending
        ]
        return QueueSnapshot(
            length=len(self._pending),
            active_count=self._active_count,
            processing=self._draining or self._active_count > 0,
            items=items,
        )

    @property
    def active_count(self) -> int:
        return self._active_count

    def __len__(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    def _drain(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            while self._pending and self._active_count < self.concurrency_limit:
                head = self._pending[0]
                if head.future.done():
                    self._pending.popleft()
                    continue
                wait = head.not_before - time.monotonic()
                if wait > 0:
                    # The rate-limited head keeps its place; everyone waits behind it.
                    self._schedule_wakeup(wait)
                    break
                self._pending.popleft()
                self._active_count += 1
                head.runner = asyncio.get_running_loop().create_task(
                    self._run(head), name=f"queue-task-{head.identifier}"
                )
                head.runner.add_done_callback(functools.partial(self._on_runner_done, head))
        finally:
            self._draining = False

    async def _run(self, task: Task) -> None:
        try:
            result = await task.execute()
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.cancel()
            raise
        except Exception as exc:
            self._settle_failure(task, exc)
        else:
            if not task.future.done():
                task.future.set_result(result)

    def _on_runner_done(self, task: Task, runner: asyncio.Task) -> None:
        self._active_count -= 1
        if runner.cancelled() and not task.future.done():
            task.future.cancel()
        self._drain()

    def _settle_failure(self, task: Task, exc: Exception) -> None:
        if task.future.done():
            return
        if is_rate_limited(exc):
            task.rate_limited += 1
            if self.metrics is not None:
                self.metrics.record_retry(task.label or "queue")
            if self.retry_policy.exhausted(task.rate_limited):
                self.logger.error(
                    "Task %s rate limited %d time(s); giving up",
                    task.identifier,
                    task.rate_limited,
                )
                error = exc if isinstance(exc, RateLimitedError) else RateLimitedError(str(exc))
                task.future.set_exception(QueueRejection(str(error), cause=error))
                return
            delay = self.retry_policy.delay(task.rate_limited)
            task.not_before = time.monotonic() + delay
            self._pending.appendleft(task)
            self.logger.warning(
                "Task %s for owner %s rate limited (attempt %d); requeued at front, retry in %.1fs",
                task.identifier,
                task.owner_id,
                task.rate_limited,
                delay,
            )
            return
        self.logger.error("Task %s for owner %s rejected: %s", task.identifier, task.owner_id, exc)
        task.future.set_exception(QueueRejection(str(exc), cause=exc))

    def _abandon(self, task: Task) -> None:
        try:
            self._pending.remove(task)
            self.logger.debug("Dropped cancelled task %s from pending list", task.identifier)
        except ValueError:
            pass
        if task.runner is not None and not task.runner.done():
            task.runner.cancel()
        if not task.future.done():
            task.future.cancel()
        self._drain()

    def _schedule_wakeup(self, delay: float) -> None:
        if self._wakeup is not None and not self._wakeup.cancelled():
            self._wakeup.cancel()
        loop = asyncio.get_running_loop()
        self._wakeup = loop.call_later(delay, self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._wakeup = None
        self._drain()


__all__ = ["Executable", "RetryPolicy", "Task", "PendingTaskInfo", "QueueSnapshot", "TaskQueue"]
