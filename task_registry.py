"""
Task/Stream Registry
====================

Tracks the lifecycle of every asynchronous unit of work. Tasks move
one way, in_progress -> terminal, and the first terminal write wins: a
deadline firing after completion (or completion arriving after a deadline)
is a no-op that returns False.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable

from errors import Cancelled, Throttled
from events import EventBus, TaskCancelled, TaskTimedOut
from models import StreamSession, StreamStatus, Task, TaskStatus, utc_iso

logger = logging.getLogger(__name__)

TimeoutHook = Callable[[Task], Any]


class TaskRegistry:
    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        max_concurrent: int | None = None,
        throttle_mode: str = "queue",
    ) -> None:
        self.bus = bus if bus is not None else EventBus()
        self.max_concurrent = max_concurrent if max_concurrent and max_concurrent > 0 else None
        self.throttle_mode = throttle_mode
        self._tasks: dict[str, Task] = {}
        self._sessions: dict[str, StreamSession] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._timeout_hooks: dict[str, TimeoutHook] = {}
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._reserved = 0
        self._unthrottled: set[str] = set()

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return sum(
            1
            for task in self._tasks.values()
            if task.status is TaskStatus.IN_PROGRESS and task.id not in self._unthrottled
        )

    @property
    def queued_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def _has_capacity(self) -> bool:
        if self.max_concurrent is None:
            return True
        return self.active_count + self._reserved < self.max_concurrent

    def _release_slot(self) -> None:
        while self._waiters and self._has_capacity():
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._reserved += 1
            waiter.set_result(None)

    # ------------------------------------------------------------------
    # Task creation
    # ------------------------------------------------------------------

    def begin_task(
        self,
        task_type: str,
        *,
        timeout: float | None = None,
        correlation_id: str | None = None,
        on_timeout: TimeoutHook | None = None,
        throttled: bool = True,
    ) -> str:
        """Create an in-progress task and arm its deadline. Raises Throttled when full.

        Tasks begun with throttled=False (aggregate progress trackers) never
        occupy a concurrency slot.
        """
        if throttled and not self._has_capacity():
            raise Throttled(
                f"Concurrent task limit reached ({self.max_concurrent})",
                operation=task_type,
            )
        task_id = self._create(task_type, timeout, correlation_id, on_timeout)
        if not throttled:
            self._unthrottled.add(task_id)
        return task_id

    async def start_task(
        self,
        task_type: str,
        *,
        timeout: float | None = None,
        correlation_id: str | None = None,
        on_timeout: TimeoutHook | None = None,
    ) -> str:
        """Like begin_task, but waits FIFO for a free slot in queue mode."""
        if self._has_capacity() and not self.queued_count:
            return self._create(task_type, timeout, correlation_id, on_timeout)
        if self.throttle_mode == "reject":
            raise Throttled(
                f"Concurrent task limit reached ({self.max_concurrent})",
                operation=task_type,
            )

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("Queued %s task (%d waiting)", task_type, self.queued_count)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was granted but never used; hand it on.
                self._reserved -= 1
                self._release_slot()
            raise
        self._reserved -= 1
        return self._create(task_type, timeout, correlation_id, on_timeout)

    def _create(
        self,
        task_type: str,
        timeout: float | None,
        correlation_id: str | None,
        on_timeout: TimeoutHook | None,
    ) -> str:
        task = Task(type=task_type, correlation_id=correlation_id)
        self._tasks[task.id] = task
        if on_timeout is not None:
            self._timeout_hooks[task.id] = on_timeout
        if timeout is not None and timeout > 0:
            loop = asyncio.get_running_loop()
            self._timers[task.id] = loop.call_later(timeout, self.expire_task, task.id)
        logger.debug("Task %s started: %s", task.id, task_type)
        return task.id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def is_terminal(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is None or task.status.terminal

    def update_progress(self, task_id: str, percent: float) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status.terminal:
            return False
        task.progress = max(task.progress, min(int(percent), 100))
        return True

    def _finalize(self, task_id: str, status: TaskStatus) -> Task | None:
        """Move a live task to `status`. Returns None if it was already terminal."""
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Unknown task %s", task_id)
            return None
        if task.status.terminal:
            return None
        task.status = status
        task.ended_at = utc_iso()
        timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()
        self._timeout_hooks.pop(task_id, None)
        self._release_slot()
        return task

    def complete_task(self, task_id: str, result: Any = None) -> bool:
        task = self._finalize(task_id, TaskStatus.COMPLETED)
        if task is None:
            return False
        task.progress = 100
        task.result = result
        return True

    def fail_task(self, task_id: str, error: BaseException | str) -> bool:
        task = self._finalize(task_id, TaskStatus.ERROR)
        if task is None:
            return False
        task.error = str(error)
        return True

    def expire_task(self, task_id: str) -> bool:
        """Deadline handler. Publishes a timeout event and runs the caller's hook."""
        hook = self._timeout_hooks.get(task_id)
        task = self._finalize(task_id, TaskStatus.TIMEOUT)
        if task is None:
            return False
        elapsed = time.monotonic() - task.start_time
        task.error = f"Task timed out after {elapsed:.1f}s"
        logger.warning("Task %s (%s) timed out after %.1fs", task.id, task.type, elapsed)
        self.bus.publish(
            TaskTimedOut(
                correlation_id=task.id,
                task_id=task.id,
                task_type=task.type,
                elapsed_seconds=round(elapsed, 3),
            )
        )
        if hook is not None:
            try:
                hook(task)
            except Exception:
                logger.exception("Timeout hook failed for task %s", task.id)
        return True

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a live task and abort every session attached to it."""
        task = self._finalize(task_id, TaskStatus.CANCELLED)
        if task is None:
            return False
        task.error = "Task cancelled"
        for session_id in task.session_ids:
            session = self._sessions.get(session_id)
            if session is not None and not session.status.terminal:
                session.abort(Cancelled("Task cancelled", operation=session.operation))
        logger.info("Task %s (%s) cancelled", task.id, task.type)
        self.bus.publish(
            TaskCancelled(correlation_id=task.id, task_id=task.id, task_type=task.type)
        )
        return True

    def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        return [
            task for task in self._tasks.values() if status is None or task.status is status
        ]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def register_session(self, session: StreamSession, task_id: str | None = None) -> None:
        self._sessions[session.id] = session
        if task_id is None:
            return
        session.task_id = task_id
        task = self._tasks.get(task_id)
        if task is not None:
            task.session_ids.append(session.id)

    def get_session(self, session_id: str) -> StreamSession | None:
        return self._sessions.get(session_id)

    def list_sessions(self, status: StreamStatus | None = None) -> list[StreamSession]:
        return [
            session
            for session in self._sessions.values()
            if status is None or session.status is status
        ]

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def prune_finished(self) -> int:
        """Drop terminal tasks and their sessions. Returns the number removed."""
        finished = [task for task in self._tasks.values() if task.status.terminal]
        for task in finished:
            for session_id in task.session_ids:
                self._sessions.pop(session_id, None)
            del self._tasks[task.id]
            self._unthrottled.discard(task.id)
        for session_id, session in list(self._sessions.items()):
            if session.task_id is None and session.status.terminal:
                del self._sessions[session_id]
        return len(finished)

    def shutdown(self) -> None:
        """Cancel every live task and release queued waiters."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.cancel()
        for task in list(self._tasks.values()):
            if not task.status.terminal:
                self.cancel_task(task.id)
