"""
Detached background task runner.

Refreshes and optimizer passes must never block or fail the request
that triggered them. Tasks spawned here are strongly referenced until
they finish, and their exceptions land in a bounded error history (and
an optional callback) instead of propagating.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Set

from ..shared.logging_config import get_logger
from ..shared.metrics_collector import get_metrics_collector


@dataclass
class BackgroundError:
    """Failure of a detached task."""
    task_name: str
    error: BaseException
    timestamp: float


ErrorCallback = Callable[[BackgroundError], None]


class BackgroundTaskRunner:
    """Runs fire-and-forget coroutines with an explicit error channel."""

    def __init__(self, error_history: int = 100, on_error: Optional[ErrorCallback] = None):
        self.logger = get_logger(__name__, 'background')
        self.metrics = get_metrics_collector()
        self.on_error = on_error
        self.errors: Deque[BackgroundError] = deque(maxlen=error_history)
        self._tasks: Set[asyncio.Task] = set()
        self.stats = {
            'spawned': 0,
            'completed': 0,
            'failed': 0,
            'cancelled': 0,
        }

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Schedule a coroutine on the running loop without awaiting it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        self.stats['spawned'] += 1
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)

        if task.cancelled():
            self.stats['cancelled'] += 1
            return

        error = task.exception()
        if error is None:
            self.stats['completed'] += 1
            return

        self.stats['failed'] += 1
        record = BackgroundError(task_name=task.get_name(), error=error, timestamp=time.time())
        self.errors.append(record)
        self.metrics.get_counter('background_task_failures_total', 'Failed background tasks').increment(1)
        self.logger.warning(
            f"Background task {record.task_name} failed: {error}",
            operation="background_task",
            task_name=record.task_name,
        )

        if self.on_error is not None:
            try:
                self.on_error(record)
            except Exception as e:
                self.logger.error(f"Background error callback failed: {e}", operation="background_task")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every pending task, including ones spawned while waiting."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            await asyncio.wait(set(self._tasks), timeout=remaining)
            if deadline is not None and time.monotonic() >= deadline:
                break

    async def shutdown(self) -> None:
        """Cancel pending tasks and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info(f"Background runner stopped ({len(tasks)} tasks cancelled)", operation="shutdown")

    def get_errors(self) -> List[BackgroundError]:
        return list(self.errors)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'pending': self.pending, 'recent_errors': len(self.errors)}
