"""
Background Tasks — Detached work with its own error boundary.

Webhook handlers must return before the agent answers, so the rest of the
pipeline runs in a background task. ``BackgroundTaskRunner`` spawns those
tasks with:

- **bounded concurrency**: a semaphore caps tasks doing work at once
- **retained references**: tasks are not garbage-collected mid-flight
- **an error boundary**: exceptions are logged and recorded, never raised
- **visibility**: every task gets a ``TaskRecord`` (running/completed/failed)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

CoroFactory = Callable[[], Awaitable[Any]]


@dataclass
class TaskRecord:
    """One background task."""
    task_id: str
    name: str
    kind: str = "dispatch"  # dispatch | trigger | title | notify
    status: str = "pending"  # pending | running | completed | failed | cancelled
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.status in ("completed", "failed", "cancelled")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "name": self.name,
            "kind": self.kind,
            "status": self.status,
            "error": self.error,
            "duration_ms": (
                round((self.finished_at - self.started_at) * 1000)
                if self.started_at and self.finished_at else None
            ),
        }


class BackgroundTaskRunner:
    """Spawn-and-detach task runner with a bounded worker count."""

    def __init__(self, max_concurrent: int = 8, history_size: int = 200):
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._max_concurrent = max_concurrent
        self._tasks: Set[asyncio.Task] = set()
        self._history: Deque[TaskRecord] = deque(maxlen=history_size)
        self._closed = False

    def spawn(self, name: str, factory: CoroFactory, kind: str = "dispatch") -> TaskRecord:
        """
        Schedule ``factory()`` in the background and return its record.

        ``factory`` is called inside the task once a slot is free, so no
        coroutine is created for work that never starts.
        """
        record = TaskRecord(task_id=uuid.uuid4().hex[:12], name=name, kind=kind)
        self._history.append(record)
        if self._closed:
            record.status = "cancelled"
            record.error = "runner is shut down"
            logger.warning(f"[TASKS] Rejected {name}: runner is shut down")
            return record

        task = asyncio.create_task(self._run(record, factory), name=f"{kind}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return record

    async def _run(self, record: TaskRecord, factory: CoroFactory) -> None:
        async with self._semaphore:
            record.status = "running"
            record.started_at = time.time()
            try:
                await factory()
                record.status = "completed"
            except asyncio.CancelledError:
                record.status = "cancelled"
                raise
            except Exception as e:
                record.status = "failed"
                record.error = f"{type(e).__name__}: {e}"
                logger.exception(f"[TASKS] {record.kind}:{record.name} failed")
            finally:
                record.finished_at = time.time()

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until all spawned tasks (including ones they spawn) finish."""
        async def _drain():
            while True:
                pending = [t for t in self._tasks if not t.done()]
                if not pending:
                    break
                await asyncio.gather(*pending, return_exceptions=True)

        await asyncio.wait_for(_drain(), timeout=timeout)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop accepting work, give running tasks ``timeout`` then cancel."""
        self._closed = True
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"[TASKS] Cancelled {len(still_running)} task(s) at shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def recent(self, limit: int = 20, kind: Optional[str] = None) -> List[TaskRecord]:
        records = [r for r in self._history if kind is None or r.kind == kind]
        return records[-limit:]

    def stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        for r in self._history:
            by_status[r.status] = by_status.get(r.status, 0) + 1
        return {
            "active": self.active_count,
            "max_concurrent": self._max_concurrent,
            "by_status": by_status,
        }
