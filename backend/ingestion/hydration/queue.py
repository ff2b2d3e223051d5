"""Hydration dispatcher.

A FIFO of hydration tasks processed one at a time by a single worker. An
equal task that is already queued or in flight is not enqueued again, and a
failing handler never stops the worker.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Deque, Optional

from ingestion.core.observer import Observer, PipelineEvent, notify

logger = logging.getLogger(__name__)


class TaskKind(str, Enum):
    POST = "post"
    PROFILE = "profile"


@dataclass(frozen=True, slots=True)
class HydrationTask:
    kind: TaskKind
    subject: str


TaskHandler = Callable[[HydrationTask], Awaitable[None]]


class HydrationDispatcher:
    def __init__(self, handler: TaskHandler, observer: Optional[Observer] = None) -> None:
        self._handler = handler
        self._observer = observer
        self._queue: Deque[HydrationTask] = deque()
        self._queued: set[HydrationTask] = set()
        self._in_flight: Optional[HydrationTask] = None
        self._has_work = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopping = False
        self._worker: Optional[asyncio.Task[None]] = None
        self.completed = 0
        self.failed = 0

    @property
    def in_flight(self) -> Optional[HydrationTask]:
        return self._in_flight

    def queue_size(self) -> int:
        return len(self._queue)

    def is_pending(self, task: HydrationTask) -> bool:
        return task in self._queued or task == self._in_flight

    def enqueue(self, task: HydrationTask) -> bool:
        if self._stopping:
            logger.debug(f"Dispatcher stopping; rejecting {task.kind.value} {task.subject}")
            return False
        if self.is_pending(task):
            logger.debug(f"Skipping duplicate {task.kind.value} task for {task.subject}")
            return False
        self._queue.append(task)
        self._queued.add(task)
        self._idle.clear()
        self._has_work.set()
        logger.debug(f"Enqueued {task.kind.value} {task.subject} (queue={len(self._queue)})")
        return True

    def clear(self) -> int:
        dropped = len(self._queue)
        self._queue.clear()
        self._queued.clear()
        if self._in_flight is None:
            self._idle.set()
        logger.info(f"Hydration queue cleared ({dropped} tasks dropped)")
        return dropped

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._stopping = False
        self._worker = asyncio.create_task(self._run(), name="hydration-dispatcher")

    async def join(self) -> None:
        """Wait until the queue is empty and nothing is in flight."""
        await self._idle.wait()

    async def stop(self) -> None:
        """Stop accepting work; the in-flight task finishes, queued tasks are dropped."""
        self._stopping = True
        dropped = len(self._queue)
        self._queue.clear()
        self._queued.clear()
        if dropped:
            logger.warning(f"Dispatcher stopping with {dropped} queued tasks dropped")
        self._has_work.set()
        if self._worker is not None:
            await self._worker
            self._worker = None
        self._idle.set()

    async def _run(self) -> None:
        while True:
            if not self._queue:
                self._idle.set()
                if self._stopping:
                    return
                self._has_work.clear()
                await self._has_work.wait()
                continue

            task = self._queue.popleft()
            self._queued.discard(task)
            self._in_flight = task
            ok = True
            try:
                await self._handler(task)
                self.completed += 1
            except Exception as e:
                ok = False
                self.failed += 1
                logger.exception(f"Hydration task failed: {task.kind.value} {task.subject}: {e}")
            finally:
                self._in_flight = None
            notify(self._observer, PipelineEvent.TASK_COMPLETED, kind=task.kind.value, subject=task.subject, ok=ok)
            if self._stopping:
                self._idle.set()
                return
