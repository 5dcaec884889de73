"""Sequential FIFO dispatch of job runners."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from engine.errors import CancelledError
from engine.jobs import JobRegistry
from engine.logging_utils import log_event

logger = logging.getLogger(__name__)

Runner = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class QueueEntry:
    job_id: str
    runner: Runner


class DispatchQueue:
    """Start job runners one at a time, in submission order.

    ``enqueue`` must be called from inside a running event loop; it schedules
    the drain loop when the queue is idle. A runner's exception is logged and
    the loop moves on to the next entry.
    """

    def __init__(self, registry: JobRegistry) -> None:
        self._registry = registry
        self._entries: list[QueueEntry] = []
        self._running = False
        self._drain_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def enqueue(self, job_id: str, runner: Runner) -> int:
        self._entries.append(QueueEntry(job_id=job_id, runner=runner))
        position = len(self._entries)
        log_event(logging.INFO, "job_enqueued", job_id=job_id, position=position)
        if not self._running:
            self._running = True
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())
        return position

    def remove_from_queue(self, job_id: str) -> int:
        before = len(self._entries)
        self._entries = [entry for entry in self._entries if entry.job_id != job_id]
        return before - len(self._entries)

    def queued_job_ids(self) -> list[str]:
        return [entry.job_id for entry in self._entries]

    async def wait_idle(self) -> None:
        task = self._drain_task
        while task is not None and not task.done():
            await asyncio.shield(task)
            task = self._drain_task

    async def _drain(self) -> None:
        try:
            while self._entries:
                entry = self._entries.pop(0)
                job = self._registry.get_job(entry.job_id)
                if job is None or job.canceled:
                    log_event(logging.INFO, "job_dispatch_skipped", job_id=entry.job_id)
                    continue
                try:
                    await entry.runner()
                except CancelledError:
                    logger.info("Job %s canceled", entry.job_id)
                except Exception:
                    logger.exception("Job runner failed job_id=%s", entry.job_id)
        finally:
            self._running = False
