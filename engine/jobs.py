"""In-memory job records, cancellation tokens and the job registry."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from engine.errors import CancelledError
from engine.logging_utils import log_event

logger = logging.getLogger(__name__)

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_DOWNLOADING = "downloading"
JOB_STATUS_CONVERTING = "converting"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_ERROR = "error"
JOB_STATUS_CANCELED = "canceled"

TERMINAL_STATUSES = (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_ERROR,
    JOB_STATUS_CANCELED,
)

_STATUS_RANK = {
    JOB_STATUS_QUEUED: 0,
    JOB_STATUS_PROCESSING: 1,
    JOB_STATUS_DOWNLOADING: 2,
    JOB_STATUS_CONVERTING: 3,
    JOB_STATUS_COMPLETED: 4,
    JOB_STATUS_ERROR: 4,
    JOB_STATUS_CANCELED: 4,
}


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class CancelToken:
    """Cancellation flag shared by a job and every task working for it.

    Callbacks registered with :meth:`add_callback` run once, synchronously, when
    the token is cancelled. A callback registered after cancellation runs
    immediately.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)
        return True

    def add_callback(self, callback: Callable[[], Any]) -> Callable[[], None]:
        if self._cancelled:
            self._invoke(callback)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancelledError()

    @staticmethod
    def _invoke(callback: Callable[[], Any]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Cancel callback failed")


@dataclass
class Counters:
    dl_total: int = 0
    dl_done: int = 0
    cv_total: int = 0
    cv_done: int = 0

    def bump(self, name: str, amount: int = 1) -> int:
        """Increase a ``*_done`` counter, growing its total so done never exceeds it."""
        if name not in ("dl_done", "cv_done"):
            raise ValueError(f"unknown counter: {name}")
        value = getattr(self, name) + amount
        setattr(self, name, value)
        total_name = name.replace("_done", "_total")
        if getattr(self, total_name) < value:
            setattr(self, total_name, value)
        return value

    def set_total(self, name: str, total: int) -> None:
        done = getattr(self, name.replace("_total", "_done"))
        setattr(self, name, max(int(total), done))

    def to_dict(self) -> dict[str, int]:
        return {
            "dlTotal": self.dl_total,
            "dlDone": self.dl_done,
            "cvTotal": self.cv_total,
            "cvDone": self.cv_done,
        }


@dataclass
class PlaylistProgress:
    total: int = 0
    done: int = 0
    current: str | None = None

    def mark_done(self, current: str | None = None) -> int:
        if self.total and self.done >= self.total:
            return self.done
        self.done += 1
        if current is not None:
            self.current = current
        return self.done

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "done": self.done, "current": self.current}


@dataclass
class Job:
    id: str
    source: str = ""
    format: str = "mp3"
    bitrate: str | None = None
    is_batch: bool = False
    status: str = JOB_STATUS_QUEUED
    progress: int = 0
    download_progress: int = 0
    convert_progress: int = 0
    counters: Counters = field(default_factory=Counters)
    playlist: PlaylistProgress | None = None
    result_path: str | list[str] | None = None
    zip_path: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    skipped_count: int = 0
    errors_count: int = 0
    current_phase: str | None = JOB_STATUS_QUEUED
    canceled_by: str | None = None
    created_at: str = field(default_factory=utc_now)
    finished_at: str | None = None
    request: dict[str, Any] = field(default_factory=dict)
    outputs: list[str] = field(default_factory=list)
    cancel_token: CancelToken = field(default_factory=CancelToken, repr=False)
    processes: set = field(default_factory=set, repr=False)

    @property
    def canceled(self) -> bool:
        return self.cancel_token.cancelled

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def set_status(self, status: str, *, phase: str | None = None) -> bool:
        """Move the job forward through its state machine.

        Backward moves and writes after a terminal status (or after the job was
        cancelled, except to record ``canceled`` itself) are ignored.
        """
        if status not in _STATUS_RANK:
            raise ValueError(f"unknown job status: {status}")
        if self.is_terminal:
            return False
        if self.canceled and status != JOB_STATUS_CANCELED:
            return False
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            return False
        self.status = status
        self.current_phase = phase or status
        if status in TERMINAL_STATUSES:
            self.finished_at = utc_now()
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "canceled": self.canceled,
            "canceledBy": self.canceled_by,
            "progress": self.progress,
            "downloadProgress": self.download_progress,
            "convertProgress": self.convert_progress,
            "currentPhase": self.current_phase,
            "counters": self.counters.to_dict(),
            "playlist": self.playlist.to_dict() if self.playlist else None,
            "resultPath": self.result_path,
            "zipPath": self.zip_path,
            "skippedCount": self.skipped_count,
            "errorsCount": self.errors_count,
            "error": self.error,
            "metadata": dict(self.metadata),
            "format": self.format,
            "isBatch": self.is_batch,
            "createdAt": self.created_at,
            "finishedAt": self.finished_at,
        }


def _force_kill(proc) -> None:
    if getattr(proc, "returncode", None) is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    except Exception:
        logger.exception("Failed to kill child process pid=%s", getattr(proc, "pid", None))


class JobRegistry:
    """Process-wide map of job id to :class:`Job`.

    Only the job's own runner mutates progress fields; the registry owns the
    lifecycle entry points (creation, cancellation, child-process bookkeeping
    and garbage collection).
    """

    def __init__(self, *, kill_grace_seconds: float = 5.0) -> None:
        self._jobs: dict[str, Job] = {}
        self.kill_grace_seconds = kill_grace_seconds

    def create_job(self, **initial: Any) -> Job:
        job_id = initial.pop("id", None) or uuid4().hex
        if job_id in self._jobs:
            raise ValueError(f"job already exists: {job_id}")
        job = Job(id=job_id, **initial)
        self._jobs[job_id] = job
        log_event(logging.INFO, "job_created", job_id=job_id, source=job.source, batch=job.is_batch)
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def remove_job(self, job_id: str) -> Job | None:
        return self._jobs.pop(job_id, None)

    def register_job_process(self, job_id: str, proc) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.processes.add(proc)
        if job.canceled:
            self.kill_job_processes(job_id)

    def unregister_job_process(self, job_id: str, proc) -> None:
        job = self._jobs.get(job_id)
        if job is not None:
            job.processes.discard(proc)

    def kill_job_processes(self, job_id: str) -> int:
        """Send SIGTERM to every live child of ``job_id``; SIGKILL survivors after the grace window."""
        job = self._jobs.get(job_id)
        if job is None:
            return 0
        procs = list(job.processes)
        job.processes.clear()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        signalled = 0
        for proc in procs:
            if getattr(proc, "returncode", None) is not None:
                continue
            try:
                proc.terminate()
            except ProcessLookupError:
                continue
            except Exception:
                logger.exception("Failed to terminate child process pid=%s", getattr(proc, "pid", None))
                continue
            signalled += 1
            if loop is not None and self.kill_grace_seconds > 0:
                loop.call_later(self.kill_grace_seconds, _force_kill, proc)
        if signalled:
            log_event(logging.INFO, "job_processes_terminated", job_id=job_id, count=signalled)
        return signalled

    def cancel_job(self, job_id: str, reason: str = "user") -> Job | None:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if job.is_terminal:
            return job
        job.cancel_token.cancel(reason)
        job.set_status(JOB_STATUS_CANCELED)
        job.error = None
        job.canceled_by = reason
        self.kill_job_processes(job_id)
        log_event(logging.INFO, "job_cancelled", job_id=job_id, reason=reason)
        return job

    def collect_garbage(self, output_dir: str) -> list[str]:
        """Drop completed jobs whose output files were removed from ``output_dir``."""
        removed = []
        for job in list(self._jobs.values()):
            if job.status != JOB_STATUS_COMPLETED:
                continue
            names = [os.path.basename(path) for path in job.outputs]
            if job.zip_path:
                names.append(os.path.basename(job.zip_path))
            if names and any(os.path.exists(os.path.join(output_dir, name)) for name in names):
                continue
            self._jobs.pop(job.id, None)
            removed.append(job.id)
        if removed:
            log_event(logging.INFO, "jobs_collected", count=len(removed), job_ids=removed)
        return removed
