"""Progress aggregation for two-stage (download, convert) jobs."""

from __future__ import annotations

import math

from engine.jobs import Job


def clamp_percent(value: float) -> int:
    if value is None or value != value:
        return 0
    return max(0, min(100, int(math.floor(value))))


def percent(done: int, total: int) -> int:
    """Return ``floor(done / total * 100)`` bounded to 0..100; 0 when total is unknown."""
    if not total or total <= 0:
        return 0
    return clamp_percent(done / total * 100)


def overall(download_progress: int, convert_progress: int) -> int:
    return clamp_percent((download_progress + convert_progress) / 2)


def batch_share(done: int, total: int, fraction: float = 0.0) -> int:
    """Scale the in-flight item's fraction (0..1) into the batch-wide download percentage."""
    if not total or total <= 0:
        return clamp_percent(fraction * 100)
    fraction = max(0.0, min(1.0, fraction))
    return clamp_percent((min(done, total) + fraction) / total * 100)


def sequential_share(index: int, total: int, item_percent: float) -> int:
    """Percentage of ``total`` sequential steps when step ``index`` (0-based) is ``item_percent`` done."""
    if not total or total <= 0:
        return clamp_percent(item_percent)
    return clamp_percent(index / total * 100 + item_percent / total)


class ProgressTracker:
    """Apply stage percentages to a job without ever moving them backwards.

    All writes are dropped once the job is cancelled or terminal.
    """

    def __init__(self, job: Job) -> None:
        self.job = job

    @property
    def writable(self) -> bool:
        return not (self.job.canceled or self.job.is_terminal)

    def set_download(self, value: float) -> None:
        if not self.writable:
            return
        self.job.download_progress = max(self.job.download_progress, clamp_percent(value))
        self._refresh()

    def set_convert(self, value: float) -> None:
        if not self.writable:
            return
        self.job.convert_progress = max(self.job.convert_progress, clamp_percent(value))
        self._refresh()

    def set_totals(self, total: int) -> None:
        if not self.writable or not total:
            return
        counters = self.job.counters
        counters.set_total("dl_total", max(counters.dl_total, total))
        counters.set_total("cv_total", max(counters.cv_total, total))
        if self.job.playlist is not None:
            self.job.playlist.total = max(self.job.playlist.total, total, self.job.playlist.done)

    def item_downloaded(self) -> None:
        if not self.writable:
            return
        counters = self.job.counters
        counters.bump("dl_done")
        self.set_download(percent(counters.dl_done, counters.dl_total))

    def item_converted(self, current: str | None = None) -> None:
        if not self.writable:
            return
        counters = self.job.counters
        counters.bump("cv_done")
        if self.job.playlist is not None:
            if self.job.playlist.total < counters.cv_done:
                self.job.playlist.total = counters.cv_done
            self.job.playlist.mark_done(current)
        self.set_convert(percent(counters.cv_done, counters.cv_total))

    def finish(self) -> None:
        """Pin both stages to 100 on successful completion."""
        if not self.writable:
            return
        self.job.download_progress = 100
        self.job.convert_progress = 100
        self._refresh()

    def _refresh(self) -> None:
        self.job.progress = max(self.job.progress, overall(self.job.download_progress, self.job.convert_progress))
