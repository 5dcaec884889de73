from __future__ import annotations

from engine.jobs import Job, PlaylistProgress
from engine.progress import ProgressTracker, batch_share, overall, percent, sequential_share


def test_percent_helpers_floor_and_clamp() -> None:
    assert percent(1, 3) == 33
    assert percent(5, 0) == 0
    assert percent(7, 5) == 100
    assert overall(50, 25) == 37
    assert batch_share(1, 4, 0.5) == 37
    assert batch_share(0, 0, 0.42) == 42
    assert sequential_share(1, 2, 50) == 75


def test_tracker_never_moves_backwards() -> None:
    job = Job(id="job")
    tracker = ProgressTracker(job)
    tracker.set_download(60)
    tracker.set_download(20)
    tracker.set_convert(40)
    tracker.set_convert(10)
    assert job.download_progress == 60
    assert job.convert_progress == 40
    assert job.progress == 50


def test_tracker_counts_items_and_playlist() -> None:
    job = Job(id="job", is_batch=True, playlist=PlaylistProgress(total=4))
    tracker = ProgressTracker(job)
    tracker.set_totals(4)
    for _ in range(2):
        tracker.item_downloaded()
    tracker.item_converted("Track A")
    assert job.counters.to_dict() == {"dlTotal": 4, "dlDone": 2, "cvTotal": 4, "cvDone": 1}
    assert job.download_progress == 50
    assert job.convert_progress == 25
    assert job.playlist.to_dict() == {"total": 4, "done": 1, "current": "Track A"}


def test_tracker_done_counter_grows_total() -> None:
    job = Job(id="job")
    tracker = ProgressTracker(job)
    tracker.set_totals(1)
    tracker.item_downloaded()
    tracker.item_downloaded()
    assert job.counters.dl_done == 2
    assert job.counters.dl_total == 2


def test_tracker_ignores_writes_after_cancel() -> None:
    job = Job(id="job")
    tracker = ProgressTracker(job)
    tracker.set_download(30)
    job.cancel_token.cancel("user")
    tracker.set_download(90)
    tracker.item_converted()
    tracker.finish()
    assert job.download_progress == 30
    assert job.counters.cv_done == 0
    assert job.progress == 15


def test_tracker_finish_pins_both_stages() -> None:
    job = Job(id="job")
    tracker = ProgressTracker(job)
    tracker.set_download(10)
    tracker.finish()
    assert (job.download_progress, job.convert_progress, job.progress) == (100, 100, 100)
