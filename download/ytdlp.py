"""yt-dlp command line driver.

Builds the yt-dlp argument list for single, playlist and selected-id
downloads, runs it through :func:`download.process.run_process`, and turns its
output into :mod:`download.events` events.
"""

from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from download.classify import CATEGORY_SKIP, SkipCounter
from download.events import EventCallback, FileDone, PercentUpdate, SkipHint, Summary
from download.process import run_process
from engine.errors import ItemSkippedError, ToolError
from engine.jobs import CancelToken
from engine.paths import ensure_dir
from engine.progress import batch_share, clamp_percent

logger = logging.getLogger(__name__)

_DESTINATION_RE = re.compile(r"\[download\]\s+Destination:\s*(.+)$", re.IGNORECASE)
_ALREADY_RE = re.compile(r"\[download\]\s+(.+?) has already been downloaded", re.IGNORECASE)
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)%")
_ITEM_OF_RE = re.compile(r"Downloading item\s+(\d+)\s+of\s+(\d+)", re.IGNORECASE)
_THUMB_RE = re.compile(r"\.(jpe?g|png|webp)$", re.IGNORECASE)
_SEGMENT_RE = re.compile(r"\.f\d+\.", re.IGNORECASE)
_MEDIA_EXT_RE = re.compile(r"\.(mp4|webm|m4a|mp3|opus|mkv|mka|flac|wav|aac|ogg)$", re.IGNORECASE)
_INDEX_PREFIX_RE = re.compile(r"^(\d+)\s*-\s*")

_FORMAT_AUDIO = "bestaudio/best"


@dataclass(frozen=True)
class Selection:
    playlist_items: tuple[int, ...] = ()
    ids: tuple[str, ...] = ()

    @property
    def count(self) -> int:
        return len(self.ids) or len(self.playlist_items)


@dataclass(frozen=True)
class DownloadFlags:
    automix: bool = False
    video: bool = False
    max_height: int = 1080


@dataclass(frozen=True)
class RetrievalOptions:
    command: tuple[str, ...] = ("yt-dlp",)
    socket_timeout: int = 15
    playlist_end: int = 100
    extra_args: tuple[str, ...] = ()
    poll_interval: float = 0.25
    kill_grace_seconds: float = 5.0
    on_spawn: Optional[Callable[[object], None]] = field(default=None, compare=False)
    on_exit: Optional[Callable[[object], None]] = field(default=None, compare=False)


def ids_to_watch_urls(ids: Sequence[str]) -> list[str]:
    urls = []
    for value in ids:
        text = str(value or "").strip()
        if not text:
            continue
        urls.append(text if re.match(r"^https?://", text, re.IGNORECASE) else f"https://www.youtube.com/watch?v={text}")
    return urls


def parse_playlist_index_from_path(path: str) -> Optional[int]:
    match = _INDEX_PREFIX_RE.match(os.path.basename(path))
    return int(match.group(1)) if match else None


def get_downloaded_files(directory: str, *, is_playlist: bool = False, job_id: Optional[str] = None) -> list[str]:
    """List media files in ``directory``; playlist files sorted by their index prefix."""
    if not os.path.isdir(directory):
        return []
    files = [os.path.join(directory, name) for name in os.listdir(directory) if _MEDIA_EXT_RE.search(name)]
    if is_playlist:
        files.sort(key=lambda p: (parse_playlist_index_from_path(p) or 0, os.path.basename(p)))
    elif job_id:
        pattern = re.compile(rf"^{re.escape(job_id)}(?:\.|\s-\s)")
        files = sorted(p for p in files if pattern.match(os.path.basename(p)))
    return files


class RetrievalLineParser:
    """Turn yt-dlp output lines into progress events for one invocation."""

    def __init__(
        self,
        on_event: Optional[EventCallback],
        *,
        is_batch: bool,
        total: Optional[int] = None,
        video_pairs: bool = False,
        counter: Optional[SkipCounter] = None,
    ) -> None:
        self._on_event = on_event
        self.is_batch = is_batch
        self.total = total or None
        self.video_pairs = video_pairs
        self.counter = counter or SkipCounter()
        self.destinations = 0
        self.done = 0
        self.paths: list[str] = []
        self._in_progress: Optional[str] = None

    def feed(self, line: str, stream: str = "stderr") -> None:
        # Progress lines carry titles, which must not be classified.
        if not line.lstrip().startswith("[download]"):
            rule = self.counter.feed(line)
            if rule is not None and rule.category == CATEGORY_SKIP:
                self.emit(SkipHint(line=line.strip(), reason=rule.reason, count=self.counter.skipped))

        match = _DESTINATION_RE.search(line)
        if match:
            # A new destination means the previous file is complete.
            self.finish()
            dest = self._clean_destination(match.group(1))
            if dest:
                self._in_progress = dest
            return
        match = _ALREADY_RE.search(line)
        if match:
            self.finish()
            dest = self._clean_destination(match.group(1))
            if dest:
                self._file_written(dest)
            return

        item_match = _ITEM_OF_RE.search(line)
        if item_match:
            declared = int(item_match.group(2))
            if declared > 0:
                self.total = declared
            return

        pct_match = _PERCENT_RE.search(line)
        if pct_match:
            value = float(pct_match.group(1))
            if self.is_batch:
                overall = batch_share(self.done, self.total or max(self.done, 1), value / 100)
            else:
                overall = clamp_percent(value)
            self.emit(PercentUpdate(percent=value, overall=overall))

    def finish(self, *, require_file: bool = False) -> None:
        """Mark the file currently being written as complete."""
        dest, self._in_progress = self._in_progress, None
        if not dest or (require_file and not os.path.isfile(dest)):
            return
        self._file_written(dest)

    def _clean_destination(self, raw: str) -> Optional[str]:
        dest = raw.strip().strip('"')
        if _THUMB_RE.search(dest):
            return None
        # Format segments are merged later; in paired video mode they are the unit.
        if not self.video_pairs and _SEGMENT_RE.search(os.path.basename(dest)):
            return None
        return dest

    def _file_written(self, dest: str) -> None:
        self.destinations += 1
        logical = math.ceil(self.destinations / 2) if self.video_pairs else self.destinations
        if self.total:
            logical = min(self.total, logical)
        if logical <= self.done:
            return
        self.done = logical
        self.paths.append(dest)
        self.emit(FileDone(path=dest, done=self.done, total=self.total or self.done))

    def emit(self, event) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Progress callback failed for %s", type(event).__name__)


def build_ytdlp_args(
    source: str,
    *,
    output_template: str,
    is_batch: bool,
    selection: Selection,
    flags: DownloadFlags,
    options: RetrievalOptions,
    list_file: Optional[str] = None,
) -> list[str]:
    args = [
        "--ignore-config",
        "--no-warnings",
        "--socket-timeout",
        str(options.socket_timeout),
        "--progress",
        "--newline",
    ]
    if flags.video:
        h = flags.max_height or 1080
        args += ["-f", f"bestvideo[height<={h}]+bestaudio/best[height<={h}]"]
    else:
        args += ["-f", _FORMAT_AUDIO]

    if list_file:
        args += ["--no-playlist", "--ignore-errors", "--no-abort-on-error", "--autonumber-size", "3"]
    elif is_batch:
        args += ["--yes-playlist", "--ignore-errors", "--no-abort-on-error", "-N", "4"]
        if selection.playlist_items:
            args += ["--playlist-items", ",".join(str(i) for i in selection.playlist_items)]
        else:
            args += ["--playlist-end", str(options.playlist_end)]
        if not flags.video:
            args += ["--write-thumbnail", "--convert-thumbnails", "jpg"]
    else:
        args.append("--no-playlist")

    args += [
        "--no-part",
        "--continue",
        "--no-overwrites",
        "--retries",
        "10",
        "--fragment-retries",
        "10",
        "-o",
        output_template,
    ]
    args += list(options.extra_args)
    if list_file:
        args += ["-a", list_file]
    else:
        args.append(source)
    return args


async def download_media(
    source: str,
    job_id: str,
    *,
    is_batch: bool = False,
    selection: Optional[Selection] = None,
    flags: Optional[DownloadFlags] = None,
    temp_dir: str,
    on_event: Optional[EventCallback] = None,
    options: Optional[RetrievalOptions] = None,
    cancel_token: Optional[CancelToken] = None,
):
    """Download ``source`` with yt-dlp into ``temp_dir``.

    Returns the file path for single downloads and the list of file paths for
    batch or selected-id downloads. Files already present from an earlier run of
    the same job are returned without spawning yt-dlp.

    Raises:
        CancelledError: If the job was cancelled or yt-dlp died from a signal.
        ItemSkippedError: If nothing was downloaded and yt-dlp reported the
            source as unavailable.
        ToolError: If nothing was downloaded for any other reason.
    """
    selection = selection or Selection()
    flags = flags or DownloadFlags()
    options = options or RetrievalOptions()
    token = cancel_token or CancelToken()
    token.raise_if_cancelled()
    ensure_dir(temp_dir)

    batch_mode = bool(is_batch or flags.automix or selection.ids)
    list_file = None
    if batch_mode:
        target_dir = os.path.join(temp_dir, job_id)
        ensure_dir(target_dir)
        existing = get_downloaded_files(target_dir, is_playlist=True)
        wanted = selection.count
        if existing and (not wanted or len(existing) >= wanted):
            logger.info("Reusing %d downloaded files for job %s", len(existing), job_id)
            return existing
        if selection.ids:
            list_file = os.path.join(temp_dir, f"{job_id}.urls.txt")
            with open(list_file, "w", encoding="utf-8") as handle:
                handle.write("\n".join(ids_to_watch_urls(selection.ids)))
            output_template = os.path.join(target_dir, "%(autonumber)s - %(title)s.%(ext)s")
        else:
            output_template = os.path.join(target_dir, "%(playlist_index)s - %(title)s.%(ext)s")
    else:
        target_dir = temp_dir
        existing = get_downloaded_files(temp_dir, job_id=job_id)
        if existing:
            return existing[0]
        output_template = os.path.join(temp_dir, f"{job_id} - %(title)s.%(ext)s")

    argv = list(options.command) + build_ytdlp_args(
        source,
        output_template=output_template,
        is_batch=batch_mode,
        selection=selection,
        flags=flags,
        options=options,
        list_file=list_file,
    )
    declared = selection.count or None
    parser = RetrievalLineParser(
        on_event,
        is_batch=batch_mode,
        total=declared,
        video_pairs=bool(flags.video and selection.ids),
    )
    logger.info("yt-dlp start job_id=%s batch=%s source=%s", job_id, batch_mode, source)
    result = await run_process(
        argv,
        on_line=parser.feed,
        cancel_token=token,
        on_spawn=options.on_spawn,
        on_exit=options.on_exit,
        poll_interval=options.poll_interval,
        kill_grace_seconds=options.kill_grace_seconds,
    )

    parser.finish(require_file=True)
    files = get_downloaded_files(target_dir, is_playlist=batch_mode, job_id=None if batch_mode else job_id)
    counter = parser.counter
    total = parser.total or declared
    if files and batch_mode and total:
        counter.skipped = max(counter.skipped, total - len(files))
    parser.emit(
        Summary(
            files=tuple(files),
            skipped=counter.skipped,
            errors=counter.errors,
            returncode=result.returncode,
            total=total,
        )
    )
    if files:
        if result.returncode != 0:
            logger.info(
                "yt-dlp partial success job_id=%s returncode=%s files=%d skipped=%d",
                job_id,
                result.returncode,
                len(files),
                counter.skipped,
            )
        return files if batch_mode else files[0]

    tail = "\n".join(result.stderr_tail)
    if counter.skipped and not counter.errors:
        raise ItemSkippedError(
            f"yt-dlp skipped {source}: {tail}".strip(),
            returncode=result.returncode,
            stderr_tail=result.stderr_tail,
        )
    raise ToolError(
        f"yt-dlp failed ({result.returncode}) for {source}\n{tail}".strip(),
        returncode=result.returncode,
        stderr_tail=result.stderr_tail,
    )
