"""ffmpeg conversion driver."""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from download.process import run_process
from engine.errors import CancelledError, ToolError
from engine.jobs import CancelToken
from engine.outputs import ConvertResult
from engine.paths import ensure_dir
from engine.progress import clamp_percent

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"Duration:\s+(\d+):(\d+):(\d+(?:\.\d+)?)")
_TIME_RE = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")
_COVER_FORMATS = {"mp3", "flac"}
_TAG_KEYS = ("title", "artist", "album", "album_artist", "date", "genre", "track")


@dataclass(frozen=True)
class ConvertOptions:
    ffmpeg_bin: str = "ffmpeg"
    cancel_token: Optional[CancelToken] = field(default=None, compare=False)
    stream_index: Optional[int] = None
    poll_interval: float = 0.25
    kill_grace_seconds: float = 5.0
    on_spawn: Optional[Callable[[object], None]] = field(default=None, compare=False)
    on_exit: Optional[Callable[[object], None]] = field(default=None, compare=False)


def output_extension(fmt: str, is_video: bool = False) -> str:
    fmt = str(fmt or "").strip().lower().lstrip(".")
    if fmt in ("mp4", "aac", "m4a") and not is_video:
        return "m4a"
    return fmt or "mp3"


def _normalize_bitrate(bitrate: Any) -> Optional[str]:
    text = str(bitrate or "").strip().lower()
    if not text or text in ("auto", "lossless"):
        return None
    return text if text.endswith("k") else f"{text}k"


def _codec_args(ext: str, bitrate: Optional[str], is_video: bool) -> list[str]:
    if is_video:
        if ext == "mp4":
            return ["-c:v", "libx264", "-preset", "veryfast", "-c:a", "aac"]
        return ["-c", "copy"]
    rate = ["-b:a", bitrate] if bitrate else []
    if ext == "mp3":
        return ["-c:a", "libmp3lame", *(rate or ["-q:a", "2"])]
    if ext == "flac":
        return ["-c:a", "flac"]
    if ext == "wav":
        return ["-c:a", "pcm_s16le"]
    if ext == "ogg":
        return ["-c:a", "libvorbis", *(rate or ["-q:a", "5"])]
    if ext == "m4a":
        return ["-c:a", "aac", *rate]
    return list(rate)


def _metadata_args(metadata: dict) -> list[str]:
    args = []
    for key in _TAG_KEYS:
        value = metadata.get(key) if metadata else None
        if value in (None, ""):
            continue
        args += ["-metadata", f"{key}={value}"]
    return args


def build_ffmpeg_args(
    input_path: str,
    output_path: str,
    *,
    ext: str,
    bitrate: Optional[str],
    metadata: dict,
    cover_path: Optional[str],
    is_video: bool,
    stream_index: Optional[int],
) -> list[str]:
    args = ["-hide_banner", "-nostdin", "-y", "-i", input_path]
    with_cover = bool(cover_path and not is_video and ext in _COVER_FORMATS and os.path.isfile(cover_path))
    if with_cover:
        args += ["-i", cover_path]
    if is_video:
        args += ["-map", "0:v:0?", "-map", "0:a:0?"]
    elif stream_index is not None:
        args += ["-map", f"0:a:{int(stream_index)}"]
    else:
        args += ["-map", "0:a:0"]
    if with_cover:
        args += ["-map", "1:v", "-c:v", "mjpeg", "-disposition:v", "attached_pic"]
    elif not is_video:
        args.append("-vn")
    args += _codec_args(ext, bitrate, is_video)
    if ext == "mp3":
        args += ["-id3v2_version", "3"]
    args += _metadata_args(metadata)
    args.append(output_path)
    return args


def _seconds(match) -> float:
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def _remove_quietly(path: str) -> None:
    try:
        if path and os.path.exists(path):
            os.remove(path)
    except OSError:
        logger.debug("Could not remove partial output %s", path)


async def convert_media(
    input_path: str,
    fmt: str,
    bitrate: Any,
    item_id: str,
    on_progress: Optional[Callable[[int], None]] = None,
    metadata: Optional[dict] = None,
    cover_path: Optional[str] = None,
    is_video: bool = False,
    out_dir: str = ".",
    temp_dir: Optional[str] = None,
    options: Optional[ConvertOptions] = None,
) -> ConvertResult:
    """Convert ``input_path`` into ``<out_dir>/<item_id>.<ext>``.

    ffmpeg writes into ``temp_dir`` and the file is moved into ``out_dir`` only
    after a clean exit, so ``out_dir`` never holds a partial output. Progress is
    reported from ffmpeg's ``Duration``/``time=`` lines, capped at 99 until the
    move completes.

    Raises:
        CancelledError: If the cancel token fires while ffmpeg runs.
        ToolError: If ffmpeg exits with an error or produces no file.
    """
    options = options or ConvertOptions()
    token = options.cancel_token or CancelToken()
    token.raise_if_cancelled()
    ext = output_extension(fmt, is_video)
    work_dir = temp_dir or out_dir
    ensure_dir(work_dir)
    ensure_dir(out_dir)
    work_path = os.path.join(work_dir, f"{item_id}.{ext}")
    final_path = os.path.join(out_dir, f"{item_id}.{ext}")

    argv = [options.ffmpeg_bin] + build_ffmpeg_args(
        input_path,
        work_path,
        ext=ext,
        bitrate=_normalize_bitrate(bitrate),
        metadata=metadata or {},
        cover_path=cover_path,
        is_video=is_video,
        stream_index=options.stream_index,
    )
    state = {"duration": None}

    def _on_line(line: str, _stream: str) -> None:
        if state["duration"] is None:
            match = _DURATION_RE.search(line)
            if match:
                state["duration"] = _seconds(match) or None
        match = _TIME_RE.search(line)
        if match and state["duration"] and on_progress is not None:
            on_progress(min(99, clamp_percent(_seconds(match) / state["duration"] * 100)))

    logger.info("ffmpeg start item_id=%s format=%s input=%s", item_id, ext, input_path)
    try:
        result = await run_process(
            argv,
            on_line=_on_line,
            cancel_token=token,
            on_spawn=options.on_spawn,
            on_exit=options.on_exit,
            poll_interval=options.poll_interval,
            kill_grace_seconds=options.kill_grace_seconds,
            tail_lines=10,
        )
    except CancelledError:
        _remove_quietly(work_path)
        raise
    except ToolError:
        _remove_quietly(work_path)
        raise

    if result.returncode != 0 or not os.path.isfile(work_path):
        _remove_quietly(work_path)
        tail = "\n".join(result.stderr_tail)
        raise ToolError(
            f"ffmpeg error (code {result.returncode}): {tail}".strip(),
            returncode=result.returncode,
            stderr_tail=result.stderr_tail,
        )

    if os.path.abspath(work_path) != os.path.abspath(final_path):
        shutil.move(work_path, final_path)
    if on_progress is not None:
        on_progress(100)
    return ConvertResult(output_path=final_path, file_size=os.path.getsize(final_path))
