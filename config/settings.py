"""Application settings loaded from ``MEDIAFLOW_*`` environment variables."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Mapping

# Parallel yt-dlp invocations per batch job.
DEFAULT_DOWNLOAD_CONCURRENCY = 2

# Parallel ffmpeg conversions per batch job.
DEFAULT_CONVERT_CONCURRENCY = 2

# Parallel best-effort metadata lookups per batch job.
DEFAULT_ENRICH_CONCURRENCY = 3

# Seconds a child process gets after SIGTERM before it is killed.
DEFAULT_KILL_GRACE_SECONDS = 5.0

# Cancellation poll interval for running child processes.
DEFAULT_CANCEL_POLL_SECONDS = 0.25

# Socket timeout handed to yt-dlp.
DEFAULT_SOCKET_TIMEOUT = 15

# Playlist items fetched when the caller selects nothing explicitly.
DEFAULT_PLAYLIST_END = 100

# Interval between registry garbage collection runs.
DEFAULT_GC_INTERVAL_SECONDS = 600

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    download_concurrency: int = DEFAULT_DOWNLOAD_CONCURRENCY
    convert_concurrency: int = DEFAULT_CONVERT_CONCURRENCY
    enrich_concurrency: int = DEFAULT_ENRICH_CONCURRENCY
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    cancel_poll_seconds: float = DEFAULT_CANCEL_POLL_SECONDS
    socket_timeout: int = DEFAULT_SOCKET_TIMEOUT
    playlist_end: int = DEFAULT_PLAYLIST_END
    gc_interval_seconds: int = DEFAULT_GC_INTERVAL_SECONDS
    enrich_metadata: bool = True
    ytdlp_bin: str = "yt-dlp"
    ffmpeg_bin: str = "ffmpeg"
    ytdlp_extra_args: tuple[str, ...] = field(default_factory=tuple)


def _read_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = str(env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


def _read_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = str(env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}") from exc


def _read_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = str(env.get(key) or "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be a boolean, got {raw!r}")


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from environment variables.

    Unset variables fall back to the module defaults. Malformed numeric or
    boolean values raise ``ValueError`` naming the offending variable.
    """
    env = os.environ if env is None else env
    return Settings(
        download_concurrency=_read_int(env, "MEDIAFLOW_DOWNLOAD_CONCURRENCY", DEFAULT_DOWNLOAD_CONCURRENCY),
        convert_concurrency=_read_int(env, "MEDIAFLOW_CONVERT_CONCURRENCY", DEFAULT_CONVERT_CONCURRENCY),
        enrich_concurrency=_read_int(env, "MEDIAFLOW_ENRICH_CONCURRENCY", DEFAULT_ENRICH_CONCURRENCY),
        kill_grace_seconds=_read_float(env, "MEDIAFLOW_KILL_GRACE_SECONDS", DEFAULT_KILL_GRACE_SECONDS),
        cancel_poll_seconds=_read_float(env, "MEDIAFLOW_CANCEL_POLL_SECONDS", DEFAULT_CANCEL_POLL_SECONDS),
        socket_timeout=_read_int(env, "MEDIAFLOW_SOCKET_TIMEOUT", DEFAULT_SOCKET_TIMEOUT),
        playlist_end=_read_int(env, "MEDIAFLOW_PLAYLIST_END", DEFAULT_PLAYLIST_END),
        gc_interval_seconds=_read_int(env, "MEDIAFLOW_GC_INTERVAL_SECONDS", DEFAULT_GC_INTERVAL_SECONDS),
        enrich_metadata=_read_bool(env, "MEDIAFLOW_ENRICH_METADATA", True),
        ytdlp_bin=str(env.get("MEDIAFLOW_YTDLP_BIN") or "yt-dlp").strip(),
        ffmpeg_bin=str(env.get("MEDIAFLOW_FFMPEG_BIN") or "ffmpeg").strip(),
        ytdlp_extra_args=tuple(shlex.split(str(env.get("MEDIAFLOW_YTDLP_EXTRA_ARGS") or ""))),
    )


def validate_settings(settings: Settings) -> list[str]:
    errors = []
    for name in ("download_concurrency", "convert_concurrency", "enrich_concurrency"):
        if getattr(settings, name) < 1:
            errors.append(f"{name} must be at least 1")
    if settings.kill_grace_seconds < 0:
        errors.append("kill_grace_seconds must not be negative")
    if settings.cancel_poll_seconds <= 0:
        errors.append("cancel_poll_seconds must be positive")
    if settings.socket_timeout < 1:
        errors.append("socket_timeout must be at least 1")
    if settings.playlist_end < 1:
        errors.append("playlist_end must be at least 1")
    if settings.gc_interval_seconds < 1:
        errors.append("gc_interval_seconds must be at least 1")
    if not settings.ytdlp_bin:
        errors.append("ytdlp_bin is required")
    if not settings.ffmpeg_bin:
        errors.append("ffmpeg_bin is required")
    return errors
