"""Wrapper utilities for retrieving media information using ffprobe."""

from __future__ import annotations

import json
import subprocess


def _run_ffprobe(file_path: str, extra_args: list[str], ffprobe_bin: str = "ffprobe") -> dict:
    command = [ffprobe_bin, "-v", "error", "-print_format", "json", *extra_args, file_path]
    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            timeout=15,
        )
    except FileNotFoundError as exc:
        raise RuntimeError("ffprobe is not installed or not available in PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError(f"ffprobe timed out while probing: {file_path}") from exc
    except subprocess.CalledProcessError as exc:
        stderr_text = (exc.stderr or "").strip()
        raise RuntimeError(f"ffprobe failed for {file_path}: {stderr_text or exc}") from exc

    try:
        return json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"ffprobe returned invalid JSON for {file_path}") from exc


def probe_audio_streams(file_path: str, ffprobe_bin: str = "ffprobe") -> list[dict]:
    """Return one dict per audio stream: ``index`` (audio-relative), ``codec``, ``language``, ``channels``."""
    payload = _run_ffprobe(file_path, ["-show_streams", "-select_streams", "a"], ffprobe_bin)
    streams = []
    for position, stream in enumerate(payload.get("streams") or []):
        tags = stream.get("tags") or {}
        streams.append(
            {
                "index": position,
                "codec": stream.get("codec_name"),
                "language": tags.get("language"),
                "channels": stream.get("channels"),
            }
        )
    return streams
