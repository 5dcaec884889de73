from __future__ import annotations

import asyncio
import os
import stat
import sys

import pytest

from engine.errors import ToolError
from media.transcode import ConvertOptions, build_ffmpeg_args, convert_media, output_extension

_FAKE_FFMPEG = """
import os, sys
out = sys.argv[-1]
sys.stderr.write("  Duration: 00:00:10.00, start: 0.000000, bitrate: 128 kb/s\\n")
sys.stderr.write("size=     100kB time=00:00:05.00 bitrate= 128.0kbits/s\\r")
sys.stderr.flush()
if os.environ.get("FAKE_FFMPEG_FAIL"):
    with open(out, "wb") as handle:
        handle.write(b"partial")
    sys.stderr.write("Conversion failed!\\n")
    sys.exit(1)
with open(out, "wb") as handle:
    handle.write(b"encoded")
"""


def _fake_ffmpeg(tmp_path) -> str:
    script = tmp_path / "ffmpeg"
    script.write_text(f"#!{sys.executable}\n" + _FAKE_FFMPEG, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


def test_output_extension_maps_audio_mp4_to_m4a() -> None:
    assert output_extension("mp4") == "m4a"
    assert output_extension("mp4", is_video=True) == "mp4"
    assert output_extension("FLAC") == "flac"


def test_build_ffmpeg_args_selects_stream_and_tags(tmp_path) -> None:
    args = build_ffmpeg_args(
        "/in.mkv",
        "/out.mp3",
        ext="mp3",
        bitrate="192k",
        metadata={"title": "Song", "artist": "Band", "album": ""},
        cover_path=None,
        is_video=False,
        stream_index=2,
    )
    assert args[args.index("-map") + 1] == "0:a:2"
    assert "-vn" in args
    assert args[args.index("-b:a") + 1] == "192k"
    assert "title=Song" in args
    assert "artist=Band" in args
    assert not any(value.startswith("album=") for value in args)
    assert args[-1] == "/out.mp3"


def test_build_ffmpeg_args_embeds_cover_for_mp3(tmp_path) -> None:
    cover = tmp_path / "cover.jpg"
    cover.write_bytes(b"jpg")
    args = build_ffmpeg_args(
        "/in.webm",
        "/out.mp3",
        ext="mp3",
        bitrate=None,
        metadata={},
        cover_path=str(cover),
        is_video=False,
        stream_index=None,
    )
    assert args.count("-i") == 2
    assert "attached_pic" in args
    assert "-vn" not in args


def test_convert_media_moves_finished_output(tmp_path) -> None:
    out_dir = tmp_path / "out"
    temp_dir = tmp_path / "tmp"
    progress: list[int] = []
    source = tmp_path / "in.webm"
    source.write_bytes(b"media")

    result = asyncio.run(
        convert_media(
            str(source),
            "mp3",
            "192",
            "job_0",
            progress.append,
            {"title": "Song"},
            None,
            False,
            str(out_dir),
            str(temp_dir),
            ConvertOptions(ffmpeg_bin=_fake_ffmpeg(tmp_path), poll_interval=0.05),
        )
    )

    assert result.output_path == str(out_dir / "job_0.mp3")
    assert result.file_size == len(b"encoded")
    assert progress == [50, 100]
    assert not os.path.exists(temp_dir / "job_0.mp3")


def test_convert_media_failure_leaves_no_output(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_FFMPEG_FAIL", "1")
    out_dir = tmp_path / "out"
    temp_dir = tmp_path / "tmp"
    source = tmp_path / "in.webm"
    source.write_bytes(b"media")

    with pytest.raises(ToolError) as excinfo:
        asyncio.run(
            convert_media(
                str(source),
                "mp3",
                None,
                "job_1",
                None,
                {},
                None,
                False,
                str(out_dir),
                str(temp_dir),
                ConvertOptions(ffmpeg_bin=_fake_ffmpeg(tmp_path), poll_interval=0.05),
            )
        )

    assert excinfo.value.returncode == 1
    assert "Conversion failed!" in str(excinfo.value)
    assert os.listdir(out_dir) == []
    assert not os.path.exists(temp_dir / "job_1.mp3")


def test_probe_audio_streams_lists_audio_tracks(monkeypatch) -> None:
    from media import ffprobe

    class _Completed:
        stdout = (
            '{"streams": [{"codec_name": "aac", "channels": 2, "tags": {"language": "eng"}},'
            ' {"codec_name": "ac3", "channels": 6}]}'
        )

    calls = []

    def _fake_run(command, **kwargs):
        calls.append(command)
        return _Completed()

    monkeypatch.setattr(ffprobe.subprocess, "run", _fake_run)

    streams = ffprobe.probe_audio_streams("/in.mkv")

    assert calls[0][-1] == "/in.mkv"
    assert "-select_streams" in calls[0]
    assert streams == [
        {"index": 0, "codec": "aac", "language": "eng", "channels": 2},
        {"index": 1, "codec": "ac3", "language": None, "channels": 6},
    ]
