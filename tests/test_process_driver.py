from __future__ import annotations

import asyncio
import subprocess
import sys
import time
from pathlib import Path

import pytest

from download.process import _pump, run_process
from engine.errors import CancelledError, ToolNotFoundError
from engine.jobs import CancelToken

_FAKE_TOOL = """
import sys, time
mode = sys.argv[1]
if mode == "progress":
    sys.stdout.write("step 10%\\rstep 50%\\rstep 100%\\n")
    sys.stdout.flush()
    sys.stderr.write("ERROR: something went wrong\\n")
    sys.stderr.flush()
    sys.exit(3)
if mode == "hang":
    print("started", flush=True)
    time.sleep(30)
"""


def _write_tool(tmp_path) -> str:
    script = tmp_path / "fake_tool.py"
    script.write_text(_FAKE_TOOL, encoding="utf-8")
    return str(script)


def test_run_process_splits_carriage_returns_and_keeps_stderr_tail(tmp_path) -> None:
    tool = _write_tool(tmp_path)
    lines: list[tuple[str, str]] = []

    result = asyncio.run(
        run_process([sys.executable, tool, "progress"], on_line=lambda line, stream: lines.append((line, stream)))
    )

    assert result.returncode == 3
    assert ("step 10%", "stdout") in lines
    assert ("step 50%", "stdout") in lines
    assert ("step 100%", "stdout") in lines
    assert result.stderr_tail == ["ERROR: something went wrong"]


def test_run_process_cancel_terminates_child(tmp_path) -> None:
    tool = _write_tool(tmp_path)
    spawned = []
    exited = []

    async def _run() -> float:
        token = CancelToken()
        started = asyncio.Event()

        def _on_line(line: str, stream: str) -> None:
            if line == "started":
                started.set()

        task = asyncio.ensure_future(
            run_process(
                [sys.executable, tool, "hang"],
                on_line=_on_line,
                cancel_token=token,
                on_spawn=spawned.append,
                on_exit=exited.append,
                poll_interval=0.05,
                kill_grace_seconds=1.0,
            )
        )
        await asyncio.wait_for(started.wait(), timeout=10)
        begin = time.monotonic()
        token.cancel("user")
        with pytest.raises(CancelledError):
            await asyncio.wait_for(task, timeout=10)
        return time.monotonic() - begin

    elapsed = asyncio.run(_run())
    assert elapsed < 5
    assert len(spawned) == 1
    assert exited == spawned
    assert spawned[0].returncode is not None


def test_run_process_refuses_to_start_when_already_cancelled(tmp_path) -> None:
    token = CancelToken()
    token.cancel("user")
    spawned = []
    with pytest.raises(CancelledError):
        asyncio.run(run_process([sys.executable, "-c", "pass"], cancel_token=token, on_spawn=spawned.append))
    assert spawned == []


def test_run_process_missing_executable(tmp_path) -> None:
    with pytest.raises(ToolNotFoundError):
        asyncio.run(run_process([str(tmp_path / "no-such-tool")]))


def test_pump_keeps_multibyte_characters_split_across_reads() -> None:
    async def _run():
        reader = asyncio.StreamReader()
        reader.feed_data(("a" * 4095 + "ş\n" + "[download] Destination: /tmp/Şarkı.webm").encode("utf-8"))
        reader.feed_eof()
        lines: list[str] = []
        await _pump(reader, "stdout", lambda line, stream: lines.append(line))
        return lines

    lines = asyncio.run(_run())
    assert lines == ["a" * 4095 + "ş", "[download] Destination: /tmp/Şarkı.webm"]


@pytest.mark.parametrize("module", ["download.process", "download.ytdlp", "media.transcode", "engine.runner"])
def test_driver_modules_import_on_their_own(module) -> None:
    root = Path(__file__).resolve().parents[1]
    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        cwd=str(root),
        capture_output=True,
        text=True,
        timeout=60,
    )
    assert result.returncode == 0, result.stderr
