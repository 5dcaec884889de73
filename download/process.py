"""Asyncio driver for external tool processes with line-oriented output."""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
import signal
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from engine.errors import CancelledError, ToolNotFoundError
from engine.jobs import CancelToken

logger = logging.getLogger(__name__)

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")
_CANCEL_TEXT_RE = re.compile(r"terminated|killed|aborted|SIGTERM|SIGKILL", re.IGNORECASE)
_CANCEL_SIGNALS = {signal.SIGTERM, signal.SIGKILL, signal.SIGINT}

STDOUT = "stdout"
STDERR = "stderr"

LineHandler = Callable[[str, str], None]


@dataclass
class ProcessResult:
    returncode: int
    stderr_tail: list[str] = field(default_factory=list)


def terminate_process(proc, *, grace_seconds: float = 5.0, sig: int = signal.SIGTERM) -> bool:
    """Ask ``proc`` to exit and force-kill it if still alive after ``grace_seconds``.

    Returns ``False`` when the process had already exited.
    """
    if proc is None or proc.returncode is not None:
        return False
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        return False
    if grace_seconds > 0:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return True
        loop.call_later(grace_seconds, _kill_if_alive, proc)
    return True


def _kill_if_alive(proc) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
        logger.info("Child process pid=%s killed after grace window", proc.pid)
    except ProcessLookupError:
        pass


async def _pump(stream: asyncio.StreamReader, name: str, handle: Callable[[str, str], None]) -> None:
    # Multi-byte characters may straddle read chunks.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            buffer += decoder.decode(b"", final=True)
            break
        buffer += decoder.decode(chunk)
        parts = _LINE_SPLIT_RE.split(buffer)
        buffer = parts.pop()
        for line in parts:
            handle(line, name)
    if buffer:
        handle(buffer, name)


async def run_process(
    argv: Sequence[str],
    *,
    on_line: Optional[LineHandler] = None,
    cancel_token: Optional[CancelToken] = None,
    on_spawn: Optional[Callable[[object], None]] = None,
    on_exit: Optional[Callable[[object], None]] = None,
    poll_interval: float = 0.25,
    kill_grace_seconds: float = 5.0,
    tail_lines: int = 20,
    cwd: Optional[str] = None,
    env: Optional[dict] = None,
) -> ProcessResult:
    """Run ``argv`` to completion, feeding every output line to ``on_line``.

    Lines are split on ``\\n`` and ``\\r`` so carriage-return progress updates
    arrive one by one. The last ``tail_lines`` stderr lines are kept for error
    reports.

    Raises:
        ToolNotFoundError: If the executable cannot be spawned.
        CancelledError: If the token was cancelled, or the process died from a
            termination signal.
    """
    token = cancel_token or CancelToken()
    token.raise_if_cancelled()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except FileNotFoundError as exc:
        raise ToolNotFoundError(f"{argv[0]} is not installed or not available in PATH") from exc
    except PermissionError as exc:
        raise ToolNotFoundError(f"{argv[0]} is not executable") from exc

    if on_spawn is not None:
        on_spawn(proc)
    tail: deque[str] = deque(maxlen=tail_lines)

    def _handle(line: str, stream_name: str) -> None:
        if stream_name == STDERR and line.strip():
            tail.append(line)
        if token.cancelled or on_line is None or not line.strip():
            return
        try:
            on_line(line, stream_name)
        except Exception:
            logger.exception("Line handler failed for %s", argv[0])

    def _on_cancel() -> None:
        terminate_process(proc, grace_seconds=kill_grace_seconds)

    async def _tick() -> None:
        while proc.returncode is None:
            await asyncio.sleep(poll_interval)
            if token.cancelled:
                _on_cancel()
                return

    remove_callback = token.add_callback(_on_cancel)
    ticker = asyncio.ensure_future(_tick())
    try:
        await asyncio.gather(
            _pump(proc.stdout, STDOUT, _handle),
            _pump(proc.stderr, STDERR, _handle),
        )
        returncode = await proc.wait()
    except asyncio.CancelledError:
        terminate_process(proc, grace_seconds=kill_grace_seconds)
        raise
    finally:
        remove_callback()
        ticker.cancel()
        if on_exit is not None:
            on_exit(proc)

    if token.cancelled:
        raise CancelledError()
    if returncode < 0:
        try:
            by_signal = signal.Signals(-returncode) in _CANCEL_SIGNALS
        except ValueError:
            by_signal = False
        if by_signal or _CANCEL_TEXT_RE.search("\n".join(tail)):
            raise CancelledError()
    return ProcessResult(returncode=returncode, stderr_tail=list(tail))
