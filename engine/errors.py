"""Exception types shared by the job pipeline."""

from __future__ import annotations


class CancelledError(Exception):
    """Raised to abort in-flight work due to job cancellation."""

    def __init__(self, message: str = "CANCELED") -> None:
        super().__init__(message)


class ToolError(RuntimeError):
    """Raised when an external tool invocation fails without usable output."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr_tail: list[str] | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr_tail = list(stderr_tail or [])


class ItemSkippedError(ToolError):
    """Raised when retrieval produced nothing because the source is unavailable."""

    def __init__(self, message: str, *, reason: str | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class ToolNotFoundError(ToolError):
    """Raised when the external tool binary cannot be spawned."""
