"""Typed progress events emitted while a retrieval process runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Union


@dataclass(frozen=True)
class FileDone:
    path: str
    done: int
    total: Optional[int] = None


@dataclass(frozen=True)
class PercentUpdate:
    percent: float
    # Item percentage folded into the batch share, when a batch total is known.
    overall: Optional[int] = None


@dataclass(frozen=True)
class SkipHint:
    line: str
    reason: str
    count: int


@dataclass(frozen=True)
class Summary:
    files: tuple[str, ...]
    skipped: int
    errors: int
    returncode: Optional[int] = None
    total: Optional[int] = None


ProgressEvent = Union[FileDone, PercentUpdate, SkipHint, Summary]
EventCallback = Callable[[ProgressEvent], None]
