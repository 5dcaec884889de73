"""Ordered classification of yt-dlp output lines into skip and error hints.

The wording matched here belongs to yt-dlp and drifts between releases. Rules
are plain data so new phrasings can be added without touching the driver.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Pattern

CATEGORY_IGNORE = "ignore"
CATEGORY_SKIP = "skip"
CATEGORY_ERROR = "error"

_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class Rule:
    pattern: Pattern[str]
    category: str
    reason: str

    def matches(self, line: str) -> bool:
        return bool(self.pattern.search(line))


def _rule(pattern: str, category: str, reason: str) -> Rule:
    return Rule(pattern=re.compile(pattern, re.IGNORECASE), category=category, reason=reason)


# Deterministic mapping of known yt-dlp unavailability signals to skip reasons.
# First match wins, so the narrow reasons sit above the catch-all skip rule.
DEFAULT_RULES: tuple[Rule, ...] = (
    _rule(r"^\s*SKIP_(SUMMARY|HINT):", CATEGORY_IGNORE, "echo"),
    _rule(
        r"SABR streaming for this client.*Some web(?:_safari)? client https formats have been skipped",
        CATEGORY_IGNORE,
        "benign_format_warning",
    ),
    _rule(
        r"private video|this video is private|members[\s-]*only|join this channel",
        CATEGORY_SKIP,
        "private_or_members_only",
    ),
    _rule(
        r"has been removed|video has been removed|removed by the uploader|account .* terminated",
        CATEGORY_SKIP,
        "removed_or_deleted",
    ),
    _rule(r"sign\s*in to confirm your age|age[-\s]?restrict", CATEGORY_SKIP, "age_restricted"),
    _rule(
        r"not (?:made this video )?available in your country|geo[-\s]?(?:restricted|blocked)|region",
        CATEGORY_SKIP,
        "region_restricted",
    ),
    _rule(r"copyright", CATEGORY_SKIP, "copyright"),
    # Transient network failures are errors even when the text says "unavailable".
    _rule(
        r"timed out|timeout|connection reset|temporary failure|network error|"
        r"unable to download webpage|couldn't download webpage|http error 5|"
        r"service unavailable|too many requests",
        CATEGORY_ERROR,
        "transient",
    ),
    _rule(
        r"private|blocked|geo|not\s+available|unavailable|signin|sign\s*in|skipp?ed|removed",
        CATEGORY_SKIP,
        "unavailable",
    ),
    _rule(r"\berror\b", CATEGORY_ERROR, "error"),
)


def normalize_line(line: str) -> str:
    return _WS_RE.sub(" ", str(line or "")).strip()


class LineClassifier:
    """Return the first matching rule for a line, or ``None``."""

    def __init__(self, rules: Iterable[Rule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def classify(self, line: str) -> Optional[Rule]:
        text = normalize_line(line)
        if not text:
            return None
        for rule in self.rules:
            if rule.matches(text):
                return rule
        return None


@dataclass
class SkipCounter:
    """Count skip and error lines for one process run, once per distinct line."""

    classifier: LineClassifier = field(default_factory=LineClassifier)
    skipped: int = 0
    errors: int = 0
    _seen: set = field(default_factory=set, repr=False)

    def feed(self, line: str) -> Optional[Rule]:
        """Record ``line``; returns the rule only the first time a skip or error line is seen."""
        rule = self.classifier.classify(line)
        if rule is None or rule.category == CATEGORY_IGNORE:
            return None
        key = normalize_line(line)
        if key in self._seen:
            return None
        self._seen.add(key)
        if rule.category == CATEGORY_SKIP:
            self.skipped += 1
        elif rule.category == CATEGORY_ERROR:
            self.errors += 1
        return rule
