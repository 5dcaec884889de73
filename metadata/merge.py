"""Per-item metadata merge for batch jobs.

Sources are ranked: the client-frozen snapshot first, then provider entries
matched by id or playlist index, then a title derived from the file name.
"""

from __future__ import annotations

import logging
import os
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

_LOG = logging.getLogger(__name__)
_WS_RE = re.compile(r"\s+")
_INDEX_PREFIX_RE = re.compile(r"^\d+\s*-\s*")
_GENERIC_ARTISTS_RE = re.compile(r"^(youtube|youtube\s+mix)$", re.IGNORECASE)

ITEM_FIELDS = ("id", "title", "uploader", "artist", "album", "webpage_url", "thumbnail")


@dataclass
class EntrySources:
    frozen_by_index: dict[int, dict] = field(default_factory=dict)
    frozen_by_id: dict[str, dict] = field(default_factory=dict)
    entries_by_index: dict[int, dict] = field(default_factory=dict)
    entries_by_id: dict[str, dict] = field(default_factory=dict)
    album: Optional[str] = None


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def _normalize_string(value: Any) -> str | None:
    if value is None:
        return None
    text = _WS_RE.sub(" ", unicodedata.normalize("NFC", str(value))).strip()
    return text or None


def _as_index(value: Any) -> Optional[int]:
    try:
        index = int(value)
    except (TypeError, ValueError):
        return None
    return index if index > 0 else None


def merge_missing(base: dict, extra: Optional[dict]) -> dict:
    """Fill only the empty fields of ``base`` from ``extra``; returns a new dict."""
    merged = dict(base or {})
    for key, value in (extra or {}).items():
        if not _has_value(value):
            continue
        if not _has_value(merged.get(key)):
            merged[key] = value
    return merged


def title_from_filename(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path or ""))[0]
    return _normalize_string(_INDEX_PREFIX_RE.sub("", stem)) or stem


def build_entry_sources(
    frozen_entries: Optional[Iterable[dict]] = None,
    provider_entries: Optional[Iterable[dict]] = None,
    album: Optional[str] = None,
) -> EntrySources:
    sources = EntrySources(album=_normalize_string(album))
    for entry in frozen_entries or ():
        if not isinstance(entry, dict):
            continue
        index = _as_index(entry.get("index"))
        if index is not None:
            sources.frozen_by_index[index] = {**entry, "index": index}
        if entry.get("id"):
            sources.frozen_by_id[str(entry["id"])] = {**entry, "index": index}
    for entry in provider_entries or ():
        if not isinstance(entry, dict):
            continue
        playlist = entry.get("playlist")
        index = _as_index(entry.get("playlist_index"))
        if index is None and isinstance(playlist, dict):
            index = _as_index(playlist.get("index"))
        if index is not None:
            sources.entries_by_index[index] = entry
        if entry.get("id"):
            sources.entries_by_id[str(entry["id"])] = entry
    return sources


def resolve_item_metadata(
    index: int,
    path: Optional[str],
    sources: EntrySources,
    *,
    selected_ids: Optional[Sequence[str]] = None,
    base: Optional[dict] = None,
) -> dict:
    """Merge title/uploader/artist for item ``index`` (1-based) from the ranked sources."""
    frozen = sources.frozen_by_index.get(index)
    if frozen is None and selected_ids and 0 < index <= len(selected_ids):
        frozen = sources.frozen_by_id.get(str(selected_ids[index - 1]))
    frozen = frozen or {}

    entry: dict = {}
    if frozen.get("id") and str(frozen["id"]) in sources.entries_by_id:
        entry = sources.entries_by_id[str(frozen["id"])]
    elif index in sources.entries_by_index:
        entry = sources.entries_by_index[index]
    elif selected_ids and 0 < index <= len(selected_ids):
        entry = sources.entries_by_id.get(str(selected_ids[index - 1])) or {}

    fallback = {"title": title_from_filename(path)} if path else {}
    if selected_ids and 0 < index <= len(selected_ids):
        fallback["id"] = str(selected_ids[index - 1])

    def pick(field_name: str, extractor) -> Any:
        for source_name, source in (("frozen", frozen), ("provider", entry), ("filename", fallback)):
            value = extractor(source)
            if _has_value(value):
                _LOG.debug("metadata_field_source index=%s field=%s source=%s", index, field_name, source_name)
                return value
        return None

    title = _normalize_string(pick("title", lambda s: s.get("title") or s.get("track")))
    uploader = _normalize_string(pick("uploader", lambda s: s.get("uploader") or s.get("channel")))
    artist = _normalize_string(pick("artist", lambda s: s.get("artist") or s.get("uploader")))
    if artist and _GENERIC_ARTISTS_RE.match(artist):
        artist = None

    merged = {
        "index": index,
        "id": pick("id", lambda s: s.get("id")),
        "title": title,
        "track": title,
        "uploader": uploader,
        "artist": artist,
        "album_artist": artist,
        "album": sources.album,
        "webpage_url": pick("webpage_url", lambda s: s.get("webpage_url") or s.get("url")),
        "thumbnail": pick("thumbnail", lambda s: s.get("thumbnail")),
    }
    merged = {key: value for key, value in merged.items() if _has_value(value)}
    return merge_missing(merged, base)
