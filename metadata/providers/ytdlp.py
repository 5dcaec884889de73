"""Best-effort source metadata lookups through the yt-dlp Python API."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import anyio
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError, ExtractorError

logger = logging.getLogger(__name__)

_BASE_OPTS = {
    "quiet": True,
    "no_warnings": True,
    "skip_download": True,
    "retries": 2,
    "socket_timeout": 15,
}


def extract_meta(info: Any, *, fallback_url: Optional[str] = None) -> dict:
    if not isinstance(info, dict):
        return {}
    return {
        "id": info.get("id"),
        "title": info.get("track") or info.get("title"),
        "uploader": info.get("channel") or info.get("uploader"),
        "artist": info.get("artist") or info.get("creator"),
        "album": info.get("album"),
        "album_artist": info.get("album_artist"),
        "release_year": info.get("release_year"),
        "webpage_url": info.get("webpage_url") or info.get("url") or fallback_url,
        "thumbnail": info.get("thumbnail"),
        "duration": info.get("duration"),
    }


def _extract_info(url: str, is_playlist: bool) -> dict:
    opts = dict(_BASE_OPTS)
    if is_playlist:
        opts["extract_flat"] = "in_playlist"
        opts["noplaylist"] = False
    else:
        opts["noplaylist"] = True
    with YoutubeDL(opts) as ydl:
        info = ydl.extract_info(url, download=False)
    return ydl.sanitize_info(info) if isinstance(info, dict) else {}


def build_entries_map(info: Optional[dict]) -> dict[int, dict]:
    """Map playlist index (1-based) to the flat entry yt-dlp reported for it."""
    entries = (info or {}).get("entries") or []
    mapped = {}
    for position, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            continue
        index = entry.get("playlist_index") or position
        try:
            mapped[int(index)] = entry
        except (TypeError, ValueError):
            continue
    return mapped


async def fetch_source_metadata(url: str, is_playlist: bool = False) -> Optional[dict]:
    """Return ``{"title", "uploader", "count", "entries", ...}`` or ``None`` when lookup fails.

    Playlist entries are normalized with :func:`extract_meta` and carry their
    ``playlist_index``.
    """
    if not url or not re.match(r"^https?://", url, re.IGNORECASE):
        return None
    try:
        info = await anyio.to_thread.run_sync(_extract_info, url, is_playlist)
    except (DownloadError, ExtractorError) as exc:
        logger.info("Metadata lookup failed url=%s error=%s", url, exc)
        return None
    except Exception:
        logger.exception("Metadata lookup crashed url=%s", url)
        return None
    meta = extract_meta(info, fallback_url=url)
    if is_playlist:
        entries = []
        for index, entry in sorted(build_entries_map(info).items()):
            item = extract_meta(entry)
            item["playlist_index"] = index
            entries.append(item)
        meta["entries"] = entries
        meta["count"] = info.get("playlist_count") or len(entries) or None
        meta["title"] = info.get("title") or meta.get("title")
    return meta


async def probe_item_metadata(url_or_id: str) -> Optional[dict]:
    """Single-item lookup used to enrich batch items; ``None`` on any failure."""
    text = str(url_or_id or "").strip()
    if not text:
        return None
    url = text if re.match(r"^https?://", text, re.IGNORECASE) else f"https://www.youtube.com/watch?v={text}"
    meta = await fetch_source_metadata(url, is_playlist=False)
    if not meta:
        return None
    return {key: value for key, value in meta.items() if value not in (None, "")}
