"""Source detection for job submissions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs, urlparse


class SourceKind(Enum):
    YOUTUBE_VIDEO = "youtube_video"
    YOUTUBE_PLAYLIST = "youtube_playlist"
    YOUTUBE_AUTOMIX = "youtube_automix"
    SPOTIFY_TRACK = "spotify_track"
    SPOTIFY_ALBUM = "spotify_album"
    SPOTIFY_PLAYLIST = "spotify_playlist"
    URL = "url"
    LOCAL_FILE = "local_file"


BATCH_KINDS = {
    SourceKind.YOUTUBE_PLAYLIST,
    SourceKind.YOUTUBE_AUTOMIX,
    SourceKind.SPOTIFY_ALBUM,
    SourceKind.SPOTIFY_PLAYLIST,
}


@dataclass
class Source:
    kind: SourceKind
    value: str
    identifier: str  # ID extracted, or the original value

    @property
    def is_batch(self) -> bool:
        return self.kind in BATCH_KINDS

    @property
    def is_remote(self) -> bool:
        return self.kind is not SourceKind.LOCAL_FILE


def detect_source(value: str) -> Source:
    """Classify a submitted source without network calls.

    Rules:
    - Spotify URLs map to track/album/playlist by their first path segment.
    - YouTube URLs with ``list=RD...`` are automix, other ``list=`` values are
      playlists, anything else on a YouTube host is a single video.
    - Other ``http(s)`` URLs are generic single-item URLs.
    - Everything else is treated as a local file path.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("source is required")

    for resource, kind in (
        ("track", SourceKind.SPOTIFY_TRACK),
        ("album", SourceKind.SPOTIFY_ALBUM),
        ("playlist", SourceKind.SPOTIFY_PLAYLIST),
    ):
        spotify_id = _extract_spotify_id(raw, resource)
        if spotify_id:
            return Source(kind=kind, value=raw, identifier=spotify_id)

    parsed = urlparse(raw)
    if parsed.scheme in ("http", "https"):
        netloc = (parsed.netloc or "").lower()
        if "youtube.com" in netloc or "youtu.be" in netloc:
            list_id = _first_query_value(parsed.query, "list")
            if list_id and list_id.upper().startswith("RD"):
                return Source(kind=SourceKind.YOUTUBE_AUTOMIX, value=raw, identifier=list_id)
            if list_id and not _first_query_value(parsed.query, "v"):
                return Source(kind=SourceKind.YOUTUBE_PLAYLIST, value=raw, identifier=list_id)
            if list_id and "/playlist" in (parsed.path or ""):
                return Source(kind=SourceKind.YOUTUBE_PLAYLIST, value=raw, identifier=list_id)
            return Source(kind=SourceKind.YOUTUBE_VIDEO, value=raw, identifier=_youtube_video_id(parsed) or raw)
        return Source(kind=SourceKind.URL, value=raw, identifier=raw)

    return Source(kind=SourceKind.LOCAL_FILE, value=raw, identifier=raw)


def _extract_spotify_id(raw: str, resource: str) -> Optional[str]:
    parsed = urlparse(raw)
    if parsed.scheme and "spotify.com" in (parsed.netloc or "").lower():
        parts = [segment for segment in (parsed.path or "").split("/") if segment]
        # Localized links look like /intl-de/track/<id>.
        if parts and parts[0].lower().startswith("intl-"):
            parts = parts[1:]
        if len(parts) >= 2 and parts[0].lower() == resource:
            return _clean_identifier(parts[1])
    return None


def _first_query_value(query: str, key: str) -> Optional[str]:
    values = parse_qs(query or "").get(key)
    if not values:
        return None
    return _clean_identifier(values[0]) or None


def _youtube_video_id(parsed) -> Optional[str]:
    if "youtu.be" in (parsed.netloc or "").lower():
        return _clean_identifier(parsed.path) or None
    return _first_query_value(parsed.query, "v")


def _clean_identifier(value: str) -> str:
    return (value or "").split("?", 1)[0].strip().strip("/")
