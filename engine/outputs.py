"""Output naming, reuse of previously converted files, and temp cleanup."""

from __future__ import annotations

import logging
import os
import shutil
import zipfile
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DOWNLOAD_URL_PREFIX = "/download/"

FORMAT_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "mp3": ("mp3",),
    "flac": ("flac",),
    "wav": ("wav",),
    "ogg": ("ogg", "oga"),
    "mp4": ("mp4", "m4a"),
}


@dataclass(frozen=True)
class ConvertResult:
    output_path: str
    file_size: int
    reused: bool = False

    @property
    def name(self) -> str:
        return os.path.basename(self.output_path)

    @property
    def download_url(self) -> str:
        return download_url(self.output_path)


def download_url(path: str) -> str:
    return DOWNLOAD_URL_PREFIX + os.path.basename(path)


def accepted_extensions(fmt: str) -> tuple[str, ...]:
    key = str(fmt or "").strip().lower().lstrip(".")
    return FORMAT_EXTENSIONS.get(key, (key,))


def item_output_id(job_id: str, index: int) -> str:
    return f"{job_id}_{index}"


def stream_output_id(job_id: str, stream_index: int) -> str:
    return f"{job_id}_a{stream_index}"


def find_existing_output(id_prefix: str, fmt: str, out_dir: str) -> str | None:
    """Return a previously produced ``<id_prefix>.<ext>`` in ``out_dir``, if any.

    Only the name and extension are checked. Zero-byte files are ignored since
    the convert step removes partial outputs on failure and cancellation.
    """
    if not id_prefix or not out_dir:
        return None
    try:
        names = sorted(os.listdir(out_dir))
    except FileNotFoundError:
        return None
    extensions = accepted_extensions(fmt)
    stem = id_prefix + "."
    for name in names:
        if not name.startswith(stem):
            continue
        ext = name[len(stem):].lower()
        if ext not in extensions:
            continue
        path = os.path.join(out_dir, name)
        try:
            if os.path.isfile(path) and os.path.getsize(path) > 0:
                return path
        except OSError:
            continue
    return None


def reuse_result(id_prefix: str, fmt: str, out_dir: str) -> ConvertResult | None:
    existing = find_existing_output(id_prefix, fmt, out_dir)
    if existing is None:
        return None
    logger.info("Reusing existing output id=%s path=%s", id_prefix, existing)
    return ConvertResult(output_path=existing, file_size=os.path.getsize(existing), reused=True)


def make_zip(job_id: str, output_paths: list[str], out_dir: str) -> str | None:
    """Pack outputs into ``<job_id>.zip``; returns ``None`` when packing fails."""
    paths = [p for p in output_paths if p and os.path.isfile(p)]
    if not paths:
        return None
    zip_path = os.path.join(out_dir, f"{job_id}.zip")
    tmp_path = zip_path + ".part"
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_STORED) as archive:
            for path in paths:
                archive.write(path, arcname=os.path.basename(path))
        os.replace(tmp_path, zip_path)
    except OSError:
        logger.exception("Zip creation failed job_id=%s", job_id)
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        return None
    return zip_path


def cleanup_temp_files(job_id: str, temp_dir: str) -> int:
    """Remove the job's temp directory and any ``<job_id>*`` files in ``temp_dir``."""
    if not job_id or not temp_dir or not os.path.isdir(temp_dir):
        return 0
    removed = 0
    for name in os.listdir(temp_dir):
        if not name.startswith(job_id):
            continue
        path = os.path.join(temp_dir, name)
        try:
            if os.path.isdir(path):
                shutil.rmtree(path, ignore_errors=True)
            else:
                os.remove(path)
            removed += 1
        except OSError:
            logger.debug("Temp cleanup failed for %s", path)
    return removed
