import io
import logging
import os

from PIL import Image
import requests


def _normalize_artwork_blob(data, *, max_size_px, label):
    if not data:
        return None
    try:
        image = Image.open(io.BytesIO(data))
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        if max_size_px:
            image.thumbnail((max_size_px, max_size_px))
        output = io.BytesIO()
        image.save(output, format="JPEG", quality=90)
        return output.getvalue()
    except Exception:
        logging.debug("Artwork processing failed for %s", label)
        return None


def fetch_cover_to_file(artwork_url, dest_path, max_size_px=1200, timeout=10):
    """Download ``artwork_url`` as a JPEG cover at ``dest_path``; ``None`` on any failure."""
    url = str(artwork_url or "").strip()
    if not url or not dest_path:
        return None
    try:
        resp = requests.get(url, timeout=timeout)
    except Exception:
        logging.debug("Artwork URL download failed for %s", url)
        return None
    if not resp.ok or not resp.content:
        return None
    data = _normalize_artwork_blob(resp.content, max_size_px=max_size_px, label=url)
    if not data:
        return None
    try:
        os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)
        with open(dest_path, "wb") as handle:
            handle.write(data)
    except OSError:
        logging.debug("Artwork write failed for %s", dest_path)
        return None
    return dest_path
