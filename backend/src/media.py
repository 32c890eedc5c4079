"""Media kind detection, download naming and size formatting."""

import mimetypes
from pathlib import PurePath

OUTPUT_PREFIX = "blurred_"
OUTPUT_EXTENSIONS = {"image": "png", "video": "webm"}


def media_kind(name_or_mime: str) -> str:
    """Classify a MIME type or filename as "image", "video" or "unsupported"."""
    if "/" in name_or_mime and not PurePath(name_or_mime).suffix:
        mime = name_or_mime
    else:
        mime, _ = mimetypes.guess_type(name_or_mime)
    if not mime:
        return "unsupported"
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    return "unsupported"


def output_filename(name: str, kind: str) -> str:
    """Download name for a processed file, e.g. ``clip.mp4`` -> ``blurred_clip.webm``."""
    ext = OUTPUT_EXTENSIONS.get(kind)
    if ext is None:
        return f"{OUTPUT_PREFIX}output.bin"
    base = PurePath(name).name
    stem = base.rsplit(".", 1)[0] if "." in base else base
    return f"{OUTPUT_PREFIX}{stem or base}.{ext}"


def format_file_size(size: int) -> str:
    """Human readable size: bytes below 1 KiB, else KB or MB with two decimals."""
    if size < 1024:
        return f"{size} bytes"
    if size < 1024 * 1024:
        return f"{size / 1024:.2f} KB"
    return f"{size / (1024 * 1024):.2f} MB"
