"""Fast media header probing for images and videos."""

import logging
import math

import av
from PIL import Image, UnidentifiedImageError

from engine.frame_pipeline import MAX_SAMPLE_RATE
from media import media_kind

logger = logging.getLogger(__name__)


def _probe_image(path: str) -> dict:
    try:
        with Image.open(path) as img:
            width, height = img.size
            fmt = img.format
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Image probe failed for %s: %s", path, type(e).__name__)
        return {"ok": False, "error": f"Failed to load image: {type(e).__name__}"}
    return {"ok": True, "kind": "image", "width": width, "height": height, "format": fmt}


def _probe_video(path: str) -> dict:
    try:
        container = av.open(path)
    except av.error.FFmpegError as e:
        logger.warning("Video probe failed for %s: %s", path, type(e).__name__)
        return {"ok": False, "error": f"Failed to open video: {type(e).__name__}"}

    with container:
        if not container.streams.video:
            return {"ok": False, "error": "No video stream found"}

        stream = container.streams.video[0]
        fps = float(stream.average_rate) if stream.average_rate else 0.0
        if stream.duration is not None and stream.time_base is not None:
            duration_s = float(stream.duration * stream.time_base)
        elif container.duration:
            duration_s = float(container.duration / av.time_base)
        else:
            duration_s = 0.0

        sample_rate = min(MAX_SAMPLE_RATE, fps or MAX_SAMPLE_RATE)
        sample_count = (
            math.floor(duration_s * sample_rate) if math.isfinite(duration_s) else 0
        )
        return {
            "ok": True,
            "kind": "video",
            "width": stream.width,
            "height": stream.height,
            "fps": fps,
            "duration_s": duration_s,
            "codec": stream.codec_context.name,
            "has_audio": len(container.streams.audio) > 0,
            "sample_rate": sample_rate,
            "sample_count": sample_count,
        }


def probe(path: str) -> dict:
    """Probe a media file for metadata. Fast — reads only headers."""
    kind = media_kind(path)
    if kind == "image":
        return _probe_image(path)
    if kind == "video":
        return _probe_video(path)
    return {"ok": False, "error": "Unsupported file type"}
