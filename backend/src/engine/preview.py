"""JPEG preview encoding for base64 transport to the UI."""

import base64
import io

import numpy as np
from PIL import Image

PREVIEW_QUALITY = 90
# Longest side of a preview; larger frames are downscaled
MAX_PREVIEW_SIDE = 1920


def encode_preview(frame: np.ndarray, quality: int = PREVIEW_QUALITY) -> bytes:
    """Encode an RGBA frame to JPEG bytes. Drops alpha (JPEG is RGB only)."""
    img = Image.fromarray(np.ascontiguousarray(frame[:, :, :3]))
    longest = max(img.size)
    if longest > MAX_PREVIEW_SIDE:
        scale = MAX_PREVIEW_SIDE / longest
        img = img.resize(
            (max(1, round(img.width * scale)), max(1, round(img.height * scale))),
            Image.Resampling.BILINEAR,
        )
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def encode_preview_b64(frame: np.ndarray, quality: int = PREVIEW_QUALITY) -> str:
    return base64.b64encode(encode_preview(frame, quality)).decode("ascii")
