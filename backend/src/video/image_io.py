"""Still-image decoding and PNG encoding via Pillow."""

import io

import numpy as np
from PIL import Image, UnidentifiedImageError

from engine.errors import EncodingError, InvalidSource


def load_image(source) -> np.ndarray:
    """Decode an image file (path or bytes) to an RGBA uint8 array."""
    try:
        if isinstance(source, (bytes, bytearray)):
            img = Image.open(io.BytesIO(source))
        else:
            img = Image.open(source)
        with img:
            rgba = img.convert("RGBA")
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidSource(f"Failed to load image: {type(e).__name__}") from e

    frame = np.array(rgba)
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise InvalidSource("Image has zero dimensions")
    return frame


def encode_png(frame: np.ndarray) -> bytes:
    """Encode an RGBA frame to PNG bytes, keeping alpha."""
    try:
        img = Image.fromarray(frame)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
    except (ValueError, TypeError, OSError) as e:
        raise EncodingError(f"Failed to encode PNG: {type(e).__name__}") from e
    data = buf.getvalue()
    if not data:
        raise EncodingError("PNG encoder produced no data")
    return data
