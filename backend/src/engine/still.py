"""Single-image path — load, blur the region once, encode to PNG."""

import logging

import numpy as np

from effects.region import Rectangle
from effects.region_blur import blur_region
from video.image_io import encode_png, load_image

logger = logging.getLogger(__name__)


def process_image(frame: np.ndarray, region: Rectangle) -> np.ndarray:
    """Blur ``region`` of one RGBA frame. Fails fast on an invalid region."""
    height, width = frame.shape[:2]
    try:
        region.validate(width, height)
    except ValueError:
        logger.error(
            "Invalid region %s for image %dx%d", region.to_dict(), width, height
        )
        raise
    return blur_region(frame, region)


def blur_image_file(source, region: Rectangle) -> bytes:
    """Load an image (path or bytes), blur ``region`` and return PNG bytes."""
    frame = load_image(source)
    return encode_png(process_image(frame, region))
