"""Region blur — local box mean over a rectangle, radius derived from its size.

Each pixel inside the region becomes the unweighted mean of its R, G, B
neighbours within ``radius``, sampled from the whole image (not only the
region) and clamped to image bounds. The divisor is the number of in-bounds
samples. Alpha is copied from the source pixel. Pixels outside the region are
copied verbatim. The source buffer is never written to.
"""

import math

import numpy as np

from effects.region import Rectangle
from engine.errors import InvalidSource

MIN_RADIUS = 2
MAX_RADIUS = 10
RADIUS_FRACTION = 0.05


def blur_radius(region_width: int, region_height: int) -> int:
    """Kernel half-width for a region: 5% of its short side, clamped to [2, 10]."""
    w = max(1, region_width)
    h = max(1, region_height)
    radius = math.floor(min(w, h) * RADIUS_FRACTION)
    return max(MIN_RADIUS, min(MAX_RADIUS, radius))


def blur_region(frame: np.ndarray, region: Rectangle) -> np.ndarray:
    """Blur ``region`` of an RGBA (H, W, 4) uint8 frame into a new array.

    Raises:
        InvalidRegion: If the region does not lie inside the frame.
        InvalidSource: If the frame is not an RGBA uint8 array.
    """
    if frame.ndim != 3 or frame.shape[2] != 4 or frame.dtype != np.uint8:
        raise InvalidSource(
            f"Expected RGBA uint8 frame, got shape {frame.shape} dtype {frame.dtype}"
        )
    height, width = frame.shape[:2]
    region.validate(width, height)

    radius = blur_radius(region.width, region.height)
    output = frame.copy()

    # Summed-area table over the window the kernel can reach
    oy = max(0, region.y - radius)
    ox = max(0, region.x - radius)
    ey = min(height, region.y + region.height + radius)
    ex = min(width, region.x + region.width + radius)
    window = frame[oy:ey, ox:ex, :3].astype(np.int64)
    sat = np.zeros((ey - oy + 1, ex - ox + 1, 3), dtype=np.int64)
    sat[1:, 1:] = window.cumsum(axis=0).cumsum(axis=1)

    ys = np.arange(region.y, region.y + region.height)
    xs = np.arange(region.x, region.x + region.width)
    # Half-open sample bounds per row/column, relative to the window
    y0 = (np.maximum(ys - radius, 0) - oy)[:, np.newaxis]
    y1 = (np.minimum(ys + radius + 1, height) - oy)[:, np.newaxis]
    x0 = (np.maximum(xs - radius, 0) - ox)[np.newaxis, :]
    x1 = (np.minimum(xs + radius + 1, width) - ox)[np.newaxis, :]

    sums = sat[y1, x1] - sat[y0, x1] - sat[y1, x0] + sat[y0, x0]
    counts = (y1 - y0) * (x1 - x0)
    has_samples = (counts > 0)[:, :, np.newaxis]

    means = np.zeros(sums.shape, dtype=np.float64)
    np.divide(sums, counts[:, :, np.newaxis], out=means, where=has_samples)
    # np.rint rounds half to even, matching 8-bit clamped pixel stores
    blurred = np.clip(np.rint(means), 0, 255).astype(np.uint8)

    rows = slice(region.y, region.y + region.height)
    cols = slice(region.x, region.x + region.width)
    output[rows, cols, :3] = np.where(has_samples, blurred, frame[rows, cols, :3])
    return output


def blur(source, width: int, height: int, region: Rectangle) -> np.ndarray:
    """Blur ``region`` of a pixel buffer given its dimensions.

    ``source`` may be a flat RGBA sequence of ``width * height * 4`` samples
    (bytes, bytearray, a list of ints in 0..255 or a 1-D uint8 array) or an
    (H, W, 4) uint8 array. The result is a freshly allocated uint8 array with
    the same shape as the input.
    """
    region.validate(width, height)

    if isinstance(source, (bytes, bytearray, memoryview)):
        pixels = np.frombuffer(source, dtype=np.uint8)
    else:
        pixels = np.asarray(source)
        if not isinstance(source, np.ndarray) and pixels.dtype != np.uint8:
            if pixels.size and (
                pixels.dtype.kind not in "iu" or pixels.min() < 0 or pixels.max() > 255
            ):
                raise InvalidSource("Pixel samples must be integers in 0..255")
            pixels = pixels.astype(np.uint8)

    if pixels.dtype != np.uint8:
        raise InvalidSource(f"Pixel buffer must be uint8, got {pixels.dtype}")
    if pixels.size != width * height * 4:
        raise InvalidSource(
            f"Pixel buffer holds {pixels.size} samples, "
            f"expected {width * height * 4} for {width}x{height} RGBA"
        )

    frame = pixels.reshape(height, width, 4)
    return blur_region(frame, region).reshape(pixels.shape)
