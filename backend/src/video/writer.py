"""Sequence encoding via PyAV — ordered RGBA frames to an in-memory video."""

import io
import logging
from fractions import Fraction

import av
import numpy as np

from engine.errors import EncodingError

logger = logging.getLogger(__name__)

DEFAULT_CONTAINER = "webm"
DEFAULT_CODEC = "libvpx-vp9"
DEFAULT_BIT_RATE = 2_500_000


class WebMSequenceEncoder:
    """Encodes a whole frame sequence in one batch and returns the file bytes.

    Frames are written in the order given, one per 1/fps seconds.
    """

    def __init__(
        self,
        container_format: str = DEFAULT_CONTAINER,
        codec: str = DEFAULT_CODEC,
        bit_rate: int = DEFAULT_BIT_RATE,
    ):
        self.container_format = container_format
        self.codec = codec
        self.bit_rate = bit_rate

    def encode(self, frames: list[np.ndarray], fps: float) -> bytes:
        """Encode RGBA frames at ``fps``. Alpha is dropped.

        Raises:
            EncodingError: On empty input, mixed frame sizes, an FFmpeg
                failure, or an empty output file.
        """
        if not frames:
            raise EncodingError("No frames to assemble")
        height, width = frames[0].shape[:2]
        for i, frame in enumerate(frames):
            if frame.shape[:2] != (height, width):
                raise EncodingError(
                    f"Frame {i} is {frame.shape[1]}x{frame.shape[0]}, "
                    f"expected {width}x{height}"
                )

        rate = Fraction(fps).limit_denominator(1001)
        buf = io.BytesIO()
        try:
            with av.open(buf, mode="w", format=self.container_format) as container:
                stream = container.add_stream(self.codec, rate=rate)
                stream.width = width
                stream.height = height
                stream.pix_fmt = "yuv420p"
                stream.bit_rate = self.bit_rate
                for frame_rgba in frames:
                    frame = av.VideoFrame.from_ndarray(
                        np.ascontiguousarray(frame_rgba[:, :, :3]), format="rgb24"
                    )
                    for packet in stream.encode(frame):
                        container.mux(packet)
                for packet in stream.encode():
                    container.mux(packet)
        except (av.error.FFmpegError, ValueError) as e:
            # Unknown codecs and bad frame data surface as ValueError
            logger.error("Encoder %s failed: %s", self.codec, type(e).__name__)
            raise EncodingError(
                f"Video assembly failed: {type(e).__name__}"
            ) from e

        data = buf.getvalue()
        if not data:
            raise EncodingError("Encoder produced no data. Video assembly failed.")
        logger.debug(
            "Encoded %d frames %dx%d at %.2f fps into %d bytes",
            len(frames),
            width,
            height,
            fps,
            len(data),
        )
        return data
