"""Time-indexed video decoding via PyAV."""

import logging

import av
import numpy as np

from engine.errors import DimensionsUnavailable, SeekError

logger = logging.getLogger(__name__)

# Frames whose presentation time is within this of the target count as "at" it
_PTS_EPSILON_S = 1e-6


class VideoFrameSource:
    """Frame source over one video file.

    Owns a single decoder; callers must not request frames from two threads
    at once. Returns RGBA uint8 frames for the frame being shown at a given
    timestamp (the last frame whose presentation time is <= the target).
    """

    def __init__(self, path: str):
        try:
            self.container = av.open(path)
        except av.error.FFmpegError as e:
            raise SeekError(f"Failed to open video: {type(e).__name__}") from e
        if not self.container.streams.video:
            self.container.close()
            raise SeekError("No video stream found")
        self.stream = self.container.streams.video[0]
        self.stream.thread_type = "AUTO"
        self.frame_rate = (
            float(self.stream.average_rate) if self.stream.average_rate else None
        )
        self.duration = self._read_duration()
        self._decoder = self.container.decode(video=0)
        self._current: av.VideoFrame | None = None
        self._lookahead: av.VideoFrame | None = None

    def _read_duration(self) -> float:
        if self.stream.duration is not None and self.stream.time_base is not None:
            return float(self.stream.duration * self.stream.time_base)
        if self.container.duration is not None:
            return float(self.container.duration / av.time_base)
        return 0.0

    def dimensions(self) -> tuple[int, int]:
        width = self.stream.codec_context.width or self.stream.width
        height = self.stream.codec_context.height or self.stream.height
        if not width or not height:
            raise DimensionsUnavailable("Video dimensions are zero")
        return width, height

    def _frame_time(self, frame: av.VideoFrame) -> float:
        if frame.time is not None:
            return frame.time
        if frame.pts is not None:
            return float(frame.pts * self.stream.time_base)
        return 0.0

    def _peek(self) -> av.VideoFrame | None:
        if self._lookahead is None:
            try:
                self._lookahead = next(self._decoder)
            except StopIteration:
                return None
        return self._lookahead

    def _seek(self, time_s: float):
        offset = int(time_s / self.stream.time_base)
        self.container.seek(offset, stream=self.stream)
        self._decoder = self.container.decode(video=0)
        self._current = None
        self._lookahead = None

    def frame_at(self, time_s: float) -> np.ndarray:
        """Decode the frame on screen at ``time_s``. Returns RGBA uint8 array.

        Sequential requests advance the open decoder; requests behind the last
        decoded frame seek to the preceding keyframe first.

        Raises:
            SeekError: If ``time_s`` is outside the stream or decoding fails.
        """
        if time_s < 0 or (self.duration and time_s > self.duration):
            raise SeekError(f"Timestamp {time_s:.3f}s outside 0..{self.duration:.3f}s")

        try:
            if self._current is not None and (
                self._frame_time(self._current) > time_s + _PTS_EPSILON_S
            ):
                self._seek(time_s)

            while True:
                nxt = self._peek()
                if nxt is None:
                    break
                if (
                    self._current is not None
                    and self._frame_time(nxt) > time_s + _PTS_EPSILON_S
                ):
                    break
                self._current = nxt
                self._lookahead = None
        except av.error.FFmpegError as e:
            raise SeekError(
                f"Error seeking video to {time_s:.3f}s: {type(e).__name__}"
            ) from e

        if self._current is None:
            raise SeekError(f"No frame found at {time_s:.3f}s")
        return self._current.to_ndarray(format="rgba")

    def close(self):
        self.container.close()
