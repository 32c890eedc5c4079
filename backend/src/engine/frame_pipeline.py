"""Frame pipeline — sample a video at a fixed rate, blur each frame, encode.

Runs strictly sequentially: one frame extraction in flight at a time, frames
requested and appended in increasing timestamp order. A frame the source
fails to deliver is logged and skipped; the run only fails when nothing at
all could be processed.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import numpy as np
import sentry_sdk

from effects.region import Rectangle
from effects.region_blur import blur_radius, blur_region
from engine.errors import (
    DimensionsUnavailable,
    FrameSourceError,
    InvalidSource,
    NoFramesProcessed,
)

logger = logging.getLogger(__name__)

MAX_SAMPLE_RATE = 30
METADATA_TIMEOUT_S = 5.0
METADATA_POLL_S = 0.05

ProgressSink = Callable[[int], None]


class FrameSource(Protocol):
    duration: float
    frame_rate: float | None

    def dimensions(self) -> tuple[int, int]: ...

    def frame_at(self, time_s: float) -> np.ndarray: ...


class SequenceEncoder(Protocol):
    def encode(self, frames: list[np.ndarray], fps: float) -> bytes: ...


@dataclass
class SampledFrame:
    """A blurred frame with the sample index and timestamp it was taken at."""

    index: int
    timestamp: float
    frame: np.ndarray


@dataclass
class ProcessedSequence:
    """Blurred frames of one run, all width x height, in sample order."""

    frames: list[SampledFrame]
    frame_rate: float
    width: int
    height: int
    requested: int
    skipped: list[int] = field(default_factory=list)


@dataclass
class PipelineResult:
    artifact: bytes
    frame_count: int
    frame_rate: float
    skipped: list[int] = field(default_factory=list)


class FramePipeline:
    """One processing run over a frame source with a fixed region."""

    def __init__(
        self,
        source: FrameSource,
        encoder: SequenceEncoder,
        progress: ProgressSink | None = None,
        *,
        max_sample_rate: float = MAX_SAMPLE_RATE,
        metadata_timeout_s: float = METADATA_TIMEOUT_S,
    ):
        self.source = source
        self.encoder = encoder
        self.progress = progress
        self.max_sample_rate = max_sample_rate
        self.metadata_timeout_s = metadata_timeout_s

    def sampling_parameters(self) -> tuple[float, int]:
        """Return (frame_rate, sample_count).

        Raises:
            InvalidSource: If the duration or rate is non-finite or the
                sample count is not positive.
        """
        reported = self.source.frame_rate
        frame_rate = min(self.max_sample_rate, reported or self.max_sample_rate)
        duration = self.source.duration
        if duration is None or not math.isfinite(duration) or not math.isfinite(
            frame_rate
        ):
            raise InvalidSource("Invalid video duration or frame rate, cannot process.")
        count = math.floor(duration * frame_rate)
        if count <= 0:
            raise InvalidSource("Invalid video duration or frame rate, cannot process.")
        return frame_rate, count

    def resolve_dimensions(self) -> tuple[int, int]:
        """Wait (bounded) for the source to report its dimensions."""
        deadline = time.monotonic() + self.metadata_timeout_s
        while True:
            try:
                width, height = self.source.dimensions()
                if width > 0 and height > 0:
                    return width, height
            except DimensionsUnavailable:
                pass
            if time.monotonic() >= deadline:
                raise InvalidSource(
                    "Could not determine video dimensions for processing."
                )
            time.sleep(METADATA_POLL_S)

    def _report(self, percent: int):
        if self.progress is not None:
            self.progress(percent)

    def collect(self, region: Rectangle) -> ProcessedSequence:
        """Sample, blur and accumulate every frame of the source.

        Raises:
            InvalidSource: Bad duration/rate or dimensions never available.
            InvalidRegion: Region does not fit the source dimensions.
            NoFramesProcessed: Every sample failed extraction.
        """
        frame_rate, count = self.sampling_parameters()
        width, height = self.resolve_dimensions()
        region.validate(width, height)

        logger.info(
            "Processing %d samples at %.2f fps (%dx%d, radius %d)",
            count,
            frame_rate,
            width,
            height,
            blur_radius(region.width, region.height),
        )

        sequence = ProcessedSequence(
            frames=[], frame_rate=frame_rate, width=width, height=height, requested=count
        )
        for i in range(count):
            time_s = i / frame_rate
            try:
                frame = self.source.frame_at(time_s)
            except FrameSourceError as e:
                logger.warning(
                    "Error processing frame %d at %.2fs: %s", i, time_s, e
                )
                sentry_sdk.add_breadcrumb(
                    category="frame",
                    message=f"Skipped frame {i}",
                    data={"time_s": round(time_s, 3), "error": type(e).__name__},
                    level="warning",
                )
                sequence.skipped.append(i)
                continue

            if frame.shape[:2] != (height, width):
                logger.warning(
                    "Frame %d is %dx%d, expected %dx%d; skipping",
                    i,
                    frame.shape[1],
                    frame.shape[0],
                    width,
                    height,
                )
                sequence.skipped.append(i)
                continue

            sequence.frames.append(
                SampledFrame(index=i, timestamp=time_s, frame=blur_region(frame, region))
            )
            self._report(math.floor((i + 1) / count * 100))

        if not sequence.frames:
            raise NoFramesProcessed("No frames were processed. Video processing failed.")
        if sequence.skipped:
            logger.warning(
                "Skipped %d of %d frames", len(sequence.skipped), count
            )
        return sequence

    def run(self, region: Rectangle) -> PipelineResult:
        """Collect the blurred sequence and hand it to the encoder.

        Raises:
            EncodingError: The encoder failed or produced nothing.
        """
        sequence = self.collect(region)
        artifact = self.encoder.encode(
            [s.frame for s in sequence.frames], sequence.frame_rate
        )
        return PipelineResult(
            artifact=artifact,
            frame_count=len(sequence.frames),
            frame_rate=sequence.frame_rate,
            skipped=list(sequence.skipped),
        )
