"""Typed failures for the blur and frame pipeline paths.

Each error carries a ``kind`` so callers can tell "your region is invalid"
(``region``) from "the file/stream could not be processed" (``source``) from
"processing finished but produced nothing usable" (``output``).
"""


class ProcessingError(Exception):
    kind = "processing"


class InvalidRegion(ProcessingError, ValueError):
    """Rectangle fails the geometric invariant against the image dimensions."""

    kind = "region"


class InvalidSource(ProcessingError, ValueError):
    """Missing/invalid dimensions, or a non-finite or empty sample count."""

    kind = "source"


class FrameSourceError(ProcessingError):
    """Per-frame failure reported by a frame source. Non-fatal to a run."""

    kind = "source"


class SeekError(FrameSourceError):
    pass


class DimensionsUnavailable(FrameSourceError):
    pass


class NoFramesProcessed(ProcessingError, RuntimeError):
    """Every sampled frame failed extraction."""

    kind = "output"


class EncodingError(ProcessingError, RuntimeError):
    """Encoder produced no output or failed internally."""

    kind = "output"
