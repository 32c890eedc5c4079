"""Export job manager — background video blur with progress and cancel."""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

import sentry_sdk

from effects.region import Rectangle
from engine.errors import ProcessingError
from engine.frame_pipeline import FramePipeline, FrameSource, SequenceEncoder
from video.reader import VideoFrameSource
from video.writer import WebMSequenceEncoder

logger = logging.getLogger(__name__)


class ExportStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class ExportJob:
    """Tracks state of a background export."""

    status: ExportStatus = ExportStatus.IDLE
    progress: int = 0
    frames_done: int = 0
    total_frames: int = 0
    skipped_frames: list[int] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    output_path: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _cancel_event: threading.Event = field(default_factory=threading.Event)
    _thread: threading.Thread | None = field(default=None, repr=False)

    def cancel(self):
        """Mark the result for discarding. The run itself finishes its frames."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the worker thread exits. Returns False on timeout."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()


def _open_video_source(path: str) -> VideoFrameSource:
    return VideoFrameSource(path)


class ExportManager:
    """Manages background export jobs. One job at a time."""

    def __init__(
        self,
        open_source: Callable[[str], FrameSource] = _open_video_source,
        encoder_factory: Callable[[], SequenceEncoder] = WebMSequenceEncoder,
    ):
        self._job: ExportJob | None = None
        self._open_source = open_source
        self._encoder_factory = encoder_factory

    @property
    def job(self) -> ExportJob | None:
        return self._job

    def start(self, input_path: str, output_path: str, region: Rectangle) -> ExportJob:
        """Start a background export. Returns the job for status tracking.

        Raises:
            RuntimeError: If an export is already running.
        """
        if self._job is not None and self._job.status == ExportStatus.RUNNING:
            raise RuntimeError("Export already in progress")

        job = ExportJob(output_path=output_path)
        self._job = job

        thread = threading.Thread(
            target=self._run_export,
            args=(job, input_path, output_path, region),
            daemon=True,
        )
        job._thread = thread
        job.status = ExportStatus.RUNNING
        thread.start()

        return job

    def _run_export(
        self, job: ExportJob, input_path: str, output_path: str, region: Rectangle
    ):
        source = None

        def on_progress(percent: int):
            with job._lock:
                job.progress = percent
                job.frames_done += 1

        try:
            source = self._open_source(input_path)
            pipeline = FramePipeline(source, self._encoder_factory(), on_progress)
            _, total = pipeline.sampling_parameters()
            with job._lock:
                job.total_frames = total

            result = pipeline.run(region)

            if job.cancelled:
                logger.info("Export cancelled; discarding %d frames", result.frame_count)
                with job._lock:
                    job.status = ExportStatus.CANCELLED
                return

            Path(output_path).write_bytes(result.artifact)
            with job._lock:
                job.skipped_frames = result.skipped
                job.progress = 100
                job.status = ExportStatus.COMPLETE
            logger.info(
                "Export complete: %d frames, %d skipped",
                result.frame_count,
                len(result.skipped),
            )

        except ProcessingError as e:
            logger.warning("Export failed: %s", e)
            with job._lock:
                job.status = ExportStatus.ERROR
                job.error = str(e)
                job.error_kind = e.kind
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Export failed")
            with job._lock:
                job.status = ExportStatus.ERROR
                job.error = f"Export failed: {type(e).__name__}"
        finally:
            if source is not None and hasattr(source, "close"):
                source.close()

    def get_status(self) -> dict:
        """Return serializable status dict."""
        if self._job is None:
            return {
                "status": ExportStatus.IDLE.value,
                "progress": 0,
                "frames_done": 0,
                "total_frames": 0,
            }
        with self._job._lock:
            return {
                "status": self._job.status.value,
                "progress": self._job.progress,
                "frames_done": self._job.frames_done,
                "total_frames": self._job.total_frames,
                "skipped_frames": list(self._job.skipped_frames),
                "output_path": self._job.output_path,
                "error": self._job.error,
                "error_kind": self._job.error_kind,
            }

    def cancel(self) -> bool:
        """Cancel the running export. Returns True if a job was cancelled."""
        if self._job is None:
            return False
        with self._job._lock:
            if self._job.status == ExportStatus.RUNNING:
                self._job.cancel()
                return True
        return False
