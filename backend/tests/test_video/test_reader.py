"""Tests for the PyAV frame source."""

import pytest

from engine.errors import SeekError
from video.reader import VideoFrameSource

pytestmark = pytest.mark.slow


def _red(frame) -> float:
    return float(frame[:, :, 0].mean())


def test_metadata(synthetic_video_path):
    src = VideoFrameSource(synthetic_video_path)
    assert src.dimensions() == (160, 120)
    assert src.frame_rate == pytest.approx(30.0, abs=0.5)
    assert src.duration == pytest.approx(1.0, abs=0.1)
    src.close()


def test_frame_is_rgba(synthetic_video_path):
    src = VideoFrameSource(synthetic_video_path)
    frame = src.frame_at(0.0)
    assert frame.shape == (120, 160, 4)
    assert frame.dtype.name == "uint8"
    src.close()


def test_sequential_frames_advance(synthetic_video_path):
    src = VideoFrameSource(synthetic_video_path)
    reds = [_red(src.frame_at(i / 30)) for i in range(0, 30, 5)]
    # Red ramps up over time in the synthetic video
    assert reds == sorted(reds)
    assert reds[-1] - reds[0] > 100
    src.close()


def test_backward_request_seeks(synthetic_video_path):
    src = VideoFrameSource(synthetic_video_path)
    late = _red(src.frame_at(0.8))
    early = _red(src.frame_at(0.1))
    again = _red(src.frame_at(0.8))
    assert early < late
    assert again == pytest.approx(late, abs=2.0)
    src.close()


def test_repeated_timestamp_returns_same_frame(synthetic_video_path):
    src = VideoFrameSource(synthetic_video_path)
    a = src.frame_at(0.5)
    b = src.frame_at(0.5)
    assert (a == b).all()
    src.close()


@pytest.mark.parametrize("time_s", [-0.5, 10.0])
def test_out_of_range_timestamp(synthetic_video_path, time_s):
    src = VideoFrameSource(synthetic_video_path)
    with pytest.raises(SeekError):
        src.frame_at(time_s)
    src.close()


def test_missing_file(tmp_path):
    with pytest.raises(SeekError):
        VideoFrameSource(str(tmp_path / "nope.webm"))
