import shutil
import threading
import time
import uuid
from pathlib import Path

import numpy as np
import pytest
import zmq

from fakes import checkerboard
from zmq_server import ZMQServer

FIXTURE_DIR = Path.home() / ".cache" / "blurmark" / "test-fixtures"


def _wait_for_server(srv: ZMQServer, timeout: float = 2.0) -> bool:
    """Ping the server until it responds or timeout expires."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 500)
    sock.connect(f"tcp://127.0.0.1:{srv.ping_port}")
    deadline = time.monotonic() + timeout
    alive = False
    while time.monotonic() < deadline:
        try:
            sock.send_json({"cmd": "ping", "id": "health", "_token": srv.token})
            resp = sock.recv_json()
            if resp.get("status") == "alive":
                alive = True
                break
        except zmq.Again:
            # REQ socket is stuck after a timed-out send; rebuild it
            sock.close()
            sock = ctx.socket(zmq.REQ)
            sock.setsockopt(zmq.LINGER, 0)
            sock.setsockopt(zmq.RCVTIMEO, 500)
            sock.connect(f"tcp://127.0.0.1:{srv.ping_port}")
            time.sleep(0.05)
    sock.close()
    ctx.term()
    return alive


@pytest.fixture
def server():
    """Server instance for direct handle_message() calls (no poll loop)."""
    srv = ZMQServer()
    yield srv
    srv.reset_state()
    srv.close()


@pytest.fixture
def running_server():
    """Server with its poll loop running in a background thread."""
    srv = ZMQServer()
    thread = threading.Thread(target=srv.run, daemon=True)
    thread.start()
    if not _wait_for_server(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    thread.join(timeout=2.0)


@pytest.fixture
def zmq_client(running_server):
    """REQ socket connected to the running server's main port."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 10_000)
    sock.connect(f"tcp://127.0.0.1:{running_server.port}")
    yield sock
    sock.close()
    ctx.term()


@pytest.fixture
def home_tmp_path():
    """tmp_path equivalent under ~/ for tests that go through validate_upload."""
    base = Path.home() / ".cache" / "blurmark" / "test-tmp"
    base.mkdir(parents=True, exist_ok=True)
    d = base / f"test_{uuid.uuid4().hex[:8]}"
    d.mkdir()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture(scope="session")
def synthetic_video_path():
    """1s 160x120 WebM at 30 fps whose red channel ramps up over time."""
    from video.writer import WebMSequenceEncoder

    FIXTURE_DIR.mkdir(parents=True, exist_ok=True)
    path = FIXTURE_DIR / f"test_{uuid.uuid4().hex[:8]}.webm"
    frames = []
    for i in range(30):
        frame = np.zeros((120, 160, 4), dtype=np.uint8)
        frame[:, :, 0] = int(255 * i / 30)
        frame[:, :, 1] = 128
        frame[:, :, 2] = 64
        frame[:, :, 3] = 255
        frames.append(frame)
    path.write_bytes(WebMSequenceEncoder().encode(frames, 30))
    yield str(path)
    path.unlink(missing_ok=True)


@pytest.fixture(scope="session")
def synthetic_image_path():
    """200x150 checkerboard PNG under ~/."""
    from video.image_io import encode_png

    FIXTURE_DIR.mkdir(parents=True, exist_ok=True)
    path = FIXTURE_DIR / f"test_{uuid.uuid4().hex[:8]}.png"
    path.write_bytes(encode_png(checkerboard(200, 150)))
    yield str(path)
    path.unlink(missing_ok=True)
