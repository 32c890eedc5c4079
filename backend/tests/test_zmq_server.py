"""Tests for the ZMQ command surface — auth, ingest, preview, blur_image, export."""

import base64
import time
import uuid
from unittest.mock import patch

import pytest
import zmq

REGION = {"x": 20, "y": 10, "width": 100, "height": 80}


def _msg(server, cmd: str, **fields) -> dict:
    message = {"cmd": cmd, "id": str(uuid.uuid4()), "_token": server.token}
    message.update(fields)
    return message


class TestAuth:
    def test_missing_token_rejected(self, server):
        resp = server.handle_message({"cmd": "ping", "id": "a"})
        assert resp == {"id": "a", "ok": False, "error": "invalid or missing auth token"}

    def test_wrong_token_rejected(self, server):
        resp = server.handle_message({"cmd": "ping", "id": "a", "_token": "nope"})
        assert resp["ok"] is False

    def test_unknown_command(self, server):
        resp = server.handle_message(_msg(server, "foobar"))
        assert resp["ok"] is False
        assert resp["error"] == "unknown: foobar"

    def test_shutdown_stops_loop(self, server):
        server.running = True
        resp = server.handle_message(_msg(server, "shutdown"))
        assert resp["ok"] is True
        assert server.running is False


@pytest.mark.smoke
class TestIngest:
    def test_missing_path(self, server):
        resp = server.handle_message(_msg(server, "ingest"))
        assert resp["ok"] is False
        assert "missing path" in resp["error"]

    def test_image(self, server, synthetic_image_path):
        msg = _msg(server, "ingest", path=synthetic_image_path)
        resp = server.handle_message(msg)
        assert resp["ok"] is True
        assert resp["id"] == msg["id"]
        assert resp["kind"] == "image"
        assert (resp["width"], resp["height"]) == (200, 150)
        assert resp["output_name"].startswith("blurred_")
        assert resp["output_name"].endswith(".png")
        assert resp["size"].endswith(("bytes", "KB"))

    def test_outside_home_rejected(self, server):
        resp = server.handle_message(_msg(server, "ingest", path="/etc/hosts.png"))
        assert resp["ok"] is False
        assert "home directory" in resp["error"]


@pytest.mark.smoke
class TestBlurImage:
    def test_writes_png(self, server, synthetic_image_path, tmp_path):
        out = tmp_path / "blurred.png"
        resp = server.handle_message(
            _msg(
                server,
                "blur_image",
                path=synthetic_image_path,
                output_path=str(out),
                region=REGION,
            )
        )
        assert resp["ok"] is True
        assert resp["radius"] == 4
        assert resp["bytes"] == out.stat().st_size
        assert out.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"

    def test_missing_region(self, server, synthetic_image_path, tmp_path):
        resp = server.handle_message(
            _msg(
                server,
                "blur_image",
                path=synthetic_image_path,
                output_path=str(tmp_path / "out.png"),
            )
        )
        assert resp["ok"] is False
        assert resp["error_kind"] == "region"
        assert "select a region" in resp["error"]

    def test_region_too_small(self, server, synthetic_image_path, tmp_path):
        resp = server.handle_message(
            _msg(
                server,
                "blur_image",
                path=synthetic_image_path,
                output_path=str(tmp_path / "out.png"),
                region={"x": 0, "y": 0, "width": 10, "height": 50},
            )
        )
        assert resp["ok"] is False
        assert resp["error_kind"] == "region"
        assert "too small" in resp["error"]

    def test_region_outside_image(self, server, synthetic_image_path, tmp_path):
        out = tmp_path / "out.png"
        resp = server.handle_message(
            _msg(
                server,
                "blur_image",
                path=synthetic_image_path,
                output_path=str(out),
                region={"x": 150, "y": 100, "width": 100, "height": 100},
            )
        )
        assert resp["ok"] is False
        assert resp["error_kind"] == "region"
        assert "outside image boundaries" in resp["error"]
        assert not out.exists()

    def test_wrong_output_extension(self, server, synthetic_image_path, tmp_path):
        resp = server.handle_message(
            _msg(
                server,
                "blur_image",
                path=synthetic_image_path,
                output_path=str(tmp_path / "out.jpg"),
                region=REGION,
            )
        )
        assert resp["ok"] is False
        assert "not allowed" in resp["error"]


class TestPreview:
    @pytest.mark.smoke
    def test_image_without_region(self, server, synthetic_image_path):
        resp = server.handle_message(
            _msg(server, "preview", path=synthetic_image_path)
        )
        assert resp["ok"] is True
        assert "radius" not in resp
        assert base64.b64decode(resp["frame_data"])[:2] == b"\xff\xd8"

    @pytest.mark.slow
    def test_video_with_region(self, server, synthetic_video_path):
        resp = server.handle_message(
            _msg(
                server,
                "preview",
                path=synthetic_video_path,
                time=0.5,
                region=REGION,
            )
        )
        assert resp["ok"] is True
        assert (resp["width"], resp["height"]) == (160, 120)
        assert resp["radius"] == 4
        assert server.last_frame_ms >= 0.0

    @pytest.mark.slow
    def test_video_time_out_of_range(self, server, synthetic_video_path):
        resp = server.handle_message(
            _msg(server, "preview", path=synthetic_video_path, time=99.0)
        )
        assert resp["ok"] is False
        assert resp["error_kind"] == "source"

    @pytest.mark.slow
    @pytest.mark.parametrize("bad_time", ["soon", None, [1], float("nan"), float("inf")])
    def test_video_invalid_time(self, server, synthetic_video_path, bad_time):
        with patch("zmq_server.sentry_sdk.capture_exception") as capture:
            resp = server.handle_message(
                _msg(server, "preview", path=synthetic_video_path, time=bad_time)
            )
        assert resp == {"id": resp["id"], "ok": False, "error": "invalid time"}
        capture.assert_not_called()
        assert server.sources == {}


@pytest.mark.slow
class TestExport:
    def test_export_completes(self, server, synthetic_video_path, tmp_path):
        out = tmp_path / "out.webm"
        resp = server.handle_message(
            _msg(
                server,
                "export_start",
                input_path=synthetic_video_path,
                output_path=str(out),
                region=REGION,
            )
        )
        assert resp["ok"] is True

        deadline = time.monotonic() + 60
        status = {}
        while time.monotonic() < deadline:
            status = server.handle_message(_msg(server, "export_status"))
            if status["status"] != "running":
                break
            time.sleep(0.1)

        assert status["status"] == "complete"
        assert status["progress"] == 100
        assert status["skipped_frames"] == []
        assert out.exists()

    def test_export_rejects_image(self, server, synthetic_image_path, tmp_path):
        resp = server.handle_message(
            _msg(
                server,
                "export_start",
                input_path=synthetic_image_path,
                output_path=str(tmp_path / "out.webm"),
                region=REGION,
            )
        )
        assert resp["ok"] is False
        assert "requires a video" in resp["error"]

    def test_export_region_outside_video(self, server, synthetic_video_path, tmp_path):
        resp = server.handle_message(
            _msg(
                server,
                "export_start",
                input_path=synthetic_video_path,
                output_path=str(tmp_path / "out.webm"),
                region={"x": 100, "y": 100, "width": 100, "height": 100},
            )
        )
        assert resp["ok"] is False
        assert resp["error_kind"] == "region"

    def test_cancel_without_job(self, server):
        resp = server.handle_message(_msg(server, "export_cancel"))
        assert resp == {"id": resp["id"], "ok": True, "cancelled": False}


def test_ping_over_socket(running_server):
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 5000)
    sock.connect(f"tcp://127.0.0.1:{running_server.ping_port}")
    sock.send_json({"cmd": "ping", "id": "p1", "_token": running_server.token})
    resp = sock.recv_json()
    assert resp["id"] == "p1"
    assert resp["status"] == "alive"
    assert isinstance(resp["uptime_s"], float)
    sock.close()
    ctx.term()


def test_malformed_json_gets_reply(zmq_client):
    zmq_client.send(b"{not json")
    resp = zmq_client.recv_json()
    assert resp == {"ok": False, "error": "Invalid message format"}


def test_command_over_socket(zmq_client, running_server):
    zmq_client.send_json(_msg(running_server, "export_status"))
    resp = zmq_client.recv_json()
    assert resp["ok"] is True
    assert resp["status"] == "idle"
