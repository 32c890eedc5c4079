import collections
import json
import logging
import math
import time
import uuid
from pathlib import Path

import sentry_sdk
import zmq

from effects.region import MIN_SELECTION_SIDE, Rectangle
from effects.region_blur import blur_radius, blur_region
from engine.errors import InvalidRegion, ProcessingError
from engine.export import ExportManager
from engine.preview import encode_preview_b64
from engine.still import blur_image_file
from media import format_file_size, media_kind, output_filename
from security import (
    validate_image_size,
    validate_output_path,
    validate_sample_count,
    validate_upload,
)
from video.image_io import load_image
from video.ingest import probe
from video.reader import VideoFrameSource

logger = logging.getLogger(__name__)


def _processing_error(msg_id: str | None, e: ProcessingError) -> dict:
    return {"id": msg_id, "ok": False, "error": str(e), "error_kind": e.kind}


def _parse_selection(message: dict) -> Rectangle:
    """Region from a message, rejecting selections too small to process."""
    if "region" not in message:
        raise InvalidRegion("Please select a region to blur first.")
    region = Rectangle.from_dict(message["region"])
    if not region.is_usable_selection():
        raise InvalidRegion(
            "The selected region is too small. Please select a larger area "
            f"(more than {MIN_SELECTION_SIDE}px on each side)."
        )
    return region


class ZMQServer:
    def __init__(self):
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(zmq.MAXMSGSIZE, 1_048_576)  # 1 MB limit
        self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        # Ping socket is polled first so a long blur_image never blocks it
        self.ping_socket = self.context.socket(zmq.REP)
        self.ping_socket.setsockopt(zmq.MAXMSGSIZE, 4096)
        self.ping_port = self.ping_socket.bind_to_random_port("tcp://127.0.0.1")
        # Per-process token required on every message
        self.token = str(uuid.uuid4())
        self.start_time = time.time()
        self.running = False
        # Preview sources only; each export opens its own
        self.sources: collections.OrderedDict[str, VideoFrameSource] = (
            collections.OrderedDict()
        )
        self._max_sources = 4
        self.last_frame_ms = 0.0
        self.export_manager = ExportManager()

    def reset_state(self):
        """Clear accumulated state without closing sockets/context.

        Used by session-scoped test fixtures between tests.
        """
        for source in self.sources.values():
            source.close()
        self.sources.clear()
        self.export_manager.cancel()
        self.export_manager = ExportManager()
        self.last_frame_ms = 0.0

    def _validate_token(self, message: dict) -> str | None:
        """Validate auth token. Returns error message or None if valid."""
        if message.get("_token") != self.token:
            return "invalid or missing auth token"
        return None

    def _make_ping_response(self, msg_id: str | None) -> dict:
        return {
            "id": msg_id,
            "status": "alive",
            "uptime_s": round(time.time() - self.start_time, 1),
            "last_frame_ms": self.last_frame_ms,
        }

    def handle_message(self, message: dict) -> dict:
        cmd = message.get("cmd")
        msg_id = message.get("id")

        token_err = self._validate_token(message)
        if token_err:
            return {"id": msg_id, "ok": False, "error": token_err}

        if cmd == "ping":
            return self._make_ping_response(msg_id)
        elif cmd == "shutdown":
            self.running = False
            return {"id": msg_id, "ok": True}
        elif cmd == "ingest":
            return self._handle_ingest(message, msg_id)
        elif cmd == "preview":
            return self._handle_preview(message, msg_id)
        elif cmd == "blur_image":
            return self._handle_blur_image(message, msg_id)
        elif cmd == "export_start":
            return self._handle_export_start(message, msg_id)
        elif cmd == "export_status":
            return self._handle_export_status(msg_id)
        elif cmd == "export_cancel":
            return self._handle_export_cancel(msg_id)
        else:
            return {"id": msg_id, "ok": False, "error": f"unknown: {cmd}"}

    def _handle_ingest(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}

        errors = validate_upload(path)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        result = probe(path)
        result["id"] = msg_id
        if not result.get("ok"):
            return result

        if result["kind"] == "video":
            errors = validate_sample_count(result["sample_count"])
        else:
            errors = validate_image_size(result["width"], result["height"])
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        name = Path(path).name
        result["output_name"] = output_filename(name, result["kind"])
        result["size"] = format_file_size(Path(path).stat().st_size)
        return result

    def _handle_preview(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}

        errors = validate_upload(path)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        try:
            region = _parse_selection(message) if "region" in message else None
            t0 = time.time()
            kind = media_kind(path)
            if kind == "image":
                frame = load_image(path)
            elif kind == "video":
                try:
                    time_s = float(message.get("time", 0.0))
                except (TypeError, ValueError):
                    time_s = math.nan
                if not math.isfinite(time_s):
                    return {"id": msg_id, "ok": False, "error": "invalid time"}
                frame = self._get_source(path).frame_at(time_s)
            else:
                return {"id": msg_id, "ok": False, "error": "Unsupported file type"}

            response = {
                "id": msg_id,
                "ok": True,
                "width": frame.shape[1],
                "height": frame.shape[0],
            }
            if region is not None:
                frame = blur_region(frame, region)
                response["radius"] = blur_radius(region.width, region.height)
            response["frame_data"] = encode_preview_b64(frame)
            self.last_frame_ms = round((time.time() - t0) * 1000, 2)
            return response
        except ProcessingError as e:
            return _processing_error(msg_id, e)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Preview handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_blur_image(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        output_path = message.get("output_path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}
        if not output_path:
            return {"id": msg_id, "ok": False, "error": "missing output_path"}

        errors = validate_upload(path)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}
        if media_kind(path) != "image":
            return {"id": msg_id, "ok": False, "error": "blur_image requires an image"}
        out_errors = validate_output_path(output_path, "image")
        if out_errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(out_errors)}

        try:
            region = _parse_selection(message)
            info = probe(path)
            if not info.get("ok"):
                return {"id": msg_id, "ok": False, "error": info["error"]}
            errors = validate_image_size(info["width"], info["height"])
            if errors:
                return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

            t0 = time.time()
            png = blur_image_file(path, region)
            Path(output_path).write_bytes(png)
            self.last_frame_ms = round((time.time() - t0) * 1000, 2)
            return {
                "id": msg_id,
                "ok": True,
                "output_path": output_path,
                "radius": blur_radius(region.width, region.height),
                "bytes": len(png),
            }
        except ProcessingError as e:
            return _processing_error(msg_id, e)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Blur image handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_export_start(self, message: dict, msg_id: str | None) -> dict:
        input_path = message.get("input_path")
        output_path = message.get("output_path")
        if not input_path:
            return {"id": msg_id, "ok": False, "error": "missing input_path"}
        if not output_path:
            return {"id": msg_id, "ok": False, "error": "missing output_path"}

        errors = validate_upload(input_path)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}
        if media_kind(input_path) != "video":
            return {"id": msg_id, "ok": False, "error": "export requires a video"}
        out_errors = validate_output_path(output_path, "video")
        if out_errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(out_errors)}

        try:
            region = _parse_selection(message)
            info = probe(input_path)
            if not info.get("ok"):
                return {"id": msg_id, "ok": False, "error": info["error"]}
            errors = validate_sample_count(info["sample_count"])
            if errors:
                return {"id": msg_id, "ok": False, "error": "; ".join(errors)}
            region.validate(info["width"], info["height"])

            self.export_manager.start(input_path, output_path, region)
            return {"id": msg_id, "ok": True}
        except ProcessingError as e:
            return _processing_error(msg_id, e)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Export start error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_export_status(self, msg_id: str | None) -> dict:
        status = self.export_manager.get_status()
        status["id"] = msg_id
        status["ok"] = True
        return status

    def _handle_export_cancel(self, msg_id: str | None) -> dict:
        cancelled = self.export_manager.cancel()
        return {"id": msg_id, "ok": True, "cancelled": cancelled}

    def _get_source(self, path: str) -> VideoFrameSource:
        if path in self.sources:
            self.sources.move_to_end(path)
            return self.sources[path]
        while len(self.sources) >= self._max_sources:
            _, oldest = self.sources.popitem(last=False)
            oldest.close()
        source = VideoFrameSource(path)
        self.sources[path] = source
        return source

    def run(self):
        self.running = True
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.ping_socket, zmq.POLLIN)
        while self.running:
            events = dict(poller.poll(timeout=500))

            # Ping first (lightweight, never blocked)
            if self.ping_socket in events:
                try:
                    message = json.loads(self.ping_socket.recv())
                    msg_id = message.get("id")
                    token_err = self._validate_token(message)
                    if token_err:
                        self.ping_socket.send_json(
                            {"id": msg_id, "ok": False, "error": token_err}
                        )
                    else:
                        self.ping_socket.send_json(self._make_ping_response(msg_id))
                except json.JSONDecodeError:
                    self.ping_socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                except zmq.ZMQError:
                    logger.error("ZMQ error on ping socket")
                    break

            if self.socket in events:
                try:
                    message = json.loads(self.socket.recv())
                except json.JSONDecodeError:
                    # MUST reply before next recv (REP protocol)
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue
                except zmq.ZMQError:
                    logger.error("ZMQ error on main socket")
                    break

                try:
                    response = self.handle_message(message)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled handler error: %s", type(e).__name__)
                    response = {"ok": False, "error": "Internal processing error"}

                self.socket.send_json(response)
        self.close()

    def close(self):
        for source in self.sources.values():
            source.close()
        self.ping_socket.close()
        self.socket.close()
        self.context.term()
