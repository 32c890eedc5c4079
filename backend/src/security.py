"""Path and size gates for files the UI asks blurmark to read or write.

Every gate returns a list of human-readable problems; an empty list means the
request may proceed. ``strip_pii`` scrubs Sentry events and crash dumps.
"""

import os
import re
from pathlib import Path

INPUT_EXTENSIONS = {
    "image": {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif"},
    "video": {".mp4", ".mov", ".avi", ".mkv", ".webm"},
}
OUTPUT_EXTENSIONS = {"image": {".png"}, "video": {".webm"}}
ALLOWED_EXTENSIONS = INPUT_EXTENSIONS["image"] | INPUT_EXTENSIONS["video"]

MAX_UPLOAD_SIZE = 500 * 1024 * 1024
# One hour of video at the 30 samples/s pipeline cap
MAX_SAMPLE_COUNT = 108_000
MAX_IMAGE_PIXELS = 100_000_000

BLOCKED_OUTPUT_PREFIXES = (
    "/System",
    "/Library",
    "/usr",
    "/bin",
    "/sbin",
    "/etc",
    "/private/var",
    "/private/etc",
)


def _name_problem(name: str) -> str | None:
    if any(part in name for part in ("..", "/", "\\", "\x00")):
        return f"Unsafe filename: {name}"
    return None


def _extension_problem(path: Path, allowed: set[str], what: str) -> str | None:
    ext = path.suffix.lower()
    if ext in allowed:
        return None
    return f"Extension '{ext}' not allowed for {what}. Allowed: {sorted(allowed)}"


def validate_upload(path: str) -> list[str]:
    """Check a source image or video picked by the user.

    It must resolve inside the home directory, be a regular file rather than
    a symlink, carry a supported image or video extension and be at most
    ``MAX_UPLOAD_SIZE`` bytes.
    """
    p = Path(path)
    if not p.resolve().is_relative_to(Path.home().resolve()):
        return ["Path must be within user home directory"]
    if p.is_symlink():
        return ["Symlinks are not allowed"]
    if not p.is_file():
        return [f"File not found: {path}"]

    problems = [
        _extension_problem(p, ALLOWED_EXTENSIONS, "input"),
        _name_problem(p.name),
    ]
    size = p.stat().st_size
    if size > MAX_UPLOAD_SIZE:
        problems.append(
            f"File too large: {size / (1024 * 1024):.1f} MB "
            f"(max {MAX_UPLOAD_SIZE // (1024 * 1024)} MB)"
        )
    return [msg for msg in problems if msg]


def validate_sample_count(count: int) -> list[str]:
    if count > MAX_SAMPLE_COUNT:
        return [f"Video needs {count} samples, more than the {MAX_SAMPLE_COUNT} allowed"]
    return []


def validate_image_size(width: int, height: int) -> list[str]:
    if width * height > MAX_IMAGE_PIXELS:
        return [
            f"Image {width}x{height} exceeds maximum {MAX_IMAGE_PIXELS} pixels"
        ]
    return []


def validate_output_path(path: str, kind: str) -> list[str]:
    """Check where a blurred ``kind`` ("image" or "video") result will be written.

    Images are always written as PNG and videos as WebM, so the extension must
    match ``kind``. The parent directory must already exist and be writable.
    """
    p = Path(path)
    if not p.is_absolute():
        return ["Output path must be absolute"]

    resolved = str(p.resolve())
    blocked = next((b for b in BLOCKED_OUTPUT_PREFIXES if resolved.startswith(b)), None)
    if blocked:
        return [f"Cannot write to system directory: {blocked}"]

    problems = [
        _extension_problem(p, OUTPUT_EXTENSIONS.get(kind, set()), f"{kind} output"),
        _name_problem(p.name),
    ]
    if not p.parent.is_dir():
        problems.append(f"Output directory does not exist: {p.parent}")
    elif not os.access(p.parent, os.W_OK):
        problems.append(f"Output directory is not writable: {p.parent}")
    return [msg for msg in problems if msg]


# --- PII stripping for Sentry and crash dumps ---

_HOME = os.path.expanduser("~")
_USER_DIR = re.compile(r"/Users/[^/\s\"']+|/home/[^/\s\"']+|C:\\\\?Users\\\\?[^\\\s\"']+")
_SENSITIVE_KEYS = ("token", "auth", "key", "secret", "password", "dsn")


def _scrub(value):
    if isinstance(value, str):
        if _HOME not in ("", "/"):
            value = value.replace(_HOME, "<HOME>")
        return _USER_DIR.sub("<REDACTED_PATH>", value)
    if isinstance(value, dict):
        return {
            k: "<REDACTED>"
            if isinstance(k, str) and any(s in k.lower() for s in _SENSITIVE_KEYS)
            else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    return value


def strip_pii(event: dict, hint: dict) -> dict:
    """Sentry ``before_send`` hook, also applied to crash dumps.

    Replaces home-directory paths in every string and redacts values whose key
    looks like a credential, at any depth.
    """
    return _scrub(event)
