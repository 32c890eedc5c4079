"""Diagnostics — JSON log files, faulthandler output and crash dumps.

Everything lives under ``~/.blurmark``:

    logs/sidecar.log*        rotating JSON lines, pruned after MAX_LOG_AGE_DAYS
    logs/sidecar_fault.log   faulthandler output for crashes inside FFmpeg/numpy
    crash_reports/*.json     PII-stripped dumps of unhandled exceptions
"""

import datetime
import faulthandler
import json
import logging
import logging.handlers
import os
import sys
import time
import traceback
from pathlib import Path

from security import strip_pii

logger = logging.getLogger(__name__)

APP_DIR = "~/.blurmark"
LOG_FILE = "sidecar.log"
FAULT_FILE = "sidecar_fault.log"

MAX_CRASH_REPORTS = 5
MAX_LOG_AGE_DAYS = 7
MAX_LOG_BYTES = 10_000_000
LOG_BACKUPS = 7


def app_dir() -> Path:
    return Path(APP_DIR).expanduser()


def _validate_log_dir(requested: str) -> str:
    """Use ``requested`` only if it stays inside the app directory."""
    default = str(app_dir() / "logs")
    if not requested:
        return default
    resolved = Path(requested).resolve()
    if not resolved.is_relative_to(app_dir().resolve()):
        logger.warning("APP_LOG_DIR outside %s, using default", APP_DIR)
        return default
    return str(resolved)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, including the emitting thread name."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.datetime.fromtimestamp(
                record.created, tz=datetime.timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry)


def _prune(
    directory: str,
    pattern: str,
    keep: int | None = None,
    max_age_days: int | None = None,
):
    """Delete ``pattern`` files beyond the newest ``keep`` or older than ``max_age_days``."""
    try:
        files = sorted(
            Path(directory).glob(pattern), key=lambda f: f.stat().st_mtime, reverse=True
        )
        doomed = files[keep:] if keep is not None else []
        if max_age_days is not None:
            cutoff = time.time() - max_age_days * 86400
            doomed += [f for f in files if f.stat().st_mtime < cutoff and f not in doomed]
        for f in doomed:
            f.unlink(missing_ok=True)
    except OSError:
        logger.debug("Pruning %s in %s skipped", pattern, directory)


def _cleanup_old_crash_reports(crash_dir: str):
    _prune(crash_dir, "crash_*.json", keep=MAX_CRASH_REPORTS)


def setup_structured_logging(log_dir: str | None = None) -> str:
    """Attach a rotating JSON handler to the root logger. Returns the log directory.

    ``log_dir`` (or ``APP_LOG_DIR``) must stay inside the app directory; the
    level comes from ``APP_LOG_LEVEL``.
    """
    resolved_dir = _validate_log_dir(log_dir or os.environ.get("APP_LOG_DIR", ""))
    os.makedirs(resolved_dir, mode=0o700, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        os.path.join(resolved_dir, LOG_FILE),
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
    )
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    level = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.addHandler(handler)

    _prune(resolved_dir, f"{LOG_FILE}*", max_age_days=MAX_LOG_AGE_DAYS)
    return resolved_dir


def setup_faulthandler(log_dir: str):
    # Own file, never rotated: faulthandler holds this fd for the process lifetime
    fault_path = os.path.join(log_dir, FAULT_FILE)
    try:
        fault_file = open(fault_path, "a", buffering=1)  # noqa: SIM115
        os.chmod(fault_path, 0o600)
        faulthandler.enable(file=fault_file, all_threads=True)
    except OSError as e:
        print(f"WARNING: Could not enable faulthandler: {e}", file=sys.stderr)


def write_crash_report(exc_type, exc_value, exc_tb, crash_dir: str) -> str:
    """Write a PII-stripped JSON crash report readable only by the user. Returns its path."""
    os.makedirs(crash_dir, mode=0o700, exist_ok=True)
    stamp = datetime.datetime.now(tz=datetime.timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    crash_path = os.path.join(crash_dir, f"crash_{stamp}.json")

    report = strip_pii(
        {
            "timestamp": stamp,
            "exception_type": exc_type.__name__ if exc_type else "Unknown",
            "exception_message": str(exc_value),
            "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            "python_version": sys.version,
            "platform": sys.platform,
        },
        {},
    )

    fd = os.open(crash_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(report, f, indent=2)

    _cleanup_old_crash_reports(crash_dir)
    return crash_path


def setup_excepthook(crash_dir: str | None = None):
    """Route unhandled exceptions through ``write_crash_report`` before the default hook."""
    target_dir = crash_dir or str(app_dir() / "crash_reports")

    def _crash_excepthook(exc_type, exc_value, exc_tb):
        try:
            write_crash_report(exc_type, exc_value, exc_tb, target_dir)
        except Exception as e:
            # Never recurse from inside the hook
            print(f"WARNING: Could not write crash report: {e}", file=sys.stderr)
        sys.__excepthook__(exc_type, exc_value, exc_tb)

    sys.excepthook = _crash_excepthook


def init_diagnostics() -> str:
    """Set up logging, faulthandler and the crash hook. Returns the log directory."""
    log_dir = setup_structured_logging()
    setup_faulthandler(log_dir)
    setup_excepthook()
    logger.info("Diagnostics initialized: logging=%s, faulthandler=enabled", log_dir)
    return log_dir
