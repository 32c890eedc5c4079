"""blurmark sidecar entry point.

Prints the ports and auth token the UI needs on stdout, then serves until a
``shutdown`` command arrives.
"""

import os

import sentry_sdk

from _version import __version__
from diagnostics import app_dir, init_diagnostics
from security import strip_pii
from zmq_server import ZMQServer

CONSENT_FILE = "telemetry_consent"


def telemetry_dsn() -> str:
    """Sentry DSN, or "" (reporting disabled) unless the user opted in."""
    consent = app_dir() / CONSENT_FILE
    if not consent.is_file() or consent.read_text().strip() != "yes":
        return ""
    return os.environ.get("SENTRY_DSN", "")


def init_telemetry():
    sentry_sdk.init(
        dsn=telemetry_dsn(),
        release=f"blurmark@{__version__}",
        environment=os.environ.get("SENTRY_ENV", "development"),
        traces_sample_rate=0.1,
        before_send=strip_pii,
        max_breadcrumbs=50,
    )


def main():
    init_telemetry()
    init_diagnostics()
    server = ZMQServer()
    print(f"ZMQ_PORT={server.port}", flush=True)
    print(f"ZMQ_PING_PORT={server.ping_port}", flush=True)
    print(f"ZMQ_TOKEN={server.token}", flush=True)
    server.run()


if __name__ == "__main__":
    main()
