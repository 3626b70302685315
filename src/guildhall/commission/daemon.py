"""Run the commission daemon on a Unix domain socket."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import uvicorn

from guildhall.commission.errors import CommissionError
from guildhall.commission.events import CommissionEvent, EventBus, event_to_payload
from guildhall.commission.routes import create_app
from guildhall.commission.session import CommissionSession
from guildhall.commission.spawn import pid_alive
from guildhall.config import Settings

logger = logging.getLogger(__name__)

PID_SUFFIX = ".pid"
SHUTDOWN_GRACE_SECONDS = 5


class DaemonAlreadyRunningError(CommissionError):
    """Raised when the pid file points at a live daemon process."""


def pid_file_path(socket_path: Path) -> Path:
    return socket_path.with_name(socket_path.name + PID_SUFFIX)


def clean_stale_socket(socket_path: Path) -> None:
    """Remove socket and pid files left behind by a daemon that is gone.

    Raises DaemonAlreadyRunningError when the recorded pid is still alive.
    """

    pid_path = pid_file_path(socket_path)
    if pid_path.exists():
        raw = pid_path.read_text("utf-8").strip()
        try:
            pid = int(raw)
        except ValueError:
            pid = None
        if pid is not None and pid_alive(pid):
            raise DaemonAlreadyRunningError(
                f"Another daemon is already running (PID {pid}). Socket: {socket_path}",
            )
        pid_path.unlink(missing_ok=True)
        socket_path.unlink(missing_ok=True)
        return
    socket_path.unlink(missing_ok=True)


def write_pid_file(socket_path: Path) -> None:
    pid_path = pid_file_path(socket_path)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(os.getpid()), "utf-8")


def remove_daemon_files(socket_path: Path) -> None:
    pid_file_path(socket_path).unlink(missing_ok=True)
    socket_path.unlink(missing_ok=True)


def _log_event(event: CommissionEvent) -> None:
    logger.info("event %s", event_to_payload(event))


def run_daemon(settings: Settings) -> None:
    """Serve the daemon in the foreground until interrupted."""

    settings.validate()
    socket_path = settings.socket_path
    clean_stale_socket(socket_path)

    event_bus = EventBus()
    event_bus.subscribe(_log_event)
    session = CommissionSession.from_settings(settings, event_bus=event_bus)
    app = create_app(session)

    socket_path.parent.mkdir(parents=True, exist_ok=True)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            uds=str(socket_path),
            log_level=settings.log_level.lower(),
            lifespan="on",
            timeout_graceful_shutdown=SHUTDOWN_GRACE_SECONDS,
        ),
    )
    write_pid_file(socket_path)
    logger.info("Daemon listening on %s (PID %s)", socket_path, os.getpid())
    try:
        server.run()
    finally:
        remove_daemon_files(socket_path)
        logger.info("Daemon stopped")
