from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from guildhall.commission import daemon
from guildhall.commission.daemon import (
    DaemonAlreadyRunningError,
    clean_stale_socket,
    pid_file_path,
    remove_daemon_files,
    write_pid_file,
)
from guildhall.config import Settings

pytestmark = [
    allure.epic("Commission Engine"),
    allure.feature("Daemon Lifecycle"),
]


def test_pid_file_sits_next_to_socket(tmp_path: Path) -> None:
    assert pid_file_path(tmp_path / "guild-hall.sock") == tmp_path / "guild-hall.sock.pid"


def test_clean_stale_socket_refuses_live_daemon(tmp_path: Path) -> None:
    socket_path = tmp_path / "guild-hall.sock"
    socket_path.write_text("", "utf-8")
    write_pid_file(socket_path)

    with pytest.raises(DaemonAlreadyRunningError, match=f"PID {os.getpid()}"):
        clean_stale_socket(socket_path)

    assert socket_path.exists()


def test_clean_stale_socket_removes_files_of_dead_daemon(tmp_path: Path, monkeypatch) -> None:
    socket_path = tmp_path / "guild-hall.sock"
    socket_path.write_text("", "utf-8")
    pid_file_path(socket_path).write_text("424242", "utf-8")
    monkeypatch.setattr(daemon, "pid_alive", lambda pid: False)

    clean_stale_socket(socket_path)

    assert not socket_path.exists()
    assert not pid_file_path(socket_path).exists()


def test_clean_stale_socket_handles_garbage_pid_and_missing_files(tmp_path: Path) -> None:
    socket_path = tmp_path / "guild-hall.sock"
    clean_stale_socket(socket_path)

    socket_path.write_text("", "utf-8")
    pid_file_path(socket_path).write_text("not-a-pid", "utf-8")
    clean_stale_socket(socket_path)

    assert not socket_path.exists()
    assert not pid_file_path(socket_path).exists()


def test_remove_daemon_files(tmp_path: Path) -> None:
    socket_path = tmp_path / "guild-hall.sock"
    socket_path.write_text("", "utf-8")
    write_pid_file(socket_path)

    remove_daemon_files(socket_path)
    remove_daemon_files(socket_path)

    assert list(tmp_path.iterdir()) == []


def test_run_daemon_serves_on_socket_and_cleans_up(tmp_path: Path, monkeypatch) -> None:
    seen: dict[str, object] = {}

    class FakeServer:
        def __init__(self, config) -> None:
            seen["uds"] = config.uds
            seen["lifespan"] = config.lifespan
            seen["graceful"] = config.timeout_graceful_shutdown

        def run(self) -> None:
            seen["pid_during_run"] = pid_file_path(settings.socket_path).read_text("utf-8")

    monkeypatch.setattr(daemon.uvicorn, "Server", FakeServer)
    settings = Settings(home=tmp_path / "home", packages_dir=tmp_path / "packages")

    daemon.run_daemon(settings)

    assert seen["uds"] == str(settings.socket_path)
    assert seen["lifespan"] == "on"
    assert seen["graceful"] == daemon.SHUTDOWN_GRACE_SECONDS
    assert seen["pid_during_run"] == str(os.getpid())
    assert not pid_file_path(settings.socket_path).exists()
