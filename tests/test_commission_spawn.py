from __future__ import annotations

import logging
import os
import shlex
import signal
import sys
from pathlib import Path

import allure
import pytest

from guildhall.commission.models import WorkerExit
from guildhall.commission.spawn import (
    KillSeverity,
    SpawnError,
    SubprocessSpawner,
    build_worker_args,
    exit_from_returncode,
    pid_alive,
)

pytestmark = [
    allure.epic("Commission Engine"),
    allure.feature("Worker Processes"),
]


def _python_template(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)} {{config_path}}"


def _config_path(tmp_path: Path) -> Path:
    workdir = tmp_path / "gh-commission-test"
    workdir.mkdir()
    path = workdir / "commission-config.json"
    path.write_text("{}", "utf-8")
    return path


def test_build_worker_args_quotes_config_path() -> None:
    args = build_worker_args("worker --config {config_path}", Path("/tmp/with space/config.json"))

    assert args == ["worker", "--config", "/tmp/with space/config.json"]


@pytest.mark.parametrize(
    ("template", "match"),
    [
        ("   ", "empty"),
        ("worker --config", "must include"),
        ("worker {config_path} {other}", "Unsupported command template placeholder"),
    ],
)
def test_build_worker_args_rejects_bad_templates(template: str, match: str) -> None:
    with pytest.raises(SpawnError, match=match):
        build_worker_args(template, Path("/tmp/config.json"))


def test_exit_from_returncode_maps_signals() -> None:
    assert exit_from_returncode(0) == WorkerExit(exit_code=0)
    assert exit_from_returncode(3) == WorkerExit(exit_code=3)
    assert exit_from_returncode(-signal.SIGKILL) == WorkerExit(
        exit_code=128 + signal.SIGKILL,
        signal_name="SIGKILL",
    )


def test_kill_severity_signals() -> None:
    assert KillSeverity.GRACEFUL.signal is signal.SIGTERM
    assert KillSeverity.FORCED.signal is signal.SIGKILL


def test_pid_alive_for_current_process() -> None:
    assert pid_alive(os.getpid()) is True


@pytest.mark.asyncio
async def test_subprocess_spawner_reports_exit_code_and_output(tmp_path: Path, caplog) -> None:
    config_path = _config_path(tmp_path)
    spawner = SubprocessSpawner(
        _python_template("import os, sys; print(os.getcwd()); sys.exit(3)"),
    )

    process = await spawner(config_path)
    with caplog.at_level(logging.INFO, logger="guildhall.commission.spawn"):
        worker_exit = await process.wait()

    assert worker_exit == WorkerExit(exit_code=3)
    assert str(config_path.parent) in caplog.text


@pytest.mark.asyncio
async def test_subprocess_worker_graceful_kill(tmp_path: Path) -> None:
    spawner = SubprocessSpawner(_python_template("import time; time.sleep(30)"))
    process = await spawner(_config_path(tmp_path))

    process.kill(KillSeverity.GRACEFUL)
    worker_exit = await process.wait()

    assert worker_exit == WorkerExit(exit_code=128 + signal.SIGTERM, signal_name="SIGTERM")
    process.kill(KillSeverity.FORCED)


@pytest.mark.asyncio
async def test_subprocess_spawner_missing_binary(tmp_path: Path) -> None:
    spawner = SubprocessSpawner("/nonexistent/guildhall-worker {config_path}")

    with pytest.raises(SpawnError, match="Worker command not found"):
        await spawner(_config_path(tmp_path))
