from __future__ import annotations

from pathlib import Path

import allure
import pytest

from guildhall.commission import echo_worker
from guildhall.commission.contracts import CommissionWorkerConfig, write_worker_config

pytestmark = [
    allure.epic("Commission Engine"),
    allure.feature("Echo Worker"),
]


class FakeDaemonClient:
    instances: list[FakeDaemonClient] = []

    def __init__(self, socket_path: Path, *, accept_result: bool = True) -> None:
        self.socket_path = socket_path
        self.accept_result = accept_result
        self.calls: list[tuple[str, str, str]] = []
        FakeDaemonClient.instances.append(self)

    def __enter__(self) -> FakeDaemonClient:
        return self

    def __exit__(self, *_: object) -> None:
        return None

    def report_progress(self, commission_id: str, summary: str) -> bool:
        self.calls.append(("progress", commission_id, summary))
        return True

    def submit_result(self, commission_id: str, summary: str) -> bool:
        self.calls.append(("result", commission_id, summary))
        return self.accept_result


class RejectingDaemonClient(FakeDaemonClient):
    def __init__(self, socket_path: Path) -> None:
        super().__init__(socket_path, accept_result=False)


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "commission-config.json"
    write_worker_config(
        path,
        CommissionWorkerConfig(
            commission_id="commission-writer-20260301-120000",
            project_name="alpha",
            project_path=str(tmp_path / "alpha"),
            worker_package_name="guild-hall-writer",
            prompt="  Summarize the quarter  ",
            working_directory=str(tmp_path),
            daemon_socket_path=str(tmp_path / "guild-hall.sock"),
            packages_dir=str(tmp_path / "packages"),
            guild_hall_home=str(tmp_path),
        ),
    )
    return path


def test_echo_worker_reports_progress_and_result(config_path: Path, monkeypatch) -> None:
    FakeDaemonClient.instances.clear()
    monkeypatch.setattr(echo_worker, "DaemonClient", FakeDaemonClient)

    assert echo_worker.main(["--config", str(config_path)]) == 0

    client = FakeDaemonClient.instances[-1]
    assert client.socket_path == config_path.parent / "guild-hall.sock"
    assert client.calls == [
        ("progress", "commission-writer-20260301-120000", "Echo worker started"),
        ("result", "commission-writer-20260301-120000", "Summarize the quarter"),
    ]


def test_echo_worker_fails_when_result_is_rejected(config_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(echo_worker, "DaemonClient", RejectingDaemonClient)

    assert echo_worker.main(["--config", str(config_path)]) == 1
