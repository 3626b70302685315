"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from guildhall.commission.artifacts import CommissionArtifactStore
from guildhall.commission.events import CommissionEvent, EventBus
from guildhall.commission.models import WorkerExit
from guildhall.commission.packages import discover_packages
from guildhall.commission.session import CommissionSession
from guildhall.commission.spawn import KillSeverity
from guildhall.config import ProjectConfig


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.kills: list[KillSeverity] = []
        self._exit: asyncio.Future[WorkerExit] = asyncio.get_running_loop().create_future()

    async def wait(self) -> WorkerExit:
        return await self._exit

    def kill(self, severity: KillSeverity) -> None:
        self.kills.append(severity)

    def exit(self, code: int, signal_name: str | None = None) -> None:
        if not self._exit.done():
            self._exit.set_result(WorkerExit(exit_code=code, signal_name=signal_name))

    def crash_notification(self, error: Exception) -> None:
        if not self._exit.done():
            self._exit.set_exception(error)


@dataclass
class FakeSpawner:
    next_pid: int = 4_000
    error: Exception | None = None
    processes: list[FakeProcess] = field(default_factory=list)
    config_paths: list[Path] = field(default_factory=list)

    async def __call__(self, config_path: Path) -> FakeProcess:
        self.config_paths.append(config_path)
        if self.error is not None:
            raise self.error
        self.next_pid += 1
        process = FakeProcess(self.next_pid)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def project(tmp_path: Path) -> ProjectConfig:
    path = tmp_path / "project"
    (path / ".lore").mkdir(parents=True)
    return ProjectConfig(name="alpha", path=path)


@pytest.fixture()
def packages_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "packages"
    package_dir = directory / "guild-hall-writer"
    package_dir.mkdir(parents=True)
    (package_dir / "package.json").write_text(
        json.dumps(
            {
                "name": "guild-hall-writer",
                "version": "0.1.0",
                "guildHall": {
                    "type": "worker",
                    "identity": {
                        "name": "writer",
                        "displayTitle": "Guild Writer",
                        "description": "Writes things down.",
                    },
                },
            },
        ),
        "utf-8",
    )
    return directory


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture()
def events() -> list[CommissionEvent]:
    return []


@pytest.fixture()
def alive_pids() -> set[int]:
    return set()


@pytest.fixture()
def session(  # noqa: PLR0913
    tmp_path: Path,
    project: ProjectConfig,
    packages_dir: Path,
    spawner: FakeSpawner,
    clock: FakeClock,
    events: list[CommissionEvent],
    alive_pids: set[int],
) -> CommissionSession:
    bus = EventBus()
    bus.subscribe(events.append)
    workdir_root = tmp_path / "work"
    workdir_root.mkdir()
    return CommissionSession(
        projects=[project],
        packages=discover_packages([packages_dir]),
        home=tmp_path / "home",
        packages_dir=packages_dir,
        spawn_fn=spawner,
        event_bus=bus,
        store=CommissionArtifactStore(clock=clock),
        probe_pid=lambda pid: pid in alive_pids,
        clock=clock,
        workdir_root=workdir_root,
    )


@pytest.fixture()
def pending_commission(session: CommissionSession) -> str:
    return session.create_commission(
        "alpha",
        "Write the report",
        "guild-hall-writer",
        "Summarize the quarter",
        dependencies=["notes/q1.md"],
    )
