"""Controllers for commission CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from guildhall.commission.artifacts import CommissionArtifactStore
from guildhall.commission.client import DaemonClient
from guildhall.commission.daemon import run_daemon
from guildhall.commission.errors import NotFound
from guildhall.commission.models import CommissionStatus
from guildhall.config import AppConfig, ProjectConfig, Settings, read_app_config, write_app_config

ClientFactory = Callable[[Settings], DaemonClient]


@dataclass(slots=True)
class DaemonCommand:
    """CLI input for running the daemon."""

    home: Path | None
    packages_dir: Path | None


@dataclass(slots=True)
class RegisterProjectCommand:
    """CLI input for project registration."""

    home: Path | None
    name: str
    path: Path
    description: str


@dataclass(slots=True)
class CreateCommissionCommand:
    """CLI input for commission creation."""

    home: Path | None
    project_name: str
    title: str
    worker_name: str
    prompt: str
    dependencies: tuple[str, ...]
    max_turns: int | None
    max_budget_usd: float | None


@dataclass(slots=True)
class UpdateCommissionCommand:
    """CLI input for editing a pending commission."""

    home: Path | None
    commission_id: str
    prompt: str | None
    dependencies: tuple[str, ...] | None
    max_turns: int | None
    max_budget_usd: float | None


@dataclass(slots=True)
class CommissionRefCommand:
    """CLI input for dispatch/redispatch/cancel/show."""

    home: Path | None
    commission_id: str


@dataclass(slots=True)
class NoteCommand:
    home: Path | None
    commission_id: str
    content: str


@dataclass(slots=True)
class ListCommissionsCommand:
    """CLI input for commission listing."""

    home: Path | None
    project_name: str | None
    status: str | None


def _default_client(settings: Settings) -> DaemonClient:
    return DaemonClient(settings.socket_path)


class CommissionCliController:
    """Daemon-backed commission management plus local artifact reads."""

    def __init__(self, *, client_factory: ClientFactory = _default_client) -> None:
        self._client_factory = client_factory

    def run_daemon(self, command: DaemonCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        if command.packages_dir is not None:
            settings.packages_dir = command.packages_dir
        run_daemon(settings)
        return ["Daemon stopped."]

    def register_project(self, command: RegisterProjectCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        resolved = command.path.expanduser().resolve()
        if not resolved.is_dir():
            raise ValueError(f"Project path does not exist or is not a directory: {resolved}")
        if not (resolved / ".lore").is_dir():
            raise ValueError(f"'{resolved}' does not contain a .lore/ directory")

        config = read_app_config(settings.config_path)
        if config.find_project(command.name) is not None:
            raise ValueError(f"Project '{command.name}' is already registered")
        config.projects.append(
            ProjectConfig(name=command.name, path=resolved, description=command.description),
        )
        write_app_config(settings.config_path, config)
        return [f"Registered project '{command.name}' at {resolved}"]

    def workers(self, home: Path | None) -> list[str]:
        with self._client(home) as client:
            workers = client.list_workers()
        lines = [f"Workers: {len(workers)}"]
        for worker in workers:
            lines.append(
                f"  {worker.get('name')} ({worker.get('display_name')}): "
                f"{worker.get('display_title')}",
            )
        return lines

    def create(self, command: CreateCommissionCommand) -> list[str]:
        with self._client(command.home) as client:
            commission_id = client.create_commission(
                project_name=command.project_name,
                title=command.title,
                worker_name=command.worker_name,
                prompt=command.prompt,
                dependencies=list(command.dependencies),
                max_turns=command.max_turns,
                max_budget_usd=command.max_budget_usd,
            )
        return [f"Commission created: {commission_id}"]

    def update(self, command: UpdateCommissionCommand) -> list[str]:
        with self._client(command.home) as client:
            client.update_commission(
                command.commission_id,
                prompt=command.prompt,
                dependencies=list(command.dependencies) if command.dependencies else None,
                max_turns=command.max_turns,
                max_budget_usd=command.max_budget_usd,
            )
        return [f"Commission updated: {command.commission_id}"]

    def dispatch(self, command: CommissionRefCommand) -> list[str]:
        with self._client(command.home) as client:
            client.dispatch(command.commission_id)
        return [f"Commission dispatched: {command.commission_id}"]

    def redispatch(self, command: CommissionRefCommand) -> list[str]:
        with self._client(command.home) as client:
            client.redispatch(command.commission_id)
        return [f"Commission redispatched: {command.commission_id}"]

    def cancel(self, command: CommissionRefCommand) -> list[str]:
        with self._client(command.home) as client:
            client.cancel(command.commission_id)
        return [f"Commission cancelled: {command.commission_id}"]

    def note(self, command: NoteCommand) -> list[str]:
        with self._client(command.home) as client:
            client.add_note(command.commission_id, command.content)
        return [f"Note added to {command.commission_id}"]

    def show(self, command: CommissionRefCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        store = CommissionArtifactStore()
        project = _locate(store, read_app_config(settings.config_path), command.commission_id)
        record = store.read_record(project.path, command.commission_id)

        overrides = record.resource_overrides
        lines = [
            f"Commission: {record.commission_id}",
            f"Title: {record.title}",
            f"Project: {project.name}",
            f"Status: {record.status.value if record.status else '-'}",
            f"Worker: {record.worker} ({record.worker_display_title or '-'})",
            f"Prompt: {record.prompt}",
            f"Dependencies: {', '.join(record.dependencies) or '-'}",
            f"Resource overrides: maxTurns={overrides.max_turns} "
            f"maxBudgetUsd={overrides.max_budget_usd}",
            f"Progress: {record.current_progress or '-'}",
            f"Result: {record.result_summary or '-'}",
            f"Linked artifacts: {', '.join(record.linked_artifacts) or '-'}",
            f"Timeline: {len(record.timeline)}",
        ]
        for entry in record.timeline:
            extra = " ".join(f"{key}={value}" for key, value in entry.extra.items())
            suffix = f" [{extra}]" if extra else ""
            lines.append(f"  {entry.timestamp} {entry.event} {entry.reason}{suffix}")
        return lines

    def list_commissions(self, command: ListCommissionsCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        config = read_app_config(settings.config_path)
        status_filter = _parse_status(command.status)
        projects = config.projects
        if command.project_name is not None:
            project = config.find_project(command.project_name)
            if project is None:
                raise NotFound(f'Project "{command.project_name}" not found')
            projects = [project]

        store = CommissionArtifactStore()
        rows: list[str] = []
        for project in projects:
            for commission_id in store.list_ids(project.path):
                status = store.read_status(project.path, commission_id)
                if status_filter is not None and status is not status_filter:
                    continue
                rows.append(
                    f"  {commission_id} project={project.name} "
                    f"status={status.value if status else '-'}",
                )
        return [f"Commissions: {len(rows)}", *rows]

    def _client(self, home: Path | None) -> DaemonClient:
        return self._client_factory(Settings.from_env(home=home))


def _locate(store: CommissionArtifactStore, config: AppConfig, commission_id: str) -> ProjectConfig:
    for project in config.projects:
        if store.exists(project.path, commission_id):
            return project
    raise NotFound(f'Commission "{commission_id}" not found in any project')


def _parse_status(value: str | None) -> CommissionStatus | None:
    if value is None:
        return None
    try:
        return CommissionStatus(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in CommissionStatus)
        raise ValueError(f"Unsupported status: {value}. Allowed: {allowed}") from error
