"""Runtime configuration for the guildhall daemon and CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from guildhall.commission.spawn import DEFAULT_WORKER_COMMAND

_CONFIG_FILENAME = "config.yaml"
_SOCKET_FILENAME = "guild-hall.sock"


@dataclass(slots=True)
class CommissionSettings:
    """Commission supervision settings."""

    heartbeat_interval_seconds: float = 30.0
    staleness_threshold_seconds: float = 180.0
    cancel_grace_seconds: float = 30.0
    worker_command: str = DEFAULT_WORKER_COMMAND


@dataclass(slots=True)
class ProjectConfig:
    """A registered project directory."""

    name: str
    path: Path
    description: str = ""


@dataclass(slots=True)
class AppConfig:
    """Contents of ``<home>/config.yaml``."""

    projects: list[ProjectConfig] = field(default_factory=list)

    def find_project(self, name: str) -> ProjectConfig | None:
        for project in self.projects:
            if project.name == name:
                return project
        return None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    home: Path = field(default_factory=lambda: Path.home() / ".guild-hall")
    packages_dir: Path | None = None
    log_level: str = "INFO"
    commission: CommissionSettings = field(default_factory=CommissionSettings)

    @classmethod
    def from_env(cls, home: Path | None = None) -> Settings:
        """Load settings from environment with defaults under ``~/.guild-hall``."""

        resolved_home = home or Path(
            os.getenv("GUILDHALL_HOME", str(Path.home() / ".guild-hall")),
        ).expanduser()
        packages_dir = os.getenv("GUILDHALL_PACKAGES_DIR")
        return cls(
            home=resolved_home,
            packages_dir=Path(packages_dir).expanduser() if packages_dir else None,
            log_level=os.getenv("GUILDHALL_LOG_LEVEL", "INFO").upper(),
            commission=CommissionSettings(
                heartbeat_interval_seconds=float(
                    os.getenv("GUILDHALL_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
                staleness_threshold_seconds=float(
                    os.getenv("GUILDHALL_STALENESS_THRESHOLD_SECONDS", "180"),
                ),
                cancel_grace_seconds=float(os.getenv("GUILDHALL_CANCEL_GRACE_SECONDS", "30")),
                worker_command=os.getenv("GUILDHALL_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
            ),
        )

    @property
    def resolved_packages_dir(self) -> Path:
        return self.packages_dir or self.home / "packages"

    @property
    def socket_path(self) -> Path:
        return self.home / _SOCKET_FILENAME

    @property
    def config_path(self) -> Path:
        return self.home / _CONFIG_FILENAME

    def validate(self) -> None:
        """Raise configuration error on nonsensical supervision timings."""

        if self.commission.heartbeat_interval_seconds <= 0:
            raise ValueError("GUILDHALL_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.commission.staleness_threshold_seconds <= 0:
            raise ValueError("GUILDHALL_STALENESS_THRESHOLD_SECONDS must be > 0.")
        if self.commission.cancel_grace_seconds < 0:
            raise ValueError("GUILDHALL_CANCEL_GRACE_SECONDS must be >= 0.")
        if "{config_path}" not in self.commission.worker_command:
            raise ValueError("GUILDHALL_WORKER_COMMAND must include {config_path}.")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"GUILDHALL_LOG_LEVEL has unsupported value: {self.log_level}")


def read_app_config(path: Path) -> AppConfig:
    """Load ``config.yaml``. A missing or empty file means no projects."""

    if not path.exists():
        return AppConfig()
    try:
        raw = yaml.safe_load(path.read_text("utf-8"))
    except yaml.YAMLError as error:
        raise ValueError(f"Invalid YAML in {path}: {error}") from error
    if raw is None:
        return AppConfig()
    if not isinstance(raw, dict):
        raise ValueError(f"Expected mapping at top level of {path}")

    raw_projects = raw.get("projects") or []
    if not isinstance(raw_projects, list):
        raise ValueError(f"{path}: projects must be a list")

    projects: list[ProjectConfig] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_projects):
        if not isinstance(item, dict):
            raise ValueError(f"{path}: projects[{index}] must be a mapping")
        name = item.get("name")
        project_path = item.get("path")
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"{path}: projects[{index}].name must be a non-empty string")
        if not isinstance(project_path, str) or not project_path.strip():
            raise ValueError(f"{path}: projects[{index}].path must be a non-empty string")
        if name in seen:
            raise ValueError(f"{path}: duplicate project name {name!r}")
        seen.add(name)
        description = item.get("description", "")
        projects.append(
            ProjectConfig(
                name=name.strip(),
                path=Path(project_path).expanduser(),
                description=description if isinstance(description, str) else "",
            ),
        )
    return AppConfig(projects=projects)


def write_app_config(path: Path, config: AppConfig) -> None:
    """Persist ``config.yaml`` with the registered projects."""

    payload = {
        "projects": [
            {
                "name": project.name,
                "path": str(project.path),
                **({"description": project.description} if project.description else {}),
            }
            for project in config.projects
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), "utf-8")
