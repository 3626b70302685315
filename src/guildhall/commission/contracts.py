"""File-based config handoff between the daemon and a worker process."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

WORKER_CONFIG_FILENAME = "commission-config.json"


@dataclass(slots=True)
class WorkerResourceOverrides:
    """Resource bounds that take priority over worker package defaults."""

    max_turns: int | None = None
    max_budget_usd: float | None = None


@dataclass(slots=True)
class CommissionWorkerConfig:
    """Config written to the working directory before the worker is spawned."""

    commission_id: str
    project_name: str
    project_path: str
    worker_package_name: str
    prompt: str
    working_directory: str
    daemon_socket_path: str
    packages_dir: str
    guild_hall_home: str
    dependencies: list[str] = field(default_factory=list)
    resource_overrides: WorkerResourceOverrides | None = None


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_worker_config(path: Path, config: CommissionWorkerConfig) -> None:
    """Serialize worker config, dropping empty resource overrides."""

    payload = asdict(config)
    if config.resource_overrides is None:
        payload.pop("resource_overrides")
    write_json(path, payload)


def read_worker_config(path: Path) -> CommissionWorkerConfig:
    """Load and validate a worker config file."""

    raw = load_json(path)
    required = (
        "commission_id",
        "project_name",
        "project_path",
        "worker_package_name",
        "prompt",
        "working_directory",
        "daemon_socket_path",
        "packages_dir",
        "guild_hall_home",
    )
    missing = [key for key in required if key not in raw]
    if missing:
        raise ValueError(f"Worker config missing required fields: {', '.join(missing)}")
    for key in required:
        if not isinstance(raw[key], str):
            raise TypeError(f"commission_config.{key} must be a string")
    if not raw["commission_id"].strip():
        raise ValueError("commission_config.commission_id must be a non-empty string")

    dependencies = raw.get("dependencies", [])
    if not isinstance(dependencies, list) or not all(
        isinstance(item, str) for item in dependencies
    ):
        raise TypeError("commission_config.dependencies must be an array of strings")

    return CommissionWorkerConfig(
        commission_id=raw["commission_id"],
        project_name=raw["project_name"],
        project_path=raw["project_path"],
        worker_package_name=raw["worker_package_name"],
        prompt=raw["prompt"],
        working_directory=raw["working_directory"],
        daemon_socket_path=raw["daemon_socket_path"],
        packages_dir=raw["packages_dir"],
        guild_hall_home=raw["guild_hall_home"],
        dependencies=list(dependencies),
        resource_overrides=_read_resource_overrides(raw.get("resource_overrides")),
    )


def _read_resource_overrides(value: object) -> WorkerResourceOverrides | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise TypeError("commission_config.resource_overrides must be an object")
    max_turns = value.get("max_turns")
    max_budget_usd = value.get("max_budget_usd")
    if max_turns is not None and (isinstance(max_turns, bool) or not isinstance(max_turns, int)):
        raise TypeError("commission_config.resource_overrides.max_turns must be an integer")
    if max_budget_usd is not None and (
        isinstance(max_budget_usd, bool) or not isinstance(max_budget_usd, int | float)
    ):
        raise TypeError("commission_config.resource_overrides.max_budget_usd must be a number")
    return WorkerResourceOverrides(
        max_turns=max_turns,
        max_budget_usd=float(max_budget_usd) if max_budget_usd is not None else None,
    )
