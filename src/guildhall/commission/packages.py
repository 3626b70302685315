"""Worker package discovery.

A worker package is a directory holding a ``package.json`` whose
``guildHall`` key describes the worker::

    {"name": "guild-hall-writer",
     "guildHall": {"type": "worker",
                   "identity": {"name": "writer", "displayTitle": "Guild Writer"}}}
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_NAME_PATTERN = re.compile(r"[/\\]|\.\.|\s|[^\x20-\x7E]")


@dataclass(slots=True)
class WorkerIdentity:
    """Identity block of a worker package."""

    name: str
    display_title: str
    description: str = ""


@dataclass(slots=True)
class DiscoveredPackage:
    """One valid package found under a scan path."""

    name: str
    path: Path
    types: tuple[str, ...]
    identity: WorkerIdentity | None = None

    @property
    def is_worker(self) -> bool:
        return "worker" in self.types and self.identity is not None


def is_valid_package_name(name: str) -> bool:
    """Return True when ``name`` is safe for directory and id usage."""

    return bool(name) and _UNSAFE_NAME_PATTERN.search(name) is None


def discover_packages(scan_paths: Iterable[str | Path]) -> list[DiscoveredPackage]:
    """Scan directories for packages carrying a ``guildHall`` key.

    Invalid packages are skipped with a warning. When several scan paths hold
    a package with the same name, the first one wins.
    """

    seen: dict[str, DiscoveredPackage] = {}
    for scan_path in scan_paths:
        scan_dir = Path(scan_path)
        if not scan_dir.is_dir():
            continue
        for package_dir in sorted(item for item in scan_dir.iterdir() if item.is_dir()):
            package = _read_package(package_dir)
            if package is None or package.name in seen:
                continue
            seen[package.name] = package
    return list(seen.values())


def get_workers(packages: Iterable[DiscoveredPackage]) -> list[DiscoveredPackage]:
    return [package for package in packages if package.is_worker]


def get_worker_by_name(
    packages: Iterable[DiscoveredPackage],
    name: str,
) -> DiscoveredPackage | None:
    """Find a worker package by its package name."""

    for package in packages:
        if package.name == name and package.is_worker:
            return package
    return None


def get_worker_by_identity(
    packages: Iterable[DiscoveredPackage],
    identity_name: str,
) -> DiscoveredPackage | None:
    """Find a worker package by the identity name recorded in commission artifacts."""

    for package in packages:
        if package.is_worker and package.identity and package.identity.name == identity_name:
            return package
    return None


def _read_package(package_dir: Path) -> DiscoveredPackage | None:
    manifest_path = package_dir / "package.json"
    if not manifest_path.is_file():
        return None
    try:
        manifest = json.loads(manifest_path.read_text("utf-8"))
    except json.JSONDecodeError:
        logger.warning("Skipping %s: package.json contains invalid JSON", package_dir)
        return None
    except OSError as error:
        logger.warning("Skipping %s: cannot read package.json: %s", package_dir, error)
        return None
    if not isinstance(manifest, dict) or manifest.get("guildHall") is None:
        return None

    name = manifest.get("name")
    if not isinstance(name, str) or not name:
        logger.warning('Skipping %s: package.json missing or empty "name" field', package_dir)
        return None
    if not is_valid_package_name(name):
        logger.warning(
            'Skipping %s: package name "%s" contains unsafe characters',
            package_dir,
            name,
        )
        return None

    try:
        types, identity = _parse_metadata(manifest["guildHall"])
    except (TypeError, ValueError) as error:
        logger.warning("Skipping %s: invalid guildHall metadata: %s", package_dir, error)
        return None
    return DiscoveredPackage(name=name, path=package_dir, types=types, identity=identity)


def _parse_metadata(metadata: object) -> tuple[tuple[str, ...], WorkerIdentity | None]:
    if not isinstance(metadata, dict):
        raise TypeError("guildHall must be an object")

    raw_type = metadata.get("type")
    if raw_type in ("worker", "toolbox"):
        types: tuple[str, ...] = (raw_type,)
    elif raw_type == ["worker", "toolbox"]:
        types = ("worker", "toolbox")
    else:
        raise ValueError(
            f'type must be "worker", "toolbox" or ["worker", "toolbox"], got {raw_type!r}',
        )

    if "worker" not in types:
        return types, None

    identity = metadata.get("identity")
    if not isinstance(identity, dict):
        raise TypeError("identity must be an object")
    identity_name = identity.get("name")
    display_title = identity.get("displayTitle")
    if not isinstance(identity_name, str) or not identity_name.strip():
        raise ValueError("identity.name must be a non-empty string")
    if not isinstance(display_title, str):
        raise TypeError("identity.displayTitle must be a string")
    description = identity.get("description", "")
    return types, WorkerIdentity(
        name=identity_name.strip(),
        display_title=display_title,
        description=description if isinstance(description, str) else "",
    )
