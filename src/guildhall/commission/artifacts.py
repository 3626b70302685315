"""Commission artifact store.

Commission artifacts are markdown files with YAML front matter stored at
``<project>/.lore/commissions/<commission_id>.md``. The store is the only
writer of these files; the session issues semantic operations ("set status",
"append timeline entry") and the store persists them.
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from guildhall.commission.models import (
    DEFAULT_MAX_BUDGET_USD,
    DEFAULT_MAX_TURNS,
    CommissionRecord,
    CommissionStatus,
    CommissionUpdate,
    ResourceOverrides,
    TimelineEntry,
)

_FRONTMATTER_PATTERN = re.compile(r"\A---\n(.*?\n)?---(?:\n|\Z)", re.DOTALL)
_TIMELINE_BASE_KEYS = ("timestamp", "event", "reason")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CommissionArtifactStore:
    """Reads and rewrites commission artifacts inside project directories."""

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    # -- paths ----------------------------------------------------------------

    def commissions_dir(self, project_path: str | Path) -> Path:
        return Path(project_path) / ".lore" / "commissions"

    def artifact_path(self, project_path: str | Path, commission_id: str) -> Path:
        return self.commissions_dir(project_path) / f"{commission_id}.md"

    def exists(self, project_path: str | Path, commission_id: str) -> bool:
        return self.artifact_path(project_path, commission_id).is_file()

    def list_ids(self, project_path: str | Path) -> list[str]:
        directory = self.commissions_dir(project_path)
        if not directory.is_dir():
            return []
        return sorted(path.stem for path in directory.glob("commission-*.md"))

    # -- create / update ------------------------------------------------------

    def create(  # noqa: PLR0913
        self,
        project_path: str | Path,
        commission_id: str,
        *,
        title: str,
        worker: str,
        worker_display_title: str,
        prompt: str,
        project_name: str,
        dependencies: Iterable[str] = (),
        resource_overrides: ResourceOverrides | None = None,
    ) -> Path:
        """Write a new pending commission artifact."""

        overrides = resource_overrides or ResourceOverrides()
        now = self._clock()
        frontmatter: dict[str, Any] = {
            "title": f"Commission: {title}",
            "date": now.date().isoformat(),
            "status": CommissionStatus.PENDING.value,
            "tags": ["commission"],
            "worker": worker,
            "workerDisplayTitle": worker_display_title,
            "prompt": prompt,
            "dependencies": list(dependencies),
            "linked_artifacts": [],
            "resource_overrides": {
                "maxTurns": (
                    overrides.max_turns if overrides.max_turns is not None else DEFAULT_MAX_TURNS
                ),
                "maxBudgetUsd": (
                    overrides.max_budget_usd
                    if overrides.max_budget_usd is not None
                    else DEFAULT_MAX_BUDGET_USD
                ),
            },
            "activity_timeline": [
                {
                    "timestamp": format_timestamp(now),
                    "event": "created",
                    "reason": "Commission created",
                },
            ],
            "current_progress": "",
            "result_summary": "",
            "projectName": project_name,
        }
        path = self.artifact_path(project_path, commission_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        _save(path, frontmatter, "")
        return path

    def update_fields(
        self,
        project_path: str | Path,
        commission_id: str,
        update: CommissionUpdate,
    ) -> None:
        """Rewrite prompt, dependencies, and resource overrides."""

        path = self.artifact_path(project_path, commission_id)
        frontmatter, body = _load(path)
        if update.prompt is not None:
            frontmatter["prompt"] = update.prompt
        if update.dependencies is not None:
            frontmatter["dependencies"] = list(update.dependencies)
        if update.resource_overrides is not None:
            current = frontmatter.get("resource_overrides")
            overrides = dict(current) if isinstance(current, dict) else {}
            if update.resource_overrides.max_turns is not None:
                overrides["maxTurns"] = update.resource_overrides.max_turns
            if update.resource_overrides.max_budget_usd is not None:
                overrides["maxBudgetUsd"] = update.resource_overrides.max_budget_usd
            frontmatter["resource_overrides"] = overrides
        _save(path, frontmatter, body)

    # -- status ---------------------------------------------------------------

    def read_status(
        self,
        project_path: str | Path,
        commission_id: str,
    ) -> CommissionStatus | None:
        frontmatter, _ = _load(self.artifact_path(project_path, commission_id))
        return _parse_status(frontmatter.get("status"))

    def update_status(
        self,
        project_path: str | Path,
        commission_id: str,
        status: CommissionStatus,
    ) -> None:
        path = self.artifact_path(project_path, commission_id)
        frontmatter, body = _load(path)
        frontmatter["status"] = status.value
        _save(path, frontmatter, body)

    # -- timeline -------------------------------------------------------------

    def append_timeline_entry(
        self,
        project_path: str | Path,
        commission_id: str,
        event: str,
        reason: str,
        extra: dict[str, str] | None = None,
    ) -> None:
        """Append a timestamped entry to ``activity_timeline``."""

        path = self.artifact_path(project_path, commission_id)
        frontmatter, body = _load(path)
        entry: dict[str, str] = {
            "timestamp": format_timestamp(self._clock()),
            "event": event,
            "reason": reason,
        }
        for key, value in (extra or {}).items():
            if key in _TIMELINE_BASE_KEYS:
                raise ValueError(f"Timeline extra field shadows a base field: {key!r}")
            entry[key] = str(value)
        timeline = frontmatter.get("activity_timeline")
        if not isinstance(timeline, list):
            timeline = []
        timeline.append(entry)
        frontmatter["activity_timeline"] = timeline
        _save(path, frontmatter, body)

    def read_timeline(self, project_path: str | Path, commission_id: str) -> list[TimelineEntry]:
        frontmatter, _ = _load(self.artifact_path(project_path, commission_id))
        return _parse_timeline(frontmatter.get("activity_timeline"))

    # -- progress / result ----------------------------------------------------

    def update_current_progress(
        self,
        project_path: str | Path,
        commission_id: str,
        text: str,
    ) -> None:
        """Replace the latest progress summary."""

        path = self.artifact_path(project_path, commission_id)
        frontmatter, body = _load(path)
        frontmatter["current_progress"] = text
        _save(path, frontmatter, body)

    def update_result_summary(
        self,
        project_path: str | Path,
        commission_id: str,
        text: str,
        artifacts: Iterable[str] | None = None,
    ) -> None:
        path = self.artifact_path(project_path, commission_id)
        frontmatter, body = _load(path)
        frontmatter["result_summary"] = text
        _save(path, frontmatter, body)
        for artifact in artifacts or ():
            self.add_linked_artifact(project_path, commission_id, artifact)

    def add_linked_artifact(
        self,
        project_path: str | Path,
        commission_id: str,
        artifact_path: str,
    ) -> bool:
        """Link an artifact path. Returns False if it is already linked."""

        path = self.artifact_path(project_path, commission_id)
        frontmatter, body = _load(path)
        linked = _string_list(frontmatter.get("linked_artifacts"))
        if artifact_path in linked:
            return False
        linked.append(artifact_path)
        frontmatter["linked_artifacts"] = linked
        _save(path, frontmatter, body)
        return True

    # -- full record ----------------------------------------------------------

    def read_record(self, project_path: str | Path, commission_id: str) -> CommissionRecord:
        frontmatter, _ = _load(self.artifact_path(project_path, commission_id))
        return CommissionRecord(
            commission_id=commission_id,
            title=str(frontmatter.get("title") or ""),
            status=_parse_status(frontmatter.get("status")),
            worker=str(frontmatter.get("worker") or "").strip(),
            worker_display_title=str(frontmatter.get("workerDisplayTitle") or ""),
            prompt=str(frontmatter.get("prompt") or ""),
            dependencies=_string_list(frontmatter.get("dependencies")),
            linked_artifacts=_string_list(frontmatter.get("linked_artifacts")),
            resource_overrides=_parse_resource_overrides(frontmatter.get("resource_overrides")),
            timeline=_parse_timeline(frontmatter.get("activity_timeline")),
            current_progress=str(frontmatter.get("current_progress") or ""),
            result_summary=str(frontmatter.get("result_summary") or ""),
            project_name=str(frontmatter.get("projectName") or ""),
        )


def _load(path: Path) -> tuple[dict[str, Any], str]:
    raw = path.read_text("utf-8")
    match = _FRONTMATTER_PATTERN.match(raw)
    if match is None:
        raise ValueError(f"Commission artifact has no front matter: {path}")
    try:
        frontmatter = yaml.safe_load(match.group(1) or "") or {}
    except yaml.YAMLError as error:
        raise ValueError(f"Invalid YAML front matter in {path}: {error}") from error
    if not isinstance(frontmatter, dict):
        raise TypeError(f"Expected YAML mapping as front matter in {path}")
    return frontmatter, raw[match.end() :]


def _save(path: Path, frontmatter: dict[str, Any], body: str) -> None:
    rendered = yaml.safe_dump(
        frontmatter,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=1_000,
    )
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(f"---\n{rendered}---\n{body}", "utf-8")
    os.replace(tmp_path, path)


def _parse_status(value: object) -> CommissionStatus | None:
    if not isinstance(value, str):
        return None
    try:
        return CommissionStatus(value.strip())
    except ValueError:
        return None


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _parse_resource_overrides(value: object) -> ResourceOverrides:
    if not isinstance(value, dict):
        return ResourceOverrides()
    max_turns = value.get("maxTurns")
    max_budget = value.get("maxBudgetUsd")
    return ResourceOverrides(
        max_turns=int(max_turns) if isinstance(max_turns, int | float) else None,
        max_budget_usd=float(max_budget) if isinstance(max_budget, int | float) else None,
    )


def _parse_timeline(value: object) -> list[TimelineEntry]:
    if not isinstance(value, list):
        return []
    entries: list[TimelineEntry] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        entries.append(
            TimelineEntry(
                timestamp=str(item.get("timestamp", "")),
                event=str(item.get("event", "")),
                reason=str(item.get("reason", "")),
                extra={
                    str(key): str(val)
                    for key, val in item.items()
                    if key not in _TIMELINE_BASE_KEYS
                },
            ),
        )
    return entries
