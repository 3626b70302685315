from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
import yaml

from guildhall.commission.artifacts import CommissionArtifactStore, format_timestamp
from guildhall.commission.models import CommissionStatus, CommissionUpdate, ResourceOverrides

pytestmark = [
    allure.epic("Commission Engine"),
    allure.feature("Commission Artifacts"),
]

_ID = "commission-writer-20260301-120000"


def _store() -> CommissionArtifactStore:
    return CommissionArtifactStore(clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


def _create(store: CommissionArtifactStore, project_path: Path, **kwargs) -> Path:
    return store.create(
        project_path,
        _ID,
        title=kwargs.pop("title", 'Draft "launch" notes'),
        worker="writer",
        worker_display_title="Guild Writer",
        prompt=kwargs.pop("prompt", "Write: the notes\n---\nthen stop"),
        project_name="alpha",
        **kwargs,
    )


def _frontmatter(path: Path) -> dict:
    match = re.match(r"\A---\n(.*?\n)---\n", path.read_text("utf-8"), re.DOTALL)
    assert match is not None
    return yaml.safe_load(match.group(1))


def test_create_writes_pending_artifact_with_defaults(tmp_path: Path) -> None:
    store = _store()
    path = _create(store, tmp_path, prompt="Write the notes")

    assert path == tmp_path / ".lore" / "commissions" / f"{_ID}.md"
    frontmatter = _frontmatter(path)
    assert frontmatter["title"] == 'Commission: Draft "launch" notes'
    assert frontmatter["date"] == "2026-03-01"
    assert frontmatter["status"] == "pending"
    assert frontmatter["tags"] == ["commission"]
    assert frontmatter["worker"] == "writer"
    assert frontmatter["workerDisplayTitle"] == "Guild Writer"
    assert frontmatter["resource_overrides"] == {"maxTurns": 150, "maxBudgetUsd": 1.0}
    assert frontmatter["activity_timeline"] == [
        {
            "timestamp": "2026-03-01T12:00:00.000Z",
            "event": "created",
            "reason": "Commission created",
        },
    ]
    assert frontmatter["projectName"] == "alpha"
    assert store.list_ids(tmp_path) == [_ID]


def test_read_record_round_trips_awkward_prompt(tmp_path: Path) -> None:
    store = _store()
    _create(
        store,
        tmp_path,
        dependencies=["notes/q1.md"],
        resource_overrides=ResourceOverrides(max_turns=20),
    )

    record = store.read_record(tmp_path, _ID)

    assert record.prompt == "Write: the notes\n---\nthen stop"
    assert record.status is CommissionStatus.PENDING
    assert record.dependencies == ["notes/q1.md"]
    assert record.resource_overrides == ResourceOverrides(max_turns=20, max_budget_usd=1.0)
    assert record.worker_display_title == "Guild Writer"


def test_update_fields_only_touches_given_fields(tmp_path: Path) -> None:
    store = _store()
    _create(store, tmp_path, dependencies=["a.md"])

    store.update_fields(
        tmp_path,
        _ID,
        CommissionUpdate(resource_overrides=ResourceOverrides(max_budget_usd=2.5)),
    )
    record = store.read_record(tmp_path, _ID)
    assert record.prompt == "Write: the notes\n---\nthen stop"
    assert record.dependencies == ["a.md"]
    assert record.resource_overrides == ResourceOverrides(max_turns=150, max_budget_usd=2.5)

    store.update_fields(tmp_path, _ID, CommissionUpdate(prompt="new", dependencies=[]))
    record = store.read_record(tmp_path, _ID)
    assert record.prompt == "new"
    assert record.dependencies == []


def test_read_status_returns_none_for_unknown_value(tmp_path: Path) -> None:
    store = _store()
    path = _create(store, tmp_path)
    path.write_text(path.read_text("utf-8").replace("status: pending", "status: bogus"), "utf-8")

    assert store.read_status(tmp_path, _ID) is None


def test_load_rejects_file_without_front_matter(tmp_path: Path) -> None:
    store = _store()
    path = store.artifact_path(tmp_path, _ID)
    path.parent.mkdir(parents=True)
    path.write_text("no front matter here\n", "utf-8")

    with pytest.raises(ValueError, match="no front matter"):
        store.read_status(tmp_path, _ID)


def test_timeline_entries_keep_extra_fields_and_reject_shadowing(tmp_path: Path) -> None:
    store = _store()
    _create(store, tmp_path)

    store.append_timeline_entry(tmp_path, _ID, "user_note", "looks good", {"author": "sam"})
    entries = store.read_timeline(tmp_path, _ID)
    assert [entry.event for entry in entries] == ["created", "user_note"]
    assert entries[-1].extra == {"author": "sam"}

    with pytest.raises(ValueError, match="shadows"):
        store.append_timeline_entry(tmp_path, _ID, "x", "y", {"reason": "z"})


def test_result_summary_links_artifacts_without_duplicates(tmp_path: Path) -> None:
    store = _store()
    _create(store, tmp_path)

    store.update_result_summary(tmp_path, _ID, "done", ["out.md", "out.md", "extra.md"])
    assert store.add_linked_artifact(tmp_path, _ID, "extra.md") is False

    record = store.read_record(tmp_path, _ID)
    assert record.result_summary == "done"
    assert record.linked_artifacts == ["out.md", "extra.md"]


def test_progress_update_preserves_markdown_body(tmp_path: Path) -> None:
    store = _store()
    path = _create(store, tmp_path)
    path.write_text(path.read_text("utf-8") + "\n# Notes\n\nbody text\n", "utf-8")

    store.update_current_progress(tmp_path, _ID, "halfway")

    assert store.read_record(tmp_path, _ID).current_progress == "halfway"
    assert path.read_text("utf-8").endswith("\n# Notes\n\nbody text\n")


def test_format_timestamp_uses_utc_millis() -> None:
    assert format_timestamp(datetime(2026, 3, 1, 12, 0, 1, 500_000, tzinfo=UTC)) == (
        "2026-03-01T12:00:01.500Z"
    )
