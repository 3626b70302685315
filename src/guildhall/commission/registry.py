"""Volatile bookkeeping for commissions with a live worker process."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from guildhall.commission.models import CommissionStatus
from guildhall.commission.spawn import WorkerProcess


@dataclass(slots=True)
class ActiveCommission:
    """In-memory state of one dispatched commission."""

    commission_id: str
    project_name: str
    worker_name: str
    pid: int
    start_time: datetime
    last_heartbeat: datetime
    status: CommissionStatus
    working_directory: Path
    config_path: Path
    process: WorkerProcess
    result_submitted: bool = False
    result_summary: str | None = None
    result_artifacts: list[str] = field(default_factory=list)
    grace_timer: asyncio.TimerHandle | None = None
    exit_task: asyncio.Task[None] | None = None


class ActiveCommissionRegistry:
    """Map of commission id to ActiveCommission, at most one entry per id."""

    def __init__(self) -> None:
        self._entries: dict[str, ActiveCommission] = {}

    def get(self, commission_id: str) -> ActiveCommission | None:
        return self._entries.get(commission_id)

    def add(self, entry: ActiveCommission) -> None:
        if entry.commission_id in self._entries:
            raise ValueError(f"Commission already active: {entry.commission_id}")
        self._entries[entry.commission_id] = entry

    def pop(self, commission_id: str) -> ActiveCommission | None:
        return self._entries.pop(commission_id, None)

    def items(self) -> list[tuple[str, ActiveCommission]]:
        """Snapshot of entries, safe to iterate while finalizers remove entries."""

        return list(self._entries.items())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, commission_id: object) -> bool:
        return commission_id in self._entries
