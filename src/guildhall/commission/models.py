"""Domain models for commissions and their worker processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class CommissionStatus(str, Enum):
    """Durable commission lifecycle states."""

    PENDING = "pending"
    BLOCKED = "blocked"
    DISPATCHED = "dispatched"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {CommissionStatus.COMPLETED, CommissionStatus.FAILED, CommissionStatus.CANCELLED},
)
REDISPATCHABLE_STATUSES = frozenset({CommissionStatus.FAILED, CommissionStatus.CANCELLED})
SUPERVISED_STATUSES = frozenset({CommissionStatus.DISPATCHED, CommissionStatus.IN_PROGRESS})

DEFAULT_MAX_TURNS = 150
DEFAULT_MAX_BUDGET_USD = 1.0


@dataclass(slots=True)
class ResourceOverrides:
    """Per-commission resource bounds handed to the worker."""

    max_turns: int | None = None
    max_budget_usd: float | None = None

    def is_empty(self) -> bool:
        return self.max_turns is None and self.max_budget_usd is None


@dataclass(slots=True)
class TimelineEntry:
    """One activity timeline entry stored in the commission artifact."""

    timestamp: str
    event: str
    reason: str
    extra: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CommissionRecord:
    """Readable view of a persisted commission artifact."""

    commission_id: str
    title: str
    status: CommissionStatus | None
    worker: str
    worker_display_title: str
    prompt: str
    dependencies: list[str]
    linked_artifacts: list[str]
    resource_overrides: ResourceOverrides
    timeline: list[TimelineEntry]
    current_progress: str
    result_summary: str
    project_name: str


@dataclass(slots=True)
class CommissionUpdate:
    """Fields that may change while a commission is still pending."""

    prompt: str | None = None
    dependencies: list[str] | None = None
    resource_overrides: ResourceOverrides | None = None


@dataclass(slots=True)
class WorkerExit:
    """Exit notification payload of a worker process."""

    exit_code: int
    signal_name: str | None = None
