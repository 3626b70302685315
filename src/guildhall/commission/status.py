"""Commission status state machine.

The full transition graph::

    pending     -> dispatched, blocked, cancelled
    blocked     -> pending, cancelled
    dispatched  -> in_progress, failed
    in_progress -> completed, failed, cancelled
    completed, failed, cancelled -> (terminal, no outgoing edges)

``blocked <-> pending`` edges exist for dependency tracking and are not
exercised by the dispatcher itself.
"""

from __future__ import annotations

from pathlib import Path

from guildhall.commission.artifacts import CommissionArtifactStore
from guildhall.commission.errors import InvalidState, InvalidTransition, PersistenceFailure
from guildhall.commission.models import REDISPATCHABLE_STATUSES, CommissionStatus

VALID_TRANSITIONS: dict[CommissionStatus, tuple[CommissionStatus, ...]] = {
    CommissionStatus.PENDING: (
        CommissionStatus.DISPATCHED,
        CommissionStatus.BLOCKED,
        CommissionStatus.CANCELLED,
    ),
    CommissionStatus.BLOCKED: (CommissionStatus.PENDING, CommissionStatus.CANCELLED),
    CommissionStatus.DISPATCHED: (CommissionStatus.IN_PROGRESS, CommissionStatus.FAILED),
    CommissionStatus.IN_PROGRESS: (
        CommissionStatus.COMPLETED,
        CommissionStatus.FAILED,
        CommissionStatus.CANCELLED,
    ),
    CommissionStatus.COMPLETED: (),
    CommissionStatus.FAILED: (),
    CommissionStatus.CANCELLED: (),
}


def validate_transition(source: CommissionStatus, target: CommissionStatus) -> None:
    """Raise InvalidTransition unless ``source -> target`` is an edge of the graph."""

    allowed = VALID_TRANSITIONS[source]
    if target not in allowed:
        raise InvalidTransition(
            source.value,
            target.value,
            tuple(status.value for status in allowed),
        )


def transition_commission(  # noqa: PLR0913
    store: CommissionArtifactStore,
    project_path: str | Path,
    commission_id: str,
    source: CommissionStatus,
    target: CommissionStatus,
    reason: str,
) -> None:
    """Validate a transition, then persist the new status and a timeline entry.

    No compensation happens when persistence fails halfway: the artifact may
    hold the new status without the matching timeline entry. The failure is
    raised as PersistenceFailure so the caller can decide what to do.
    """

    validate_transition(source, target)
    try:
        store.update_status(project_path, commission_id, target)
        store.append_timeline_entry(
            project_path,
            commission_id,
            f"status_{target.value}",
            reason,
            {"from": source.value, "to": target.value},
        )
    except (OSError, ValueError, TypeError) as error:
        raise PersistenceFailure(
            f"Failed to persist transition {source.value} -> {target.value} "
            f'for commission "{commission_id}": {error}',
        ) from error


def reset_for_redispatch(
    store: CommissionArtifactStore,
    project_path: str | Path,
    commission_id: str,
    source: CommissionStatus,
) -> None:
    """Move a failed or cancelled commission back to pending.

    Terminal states have no outgoing edges, so this writes the status
    directly instead of going through ``transition_commission``. It is the
    only sanctioned way out of a terminal state.
    """

    if source not in REDISPATCHABLE_STATUSES:
        raise InvalidState(
            f'Cannot redispatch commission "{commission_id}": '
            f'status is "{source.value}", must be "failed" or "cancelled"',
            current=source.value,
        )
    try:
        store.update_status(project_path, commission_id, CommissionStatus.PENDING)
        store.append_timeline_entry(
            project_path,
            commission_id,
            f"status_{CommissionStatus.PENDING.value}",
            "Commission reset for redispatch",
            {"from": source.value, "to": CommissionStatus.PENDING.value},
        )
    except (OSError, ValueError, TypeError) as error:
        raise PersistenceFailure(
            f'Failed to reset commission "{commission_id}" for redispatch: {error}',
        ) from error
