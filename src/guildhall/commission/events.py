"""In-process event bus for commission lifecycle notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import ClassVar

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommissionStatusEvent:
    commission_id: str
    status: str
    reason: str
    type: ClassVar[str] = "commission_status"


@dataclass(slots=True)
class CommissionProgressEvent:
    commission_id: str
    summary: str
    type: ClassVar[str] = "commission_progress"


@dataclass(slots=True)
class CommissionQuestionEvent:
    commission_id: str
    question: str
    type: ClassVar[str] = "commission_question"


@dataclass(slots=True)
class CommissionResultEvent:
    commission_id: str
    summary: str
    artifacts: list[str] = field(default_factory=list)
    type: ClassVar[str] = "commission_result"


CommissionEvent = (
    CommissionStatusEvent
    | CommissionProgressEvent
    | CommissionQuestionEvent
    | CommissionResultEvent
)
Subscriber = Callable[[CommissionEvent], None]


class EventBus:
    """Synchronous fan-out to subscribers.

    A subscriber that raises is logged and does not stop delivery to the
    remaining subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` and return a function that unsubscribes it."""

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: CommissionEvent) -> None:
        subscribers = list(self._subscribers)
        if not subscribers:
            logger.debug("No subscribers for %s", event.type)
            return
        for callback in subscribers:
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event subscriber failed for %s", event.type)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


def event_to_payload(event: CommissionEvent) -> dict[str, object]:
    """Render an event as a JSON-ready dict including its ``type`` tag."""

    payload: dict[str, object] = {"type": event.type, "commission_id": event.commission_id}
    if isinstance(event, CommissionStatusEvent):
        payload.update(status=event.status, reason=event.reason)
    elif isinstance(event, CommissionProgressEvent):
        payload["summary"] = event.summary
    elif isinstance(event, CommissionQuestionEvent):
        payload["question"] = event.question
    else:
        payload.update(summary=event.summary, artifacts=list(event.artifacts))
    return payload
