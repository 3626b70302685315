from __future__ import annotations

import json
from collections.abc import Iterator

import allure
import pytest
from fastapi.testclient import TestClient

from guildhall.commission.errors import (
    CommissionError,
    InvalidState,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
)
from guildhall.commission.events import CommissionProgressEvent, EventBus
from guildhall.commission.models import CommissionStatus
from guildhall.commission.routes import create_app, error_status, event_stream

pytestmark = [
    allure.epic("Commission Engine"),
    allure.feature("Daemon Routes"),
]


@pytest.fixture()
def client(session) -> Iterator[TestClient]:
    with TestClient(create_app(session, supervise=False)) as test_client:
        yield test_client


def test_health_reports_running_commissions(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["commissions"] == {"running": 0}
    assert isinstance(payload["uptime"], int)


def test_workers_lists_discovered_worker_packages(client: TestClient) -> None:
    response = client.get("/workers")

    assert response.json() == {
        "workers": [
            {
                "name": "guild-hall-writer",
                "display_name": "writer",
                "display_title": "Guild Writer",
                "description": "Writes things down.",
            },
        ],
    }


def test_create_commission_returns_id(client: TestClient, session, project) -> None:
    response = client.post(
        "/commissions",
        json={
            "project_name": "alpha",
            "title": "Draft",
            "worker_name": "guild-hall-writer",
            "prompt": "Write it",
            "resource_overrides": {"max_turns": 12},
        },
    )

    assert response.status_code == 201
    commission_id = response.json()["commission_id"]
    record = session.store.read_record(project.path, commission_id)
    assert record.prompt == "Write it"
    assert record.resource_overrides.max_turns == 12


def test_create_commission_unknown_project_is_404(client: TestClient) -> None:
    response = client.post(
        "/commissions",
        json={
            "project_name": "beta",
            "title": "Draft",
            "worker_name": "guild-hall-writer",
            "prompt": "Write it",
        },
    )

    assert response.status_code == 404
    assert response.json() == {"detail": 'Project "beta" not found'}


def test_create_commission_validates_payload(client: TestClient) -> None:
    response = client.post(
        "/commissions",
        json={"project_name": "alpha", "title": "", "worker_name": "w", "prompt": "p"},
    )

    assert response.status_code == 422


def test_dispatch_then_cancel(client: TestClient, session, project, pending_commission) -> None:
    response = client.post(f"/commissions/{pending_commission}/dispatch")
    assert response.status_code == 202
    assert response.json() == {"status": "accepted"}
    assert client.get("/health").json()["commissions"] == {"running": 1}

    response = client.delete(f"/commissions/{pending_commission}")
    assert response.status_code == 200
    assert session.store.read_status(project.path, pending_commission) is (
        CommissionStatus.CANCELLED
    )

    response = client.delete(f"/commissions/{pending_commission}")
    assert response.status_code == 404
    assert "not found in active commissions" in response.json()["detail"]
    assert response.json()["type"] == "NotFound"


def test_dispatch_of_non_pending_commission_is_409(
    client: TestClient,
    session,
    project,
    pending_commission,
) -> None:
    session.store.update_status(project.path, pending_commission, CommissionStatus.COMPLETED)

    response = client.post(f"/commissions/{pending_commission}/dispatch")

    assert response.status_code == 409
    assert 'must be "pending"' in response.json()["detail"]
    assert response.json()["type"] == "InvalidState"


def test_update_and_note(client: TestClient, session, project, pending_commission) -> None:
    response = client.put(
        f"/commissions/{pending_commission}",
        json={"prompt": "Summarize Q2", "dependencies": []},
    )
    assert response.json() == {"status": "ok"}

    response = client.post(f"/commissions/{pending_commission}/note", json={"content": "thanks"})
    assert response.status_code == 200

    record = session.store.read_record(project.path, pending_commission)
    assert record.prompt == "Summarize Q2"
    assert record.dependencies == []
    assert record.timeline[-1].event == "user_note"

    response = client.post(f"/commissions/{pending_commission}/note", json={"content": ""})
    assert response.status_code == 422


def test_worker_callbacks_update_the_session(
    client: TestClient,
    session,
    events,
    pending_commission,
) -> None:
    client.post(f"/commissions/{pending_commission}/dispatch")

    client.post(f"/commissions/{pending_commission}/progress", json={"summary": "halfway"})
    client.post(f"/commissions/{pending_commission}/question", json={"question": "which?"})
    response = client.post(
        f"/commissions/{pending_commission}/result",
        json={"summary": "done", "artifacts": ["out.md"]},
    )

    assert response.json() == {"status": "ok"}
    entry = session.active(pending_commission)
    assert entry.result_submitted is True
    assert entry.result_artifacts == ["out.md"]
    assert [event.type for event in events[-3:]] == [
        "commission_progress",
        "commission_question",
        "commission_result",
    ]


def test_worker_callbacks_for_unknown_commission_are_accepted(client: TestClient) -> None:
    response = client.post("/commissions/commission-x-1/progress", json={"summary": "hi"})

    assert response.status_code == 200


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (NotFound("x"), 404),
        (InvalidState("x"), 409),
        (InvalidTransition("pending", "completed", ("dispatched",)), 409),
        (PersistenceFailure("x"), 500),
        (CommissionError("x"), 500),
    ],
)
def test_error_status(error: CommissionError, code: int) -> None:
    assert error_status(error) == code


def test_cancel_of_dispatched_mirror_reports_invalid_transition(
    client: TestClient,
    session,
    pending_commission,
) -> None:
    client.post(f"/commissions/{pending_commission}/dispatch")
    session.active(pending_commission).status = CommissionStatus.DISPATCHED

    response = client.delete(f"/commissions/{pending_commission}")

    assert response.status_code == 409
    assert response.json()["type"] == "InvalidTransition"
    assert '"dispatched" -> "cancelled"' in response.json()["detail"]


# -- event stream -------------------------------------------------------------


@pytest.mark.asyncio
async def test_event_stream_relays_events_and_unsubscribes_on_close() -> None:
    bus = EventBus()
    stream = event_stream(bus)

    assert await anext(stream) == ": connected\n\n"
    assert bus.subscriber_count == 1

    bus.emit(CommissionProgressEvent(commission_id="commission-writer-1", summary="halfway"))
    frame = await anext(stream)

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.removeprefix("data: ")) == {
        "type": "commission_progress",
        "commission_id": "commission-writer-1",
        "summary": "halfway",
    }

    await stream.aclose()
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_event_stream_sends_keepalive_when_idle() -> None:
    bus = EventBus()
    stream = event_stream(bus, keepalive_seconds=0.01)

    await anext(stream)

    assert await anext(stream) == ": keepalive\n\n"
    await stream.aclose()


@pytest.mark.asyncio
async def test_events_route_streams_session_events(session, pending_commission) -> None:
    app = create_app(session, supervise=False)
    endpoint = next(
        route.endpoint for route in app.routes if getattr(route, "path", None) == "/events"
    )
    subscribers_before = session.event_bus.subscriber_count

    response = await endpoint()
    frames = response.body_iterator

    assert response.media_type == "text/event-stream"
    assert await anext(frames) == ": connected\n\n"

    await session.dispatch(pending_commission)
    payload = json.loads((await anext(frames)).removeprefix("data: "))

    assert payload == {
        "type": "commission_status",
        "commission_id": pending_commission,
        "status": "in_progress",
        "reason": "Worker process started",
    }
    await frames.aclose()
    assert session.event_bus.subscriber_count == subscribers_before
    session.shutdown()
