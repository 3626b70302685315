"""Daemon HTTP surface: commission management and worker callbacks."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from guildhall import __version__
from guildhall.commission.errors import (
    CommissionError,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from guildhall.commission.events import CommissionEvent, EventBus, event_to_payload
from guildhall.commission.models import CommissionUpdate, ResourceOverrides
from guildhall.commission.packages import get_workers
from guildhall.commission.session import CommissionSession

logger = logging.getLogger(__name__)

_ACCEPTED = {"status": "accepted"}
_OK = {"status": "ok"}

STREAM_QUEUE_MAX_SIZE = 256
STREAM_KEEPALIVE_SECONDS = 15.0


class ResourceOverridesPayload(BaseModel):
    max_turns: int | None = Field(None, ge=1)
    max_budget_usd: float | None = Field(None, gt=0)

    def to_model(self) -> ResourceOverrides:
        return ResourceOverrides(max_turns=self.max_turns, max_budget_usd=self.max_budget_usd)


class CreateCommissionRequest(BaseModel):
    project_name: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    worker_name: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    dependencies: list[str] = Field(default_factory=list)
    resource_overrides: ResourceOverridesPayload | None = None


class UpdateCommissionRequest(BaseModel):
    prompt: str | None = None
    dependencies: list[str] | None = None
    resource_overrides: ResourceOverridesPayload | None = None


class ProgressReport(BaseModel):
    summary: str = Field(..., min_length=1)


class ResultReport(BaseModel):
    summary: str = Field(..., min_length=1)
    artifacts: list[str] | None = None


class QuestionReport(BaseModel):
    question: str = Field(..., min_length=1)


class NoteRequest(BaseModel):
    content: str = Field(..., min_length=1)


def error_status(error: CommissionError) -> int:
    if isinstance(error, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, InvalidState | InvalidTransition):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def event_stream(
    event_bus: EventBus,
    *,
    keepalive_seconds: float = STREAM_KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Relay bus events to one SSE client as ``data:`` frames.

    The subscription lives as long as the generator: it is taken on the first
    frame and dropped when the client disconnects and the generator closes.
    A comment line is sent when no event arrives within ``keepalive_seconds``.
    """

    queue: asyncio.Queue[CommissionEvent] = asyncio.Queue(maxsize=STREAM_QUEUE_MAX_SIZE)

    def enqueue(event: CommissionEvent) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Event stream queue full; dropping %s for %s",
                event.type,
                event.commission_id,
            )

    unsubscribe = event_bus.subscribe(enqueue)
    logger.info("Event stream client connected")
    try:
        yield ": connected\n\n"
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"data: {json.dumps(event_to_payload(event))}\n\n"
    finally:
        unsubscribe()
        logger.info("Event stream client disconnected")


def build_router(session: CommissionSession) -> APIRouter:
    router = APIRouter(prefix="/commissions", tags=["commissions"])

    @router.post("", status_code=status.HTTP_201_CREATED)
    async def create_commission(body: CreateCommissionRequest) -> dict[str, str]:
        logger.info(
            'POST /commissions project="%s" worker="%s"',
            body.project_name,
            body.worker_name,
        )
        commission_id = session.create_commission(
            body.project_name,
            body.title,
            body.worker_name,
            body.prompt,
            dependencies=body.dependencies,
            resource_overrides=(
                body.resource_overrides.to_model() if body.resource_overrides else None
            ),
        )
        return {"commission_id": commission_id}

    @router.put("/{commission_id}")
    async def update_commission(
        commission_id: str,
        body: UpdateCommissionRequest,
    ) -> dict[str, str]:
        session.update_commission(
            commission_id,
            CommissionUpdate(
                prompt=body.prompt,
                dependencies=body.dependencies,
                resource_overrides=(
                    body.resource_overrides.to_model() if body.resource_overrides else None
                ),
            ),
        )
        return _OK

    @router.post("/{commission_id}/dispatch", status_code=status.HTTP_202_ACCEPTED)
    async def dispatch_commission(commission_id: str) -> dict[str, str]:
        logger.info("POST /commissions/%s/dispatch", commission_id)
        await session.dispatch(commission_id)
        return _ACCEPTED

    @router.post("/{commission_id}/redispatch", status_code=status.HTTP_202_ACCEPTED)
    async def redispatch_commission(commission_id: str) -> dict[str, str]:
        logger.info("POST /commissions/%s/redispatch", commission_id)
        await session.redispatch(commission_id)
        return _ACCEPTED

    @router.delete("/{commission_id}")
    async def cancel_commission(commission_id: str) -> dict[str, str]:
        logger.info("DELETE /commissions/%s (cancel)", commission_id)
        session.cancel(commission_id)
        return _OK

    @router.post("/{commission_id}/note")
    async def add_note(commission_id: str, body: NoteRequest) -> dict[str, str]:
        session.add_user_note(commission_id, body.content)
        return _OK

    @router.post("/{commission_id}/progress")
    async def report_progress(commission_id: str, body: ProgressReport) -> dict[str, str]:
        session.report_progress(commission_id, body.summary)
        return _OK

    @router.post("/{commission_id}/result")
    async def report_result(commission_id: str, body: ResultReport) -> dict[str, str]:
        session.report_result(commission_id, body.summary, body.artifacts)
        return _OK

    @router.post("/{commission_id}/question")
    async def report_question(commission_id: str, body: QuestionReport) -> dict[str, str]:
        session.report_question(commission_id, body.question)
        return _OK

    return router


def create_app(session: CommissionSession, *, supervise: bool = True) -> FastAPI:
    """Build the daemon app around ``session``.

    With ``supervise`` the heartbeat monitor runs for the app's lifetime and
    the session is shut down when the app stops.
    """

    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if supervise:
            session.start()
        try:
            yield
        finally:
            session.shutdown()

    app = FastAPI(title="guildhall daemon", version=__version__, lifespan=lifespan)

    @app.exception_handler(CommissionError)
    async def handle_commission_error(_: Request, error: CommissionError) -> JSONResponse:
        code = error_status(error)
        if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error("%s: %s", type(error).__name__, error)
        return JSONResponse(
            status_code=code,
            content={"detail": str(error), "type": type(error).__name__},
        )

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {
            "status": "ok",
            "commissions": {"running": session.active_count()},
            "uptime": int(time.monotonic() - started_at),
        }

    @app.get("/events")
    async def stream_commission_events() -> StreamingResponse:
        return StreamingResponse(
            event_stream(session.event_bus),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/workers")
    async def list_workers() -> dict[str, object]:
        return {
            "workers": [
                {
                    "name": package.name,
                    "display_name": package.identity.name,
                    "display_title": package.identity.display_title,
                    "description": package.identity.description,
                }
                for package in get_workers(session.packages)
                if package.identity is not None
            ],
        }

    app.include_router(build_router(session))
    return app
