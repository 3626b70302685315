"""HTTP client for the daemon's Unix socket, used by the CLI and by workers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from guildhall.commission.errors import (
    CommissionError,
    InvalidState,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    SpawnFailure,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
_BASE_URL = "http://guildhall"
_ERROR_TYPES: dict[str, type[CommissionError]] = {
    "NotFound": NotFound,
    "InvalidState": InvalidState,
    "SpawnFailure": SpawnFailure,
    "PersistenceFailure": PersistenceFailure,
}


class DaemonUnavailable(CommissionError):
    """The daemon socket could not be reached."""


class DaemonClient:
    """Typed calls against the daemon routes.

    Management calls raise CommissionError subclasses. Worker callbacks
    (progress, result, question) are best-effort: failures are logged and
    reported as ``False``.
    """

    def __init__(
        self,
        socket_path: Path,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.socket_path = socket_path
        self._client = httpx.Client(
            base_url=_BASE_URL,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport or httpx.HTTPTransport(uds=str(socket_path)),
        )
        self._result_submitted = False

    # -- management -----------------------------------------------------------

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health")

    def list_workers(self) -> list[dict[str, Any]]:
        payload = self._request("GET", "/workers")
        workers = payload.get("workers", [])
        if not isinstance(workers, list):
            raise TypeError("Daemon returned malformed workers list")
        return workers

    def create_commission(  # noqa: PLR0913
        self,
        *,
        project_name: str,
        title: str,
        worker_name: str,
        prompt: str,
        dependencies: list[str] | None = None,
        max_turns: int | None = None,
        max_budget_usd: float | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "project_name": project_name,
            "title": title,
            "worker_name": worker_name,
            "prompt": prompt,
            "dependencies": dependencies or [],
        }
        overrides = _overrides_payload(max_turns, max_budget_usd)
        if overrides:
            body["resource_overrides"] = overrides
        payload = self._request("POST", "/commissions", json=body)
        commission_id = payload.get("commission_id")
        if not isinstance(commission_id, str):
            raise TypeError("Daemon response is missing commission_id")
        return commission_id

    def update_commission(
        self,
        commission_id: str,
        *,
        prompt: str | None = None,
        dependencies: list[str] | None = None,
        max_turns: int | None = None,
        max_budget_usd: float | None = None,
    ) -> None:
        body: dict[str, Any] = {}
        if prompt is not None:
            body["prompt"] = prompt
        if dependencies is not None:
            body["dependencies"] = dependencies
        overrides = _overrides_payload(max_turns, max_budget_usd)
        if overrides:
            body["resource_overrides"] = overrides
        self._request("PUT", f"/commissions/{commission_id}", json=body)

    def dispatch(self, commission_id: str) -> None:
        self._request("POST", f"/commissions/{commission_id}/dispatch")

    def redispatch(self, commission_id: str) -> None:
        self._request("POST", f"/commissions/{commission_id}/redispatch")

    def cancel(self, commission_id: str) -> None:
        self._request("DELETE", f"/commissions/{commission_id}")

    def add_note(self, commission_id: str, content: str) -> None:
        self._request("POST", f"/commissions/{commission_id}/note", json={"content": content})

    # -- worker callbacks -----------------------------------------------------

    def report_progress(self, commission_id: str, summary: str) -> bool:
        return self._callback(commission_id, "progress", {"summary": summary})

    def submit_result(
        self,
        commission_id: str,
        summary: str,
        artifacts: list[str] | None = None,
    ) -> bool:
        """Submit the commission result. Only the first call per client is sent."""

        if self._result_submitted:
            logger.warning("Result for %s was already submitted; ignoring", commission_id)
            return False
        body: dict[str, Any] = {"summary": summary}
        if artifacts:
            body["artifacts"] = artifacts
        sent = self._callback(commission_id, "result", body)
        if sent:
            self._result_submitted = True
        return sent

    def report_question(self, commission_id: str, question: str) -> bool:
        return self._callback(commission_id, "question", {"question": question})

    # -- plumbing -------------------------------------------------------------

    def _callback(self, commission_id: str, kind: str, body: dict[str, Any]) -> bool:
        try:
            self._request("POST", f"/commissions/{commission_id}/{kind}", json=body)
        except (CommissionError, ValueError, TypeError) as error:
            logger.warning("Failed to report %s for %s: %s", kind, commission_id, error)
            return False
        return True

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as error:
            raise DaemonUnavailable(
                f"Cannot reach daemon at {self.socket_path}: {error}",
            ) from error
        if response.is_success:
            payload = response.json()
            if not isinstance(payload, dict):
                raise TypeError(f"Expected JSON object from {method} {path}")
            return payload
        raise _error_from_response(response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DaemonClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _overrides_payload(max_turns: int | None, max_budget_usd: float | None) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if max_turns is not None:
        payload["max_turns"] = max_turns
    if max_budget_usd is not None:
        payload["max_budget_usd"] = max_budget_usd
    return payload


def _error_from_response(response: httpx.Response) -> CommissionError:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {}
    detail = payload.get("detail")
    if not isinstance(detail, str):
        detail = f"HTTP {response.status_code}: {detail or response.text}"
    error_type = payload.get("type")
    if error_type == "InvalidTransition":
        return InvalidTransition.from_message(detail)
    if error_type in _ERROR_TYPES:
        return _ERROR_TYPES[error_type](detail)
    if response.status_code == httpx.codes.NOT_FOUND:
        return NotFound(detail)
    if response.status_code == httpx.codes.CONFLICT:
        return InvalidState(detail)
    return CommissionError(detail)
