"""Worker process handles and the default subprocess spawner."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import Protocol

from guildhall.commission.models import WorkerExit

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = "python -m guildhall.commission.echo_worker --config {config_path}"
_OUTPUT_LOG_LIMIT = 4_000


class KillSeverity(str, Enum):
    """How hard to ask a worker process to stop."""

    GRACEFUL = "graceful"
    FORCED = "forced"

    @property
    def signal(self) -> signal.Signals:
        return signal.SIGTERM if self is KillSeverity.GRACEFUL else signal.SIGKILL


class WorkerProcess(Protocol):
    """Handle to a spawned worker process."""

    @property
    def pid(self) -> int: ...

    async def wait(self) -> WorkerExit: ...

    def kill(self, severity: KillSeverity) -> None: ...


SpawnFn = Callable[[Path], Awaitable[WorkerProcess]]
ProbePidFn = Callable[[int], bool]


class SpawnError(RuntimeError):
    """Raised when the worker command cannot be rendered or started."""


def pid_alive(pid: int) -> bool:
    """Probe process liveness with signal 0."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def exit_from_returncode(returncode: int) -> WorkerExit:
    """Map an asyncio returncode to a WorkerExit.

    A negative returncode means the process was killed by a signal; it is
    reported with the shell convention ``128 + signum``.
    """

    if returncode >= 0:
        return WorkerExit(exit_code=returncode)
    signum = -returncode
    try:
        signal_name = signal.Signals(signum).name
    except ValueError:
        signal_name = f"SIG{signum}"
    return WorkerExit(exit_code=128 + signum, signal_name=signal_name)


def build_worker_args(command_template: str, config_path: Path) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("Worker command template is empty.")
    if "{config_path}" not in stripped:
        raise SpawnError("Worker command template must include {config_path}.")
    try:
        rendered = stripped.format(config_path=shlex.quote(str(config_path)))
    except (KeyError, IndexError) as error:
        raise SpawnError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError("Worker command template rendered empty command.")
    return argv


class SubprocessWorker:
    """WorkerProcess backed by an ``asyncio.subprocess.Process``."""

    def __init__(self, process: asyncio.subprocess.Process, *, label: str) -> None:
        self._process = process
        self._label = label

    @property
    def pid(self) -> int:
        return self._process.pid

    async def wait(self) -> WorkerExit:
        stdout, stderr = await self._process.communicate()
        returncode = self._process.returncode
        if returncode is None:  # pragma: no cover
            returncode = await self._process.wait()
        _log_output(self._label, "stdout", stdout)
        _log_output(self._label, "stderr", stderr)
        return exit_from_returncode(returncode)

    def kill(self, severity: KillSeverity) -> None:
        try:
            self._process.send_signal(severity.signal)
        except ProcessLookupError:
            logger.debug("Worker %s (pid %s) already exited", self._label, self.pid)


class SubprocessSpawner:
    """Spawn worker processes from a command template with a ``{config_path}`` placeholder."""

    def __init__(self, command_template: str = DEFAULT_WORKER_COMMAND) -> None:
        self.command_template = command_template

    async def __call__(self, config_path: Path) -> WorkerProcess:
        argv = build_worker_args(self.command_template, config_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(config_path.parent),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise SpawnError(f"Worker command not found: {argv[0]}") from error
        except OSError as error:
            raise SpawnError(f"Worker process failed to start: {error}") from error
        logger.info("Spawned worker %s (pid %s)", argv[0], process.pid)
        return SubprocessWorker(process, label=config_path.parent.name)


def _log_output(label: str, stream: str, payload: bytes | None) -> None:
    if not payload:
        return
    text = payload.decode("utf-8", errors="replace").strip()
    if not text:
        return
    if len(text) > _OUTPUT_LOG_LIMIT:
        text = text[-_OUTPUT_LOG_LIMIT:]
    logger.info("Worker %s %s:\n%s", label, stream, text)
