"""Commission session engine.

Owns the active commission registry and every path that mutates it:

* dispatch / redispatch spawn a worker and register it,
* the exit watcher resolves the final status when the process ends,
* the heartbeat monitor fails entries whose worker went quiet,
* cancel finalizes immediately and schedules a forced kill,
* report handlers record progress, results and questions from the worker.

Everything runs on one asyncio loop. Finalizers claim an entry (terminal
status mirror, removed from the registry) before doing any persistence, so
whichever finalizer gets there first wins and the others do nothing.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from guildhall.commission.artifacts import CommissionArtifactStore, utc_now
from guildhall.commission.contracts import (
    WORKER_CONFIG_FILENAME,
    CommissionWorkerConfig,
    WorkerResourceOverrides,
    write_json,
    write_worker_config,
)
from guildhall.commission.errors import (
    InvalidState,
    NotFound,
    PersistenceFailure,
    SpawnFailure,
)
from guildhall.commission.events import (
    CommissionProgressEvent,
    CommissionQuestionEvent,
    CommissionResultEvent,
    CommissionStatusEvent,
    EventBus,
)
from guildhall.commission.models import (
    SUPERVISED_STATUSES,
    CommissionStatus,
    CommissionUpdate,
    ResourceOverrides,
    WorkerExit,
)
from guildhall.commission.packages import (
    DiscoveredPackage,
    discover_packages,
    get_worker_by_identity,
    get_worker_by_name,
)
from guildhall.commission.registry import ActiveCommission, ActiveCommissionRegistry
from guildhall.commission.spawn import (
    KillSeverity,
    ProbePidFn,
    SpawnFn,
    SubprocessSpawner,
    pid_alive,
)
from guildhall.commission.status import (
    reset_for_redispatch,
    transition_commission,
    validate_transition,
)
from guildhall.config import ProjectConfig, Settings, read_app_config

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30.0
DEFAULT_STALENESS_THRESHOLD_SECONDS = 180.0
DEFAULT_CANCEL_GRACE_SECONDS = 30.0
WORKDIR_PREFIX = "gh-commission-"

_LOG_PREVIEW_CHARS = 120


@dataclass(slots=True, frozen=True)
class RegisteredWorker:
    """Worker name matched a discovered package."""

    package_name: str


@dataclass(slots=True, frozen=True)
class UnregisteredWorker:
    """No package matched; the bare worker name is handed to the worker process."""

    bare_name: str


ResolvedWorker = RegisteredWorker | UnregisteredWorker


def resolve_worker(packages: Iterable[DiscoveredPackage], worker_name: str) -> ResolvedWorker:
    package = get_worker_by_identity(packages, worker_name)
    if package is None:
        return UnregisteredWorker(bare_name=worker_name)
    return RegisteredWorker(package_name=package.name)


def worker_package_name(resolved: ResolvedWorker) -> str:
    if isinstance(resolved, RegisteredWorker):
        return resolved.package_name
    return resolved.bare_name


def format_commission_id(worker_name: str, now: datetime) -> str:
    """Build ``commission-<worker>-YYYYMMDD-HHMMSS`` from a local timestamp."""

    return f"commission-{worker_name}-{now:%Y%m%d-%H%M%S}"


def classify_exit(result_submitted: bool, worker_exit: WorkerExit) -> tuple[CommissionStatus, str]:
    """Map (result submitted, exit code) to the final status and reason."""

    code = worker_exit.exit_code
    if result_submitted:
        if code == 0:
            return CommissionStatus.COMPLETED, "Worker completed successfully"
        return (
            CommissionStatus.COMPLETED,
            f"Worker crashed (exit code {code}) but result was submitted",
        )
    if code == 0:
        return CommissionStatus.FAILED, "Worker completed without submitting a result"
    reason = f"Worker crashed with exit code {code}"
    if worker_exit.signal_name:
        reason = f"{reason} ({worker_exit.signal_name})"
    return CommissionStatus.FAILED, reason


class CommissionSession:
    """Dispatches commissions to worker processes and supervises them."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        projects: Iterable[ProjectConfig],
        packages: Iterable[DiscoveredPackage],
        home: Path,
        packages_dir: Path,
        spawn_fn: SpawnFn,
        event_bus: EventBus | None = None,
        store: CommissionArtifactStore | None = None,
        probe_pid: ProbePidFn = pid_alive,
        clock: Callable[[], datetime] = utc_now,
        heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        staleness_threshold_seconds: float = DEFAULT_STALENESS_THRESHOLD_SECONDS,
        cancel_grace_seconds: float = DEFAULT_CANCEL_GRACE_SECONDS,
        workdir_root: Path | None = None,
    ) -> None:
        self._projects = list(projects)
        self._packages = list(packages)
        self._home = home
        self._packages_dir = packages_dir
        self._spawn_fn = spawn_fn
        self.event_bus = event_bus or EventBus()
        self.store = store or CommissionArtifactStore(clock=clock)
        self._probe_pid = probe_pid
        self._clock = clock
        self._heartbeat_interval = heartbeat_interval_seconds
        self._staleness_threshold = staleness_threshold_seconds
        self._cancel_grace = cancel_grace_seconds
        self._workdir_root = workdir_root
        self._registry = ActiveCommissionRegistry()
        self._grace_timers: set[asyncio.TimerHandle] = set()
        self._exit_tasks: set[asyncio.Task[None]] = set()
        self._heartbeat_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        event_bus: EventBus | None = None,
        spawn_fn: SpawnFn | None = None,
    ) -> CommissionSession:
        """Build a session from settings, ``config.yaml`` and the packages directory."""

        app_config = read_app_config(settings.config_path)
        packages_dir = settings.resolved_packages_dir
        packages = discover_packages([packages_dir])
        logger.info(
            "Loaded %d project(s) and %d package(s) from %s",
            len(app_config.projects),
            len(packages),
            settings.home,
        )
        return cls(
            projects=app_config.projects,
            packages=packages,
            home=settings.home,
            packages_dir=packages_dir,
            spawn_fn=spawn_fn or SubprocessSpawner(settings.commission.worker_command),
            event_bus=event_bus,
            heartbeat_interval_seconds=settings.commission.heartbeat_interval_seconds,
            staleness_threshold_seconds=settings.commission.staleness_threshold_seconds,
            cancel_grace_seconds=settings.commission.cancel_grace_seconds,
        )

    # -- queries --------------------------------------------------------------

    @property
    def packages(self) -> list[DiscoveredPackage]:
        return list(self._packages)

    def active_count(self) -> int:
        return len(self._registry)

    def active(self, commission_id: str) -> ActiveCommission | None:
        return self._registry.get(commission_id)

    @property
    def socket_path(self) -> Path:
        return self._home / "guild-hall.sock"

    def state_path(self, commission_id: str) -> Path:
        return self._home / "state" / "commissions" / f"{commission_id}.json"

    # -- create / update ------------------------------------------------------

    def create_commission(  # noqa: PLR0913
        self,
        project_name: str,
        title: str,
        worker_name: str,
        prompt: str,
        dependencies: Iterable[str] = (),
        resource_overrides: ResourceOverrides | None = None,
    ) -> str:
        """Persist a new pending commission and return its id."""

        project = self._find_project(project_name)
        if project is None:
            raise NotFound(f'Project "{project_name}" not found')
        package = get_worker_by_name(self._packages, worker_name)
        if package is None or package.identity is None:
            raise NotFound(f'Worker "{worker_name}" not found in discovered packages')

        identity = package.identity
        commission_id = format_commission_id(identity.name, self._clock().astimezone())
        if self.store.exists(project.path, commission_id):
            raise InvalidState(f'Commission "{commission_id}" already exists')
        try:
            self.store.create(
                project.path,
                commission_id,
                title=title,
                worker=identity.name,
                worker_display_title=identity.display_title,
                prompt=prompt,
                project_name=project.name,
                dependencies=dependencies,
                resource_overrides=resource_overrides,
            )
        except OSError as error:
            raise PersistenceFailure(
                f'Failed to write commission "{commission_id}": {error}',
            ) from error
        logger.info(
            'Created commission "%s" for project "%s" (worker: %s)',
            commission_id,
            project.name,
            worker_name,
        )
        return commission_id

    def update_commission(self, commission_id: str, update: CommissionUpdate) -> None:
        """Change prompt, dependencies or resource overrides of a pending commission."""

        project = self._locate(commission_id)
        status = self._read_status(project, commission_id)
        if status is not CommissionStatus.PENDING:
            raise InvalidState(
                f'Cannot update commission "{commission_id}": '
                f'status is "{status.value}", must be "pending"',
                current=status.value,
            )
        try:
            self.store.update_fields(project.path, commission_id, update)
        except (OSError, ValueError, TypeError) as error:
            raise PersistenceFailure(
                f'Failed to update commission "{commission_id}": {error}',
            ) from error

    # -- dispatch -------------------------------------------------------------

    async def dispatch(self, commission_id: str) -> None:
        """Spawn a worker for a pending commission.

        Returns once the worker is running and the commission is
        ``in_progress``; it never waits for the worker to finish.
        """

        project = self._locate(commission_id)
        if commission_id in self._registry:
            raise InvalidState(
                f'Cannot dispatch commission "{commission_id}": it already has an active worker',
            )
        status = self._read_status(project, commission_id)
        if status is not CommissionStatus.PENDING:
            raise InvalidState(
                f'Cannot dispatch commission "{commission_id}": '
                f'status is "{status.value}", must be "pending"',
                current=status.value,
            )

        transition_commission(
            self.store,
            project.path,
            commission_id,
            CommissionStatus.PENDING,
            CommissionStatus.DISPATCHED,
            "Commission dispatched to worker",
        )

        working_directory: Path | None = None
        try:
            working_directory = Path(
                tempfile.mkdtemp(
                    prefix=WORKDIR_PREFIX,
                    dir=str(self._workdir_root) if self._workdir_root else None,
                ),
            )
            record = self.store.read_record(project.path, commission_id)
            resolved = resolve_worker(self._packages, record.worker)
            if isinstance(resolved, UnregisteredWorker):
                logger.warning(
                    'No worker package matches "%s" for commission "%s"; '
                    "falling back to the bare worker name",
                    resolved.bare_name,
                    commission_id,
                )
            config_path = working_directory / WORKER_CONFIG_FILENAME
            write_worker_config(
                config_path,
                CommissionWorkerConfig(
                    commission_id=commission_id,
                    project_name=project.name,
                    project_path=str(project.path),
                    worker_package_name=worker_package_name(resolved),
                    prompt=record.prompt,
                    working_directory=str(working_directory),
                    daemon_socket_path=str(self.socket_path),
                    packages_dir=str(self._packages_dir),
                    guild_hall_home=str(self._home),
                    dependencies=list(record.dependencies),
                    resource_overrides=_worker_overrides(record.resource_overrides),
                ),
            )
        except (OSError, ValueError, TypeError) as error:
            reason = f"Dispatch preparation failed: {error}"
            self._abort_dispatch(project, commission_id, working_directory, reason)
            raise PersistenceFailure(
                f'Failed to prepare commission "{commission_id}" for dispatch: {error}',
            ) from error
        self._write_snapshot(
            commission_id,
            {
                "project_name": project.name,
                "worker_name": record.worker,
                "status": CommissionStatus.DISPATCHED.value,
                "working_directory": str(working_directory),
                "config_path": str(config_path),
            },
        )

        logger.info(
            'Dispatching "%s" -> worker="%s", config="%s"',
            commission_id,
            record.worker,
            config_path,
        )
        try:
            process = await self._spawn_fn(config_path)
        except Exception as error:  # noqa: BLE001
            reason = f"Worker spawn failed: {error}"
            self._abort_dispatch(project, commission_id, working_directory, reason)
            raise SpawnFailure(
                f'Failed to spawn worker for commission "{commission_id}": {error}',
            ) from error

        now = self._clock()
        entry = ActiveCommission(
            commission_id=commission_id,
            project_name=project.name,
            worker_name=record.worker,
            pid=process.pid,
            start_time=now,
            last_heartbeat=now,
            status=CommissionStatus.DISPATCHED,
            working_directory=working_directory,
            config_path=config_path,
            process=process,
        )
        self._registry.add(entry)
        logger.info('Spawned "%s" pid=%s', commission_id, process.pid)
        self._write_entry_snapshot(
            entry,
            {
                "pid": process.pid,
                "status": CommissionStatus.DISPATCHED.value,
                "working_directory": str(working_directory),
                "config_path": str(config_path),
            },
        )

        try:
            transition_commission(
                self.store,
                project.path,
                commission_id,
                CommissionStatus.DISPATCHED,
                CommissionStatus.IN_PROGRESS,
                "Worker process started",
            )
        except PersistenceFailure:
            self._kill_quietly(entry, KillSeverity.FORCED)
            self._registry.pop(commission_id)
            self._abort_dispatch(
                project,
                commission_id,
                working_directory,
                "Failed to record worker start",
            )
            raise
        entry.status = CommissionStatus.IN_PROGRESS

        self.event_bus.emit(
            CommissionStatusEvent(
                commission_id=commission_id,
                status=CommissionStatus.IN_PROGRESS.value,
                reason="Worker process started",
            ),
        )

        task = asyncio.create_task(self._watch_exit(entry))
        entry.exit_task = task
        self._exit_tasks.add(task)
        task.add_done_callback(self._exit_tasks.discard)

    async def redispatch(self, commission_id: str) -> None:
        """Reset a failed or cancelled commission to pending and dispatch it again."""

        project = self._locate(commission_id)
        status = self._read_status(project, commission_id)
        logger.info('Redispatching "%s" (was %s)', commission_id, status.value)
        reset_for_redispatch(self.store, project.path, commission_id, status)
        await self.dispatch(commission_id)

    # -- exit resolver --------------------------------------------------------

    def handle_exit(self, commission_id: str, worker_exit: WorkerExit) -> None:
        """Resolve the final status of the active commission ``commission_id``."""

        entry = self._registry.get(commission_id)
        if entry is None:
            logger.warning(
                'Exit (code %s) for unknown commission "%s"; it was already finalized',
                worker_exit.exit_code,
                commission_id,
            )
            return
        self._resolve_exit(entry, worker_exit)

    async def _watch_exit(self, entry: ActiveCommission) -> None:
        try:
            worker_exit = await entry.process.wait()
        except Exception as error:  # noqa: BLE001
            self._clear_grace_timer(entry)
            self._fail_active(entry, f"Exit notification failed: {error}")
            return
        self._clear_grace_timer(entry)
        self._resolve_exit(entry, worker_exit)

    def _resolve_exit(self, entry: ActiveCommission, worker_exit: WorkerExit) -> None:
        commission_id = entry.commission_id
        final_status, reason = classify_exit(entry.result_submitted, worker_exit)
        previous = self._claim(entry, final_status)
        if previous is None:
            logger.debug(
                'Ignoring exit (code %s) of "%s": already finalized',
                worker_exit.exit_code,
                commission_id,
            )
            return

        if final_status is CommissionStatus.COMPLETED and worker_exit.exit_code != 0:
            logger.warning(
                '"%s" completed with anomaly (exit code %s, but result was submitted)',
                commission_id,
                worker_exit.exit_code,
            )
        elif final_status is CommissionStatus.COMPLETED:
            logger.info('"%s" completed (clean exit, result submitted)', commission_id)
        else:
            logger.error('"%s" failed: %s', commission_id, reason)

        project = self._find_project(entry.project_name)
        if project is None:
            logger.error(
                'Cannot find project "%s" for commission "%s"; artifact status not updated',
                entry.project_name,
                commission_id,
            )
        else:
            try:
                transition_commission(
                    self.store,
                    project.path,
                    commission_id,
                    previous,
                    final_status,
                    reason,
                )
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Failed to transition %s to %s",
                    commission_id,
                    final_status.value,
                )
            if final_status is CommissionStatus.COMPLETED and entry.result_summary:
                try:
                    self.store.update_result_summary(
                        project.path,
                        commission_id,
                        entry.result_summary,
                        entry.result_artifacts,
                    )
                except Exception:  # noqa: BLE001
                    logger.exception("Failed to update result summary of %s", commission_id)

        self.event_bus.emit(
            CommissionStatusEvent(
                commission_id=commission_id,
                status=final_status.value,
                reason=reason,
            ),
        )
        self._remove_workdir(entry.working_directory)
        self._write_entry_snapshot(
            entry,
            {
                "status": final_status.value,
                "exit_code": worker_exit.exit_code,
                "signal": worker_exit.signal_name,
                "result_submitted": entry.result_submitted,
            },
        )

    # -- heartbeat monitor ----------------------------------------------------

    def start(self) -> None:
        """Start the recurring heartbeat scan on the running loop."""

        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                self.check_heartbeats()
            except Exception:  # noqa: BLE001
                logger.exception("Heartbeat scan failed")

    def check_heartbeats(self) -> list[str]:
        """Fail supervised entries whose last heartbeat is older than the threshold.

        Returns the ids that were failed.
        """

        now = self._clock()
        failed: list[str] = []
        for commission_id, entry in self._registry.items():
            if entry.status not in SUPERVISED_STATUSES:
                continue
            silence = (now - entry.last_heartbeat).total_seconds()
            if silence <= self._staleness_threshold:
                continue
            if self._probe_pid(entry.pid):
                reason = "Worker process unresponsive (heartbeat stale)"
                self._kill_quietly(entry, KillSeverity.FORCED)
            else:
                reason = "Worker process lost (no longer running)"
            logger.warning(
                '"%s" heartbeat stale for %.0fs (pid %s): %s',
                commission_id,
                silence,
                entry.pid,
                reason,
            )
            if self._fail_active(entry, reason):
                failed.append(commission_id)
        return failed

    # -- cancellation ---------------------------------------------------------

    def cancel(self, commission_id: str) -> None:
        """Cancel an active commission.

        The status flips to ``cancelled`` within this call. The worker gets a
        graceful signal now and a forced one after the grace window unless it
        exits first.
        """

        entry = self._registry.get(commission_id)
        if entry is None:
            raise NotFound(f'Commission "{commission_id}" not found in active commissions')
        validate_transition(entry.status, CommissionStatus.CANCELLED)

        logger.info(
            'Cancelling "%s" pid=%s (SIGTERM, %.0fs grace)',
            commission_id,
            entry.pid,
            self._cancel_grace,
        )
        self._kill_quietly(entry, KillSeverity.GRACEFUL)
        self._schedule_forced_kill(entry)

        project = self._find_project(entry.project_name)
        if project is not None:
            transition_commission(
                self.store,
                project.path,
                commission_id,
                entry.status,
                CommissionStatus.CANCELLED,
                "Commission cancelled by user",
            )
        previous = self._claim(entry, CommissionStatus.CANCELLED)
        if previous is None:  # pragma: no cover
            return

        self.event_bus.emit(
            CommissionStatusEvent(
                commission_id=commission_id,
                status=CommissionStatus.CANCELLED.value,
                reason="Commission cancelled by user",
            ),
        )
        self._remove_workdir(entry.working_directory)
        self._write_entry_snapshot(entry, {"status": CommissionStatus.CANCELLED.value})

    def _schedule_forced_kill(self, entry: ActiveCommission) -> None:
        loop = asyncio.get_running_loop()

        def force_kill() -> None:
            self._grace_timers.discard(handle)
            entry.grace_timer = None
            logger.info('Grace window elapsed for "%s"; sending SIGKILL', entry.commission_id)
            self._kill_quietly(entry, KillSeverity.FORCED)

        handle = loop.call_later(self._cancel_grace, force_kill)
        self._grace_timers.add(handle)
        entry.grace_timer = handle

    def _clear_grace_timer(self, entry: ActiveCommission) -> None:
        if entry.grace_timer is None:
            return
        entry.grace_timer.cancel()
        self._grace_timers.discard(entry.grace_timer)
        entry.grace_timer = None

    # -- report handlers ------------------------------------------------------

    def report_progress(self, commission_id: str, summary: str) -> None:
        entry = self._registry.get(commission_id)
        if entry is None:
            logger.warning(
                'Progress for unknown commission "%s": %s',
                commission_id,
                summary[:_LOG_PREVIEW_CHARS],
            )
            return
        entry.last_heartbeat = self._clock()
        logger.info('"%s" progress: %s', commission_id, summary[:_LOG_PREVIEW_CHARS])

        project = self._find_project(entry.project_name)
        if project is not None:
            try:
                self.store.update_current_progress(project.path, commission_id, summary)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to update progress of %s", commission_id)

        self.event_bus.emit(CommissionProgressEvent(commission_id=commission_id, summary=summary))

    def report_result(
        self,
        commission_id: str,
        summary: str,
        artifacts: Iterable[str] | None = None,
    ) -> None:
        entry = self._registry.get(commission_id)
        if entry is None:
            logger.error(
                'Result for unknown commission "%s" lost: %s',
                commission_id,
                summary[:_LOG_PREVIEW_CHARS],
            )
            return
        artifact_list = list(artifacts or ())
        entry.result_submitted = True
        entry.result_summary = summary
        entry.result_artifacts = artifact_list
        entry.last_heartbeat = self._clock()
        logger.info(
            '"%s" result submitted (%d artifacts): %s',
            commission_id,
            len(artifact_list),
            summary[:_LOG_PREVIEW_CHARS],
        )
        self.event_bus.emit(
            CommissionResultEvent(
                commission_id=commission_id,
                summary=summary,
                artifacts=artifact_list,
            ),
        )

    def report_question(self, commission_id: str, question: str) -> None:
        entry = self._registry.get(commission_id)
        if entry is None:
            logger.warning(
                'Question for unknown commission "%s": %s',
                commission_id,
                question[:_LOG_PREVIEW_CHARS],
            )
            return
        entry.last_heartbeat = self._clock()
        logger.info('"%s" question: %s', commission_id, question[:_LOG_PREVIEW_CHARS])
        self.event_bus.emit(
            CommissionQuestionEvent(commission_id=commission_id, question=question),
        )

    def add_user_note(self, commission_id: str, content: str) -> None:
        project = self._locate(commission_id)
        try:
            self.store.append_timeline_entry(project.path, commission_id, "user_note", content)
        except (OSError, ValueError, TypeError) as error:
            raise PersistenceFailure(
                f'Failed to add note to commission "{commission_id}": {error}',
            ) from error

    # -- shutdown -------------------------------------------------------------

    def shutdown(self) -> None:
        """Release the heartbeat task, grace timers and exit watchers."""

        self.stop()
        for handle in list(self._grace_timers):
            handle.cancel()
        self._grace_timers.clear()
        for _, entry in self._registry.items():
            entry.grace_timer = None
        for task in list(self._exit_tasks):
            task.cancel()
        self._exit_tasks.clear()

    # -- internals ------------------------------------------------------------

    def _find_project(self, project_name: str) -> ProjectConfig | None:
        for project in self._projects:
            if project.name == project_name:
                return project
        return None

    def _locate(self, commission_id: str) -> ProjectConfig:
        for project in self._projects:
            if self.store.exists(project.path, commission_id):
                return project
        raise NotFound(f'Commission "{commission_id}" not found in any project')

    def _read_status(self, project: ProjectConfig, commission_id: str) -> CommissionStatus:
        try:
            status = self.store.read_status(project.path, commission_id)
        except (OSError, ValueError, TypeError) as error:
            raise InvalidState(
                f'Cannot read status from commission "{commission_id}" artifact: {error}',
            ) from error
        if status is None:
            raise InvalidState(
                f'Cannot read status from commission "{commission_id}" artifact. '
                "The file may be corrupted.",
            )
        return status

    def _claim(
        self,
        entry: ActiveCommission,
        final_status: CommissionStatus,
    ) -> CommissionStatus | None:
        """Mark ``entry`` finalized. Returns its previous status, or None if already claimed."""

        if self._registry.get(entry.commission_id) is not entry or entry.status.is_terminal:
            return None
        previous = entry.status
        entry.status = final_status
        self._registry.pop(entry.commission_id)
        return previous

    def _fail_active(self, entry: ActiveCommission, reason: str) -> bool:
        previous = self._claim(entry, CommissionStatus.FAILED)
        if previous is None:
            return False
        project = self._find_project(entry.project_name)
        if project is None:
            logger.error(
                'Cannot find project "%s" for commission "%s"; artifact status not updated',
                entry.project_name,
                entry.commission_id,
            )
        else:
            try:
                transition_commission(
                    self.store,
                    project.path,
                    entry.commission_id,
                    previous,
                    CommissionStatus.FAILED,
                    reason,
                )
            except Exception:  # noqa: BLE001
                logger.exception("Failed to transition %s to failed", entry.commission_id)
        self.event_bus.emit(
            CommissionStatusEvent(
                commission_id=entry.commission_id,
                status=CommissionStatus.FAILED.value,
                reason=reason,
            ),
        )
        self._remove_workdir(entry.working_directory)
        self._write_entry_snapshot(
            entry,
            {"status": CommissionStatus.FAILED.value, "reason": reason},
        )
        return True

    def _abort_dispatch(
        self,
        project: ProjectConfig,
        commission_id: str,
        working_directory: Path | None,
        reason: str,
    ) -> None:
        logger.error('Dispatch of "%s" aborted: %s', commission_id, reason)
        try:
            transition_commission(
                self.store,
                project.path,
                commission_id,
                CommissionStatus.DISPATCHED,
                CommissionStatus.FAILED,
                reason,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to transition %s to failed", commission_id)
        if working_directory is not None:
            self._remove_workdir(working_directory)
        self.event_bus.emit(
            CommissionStatusEvent(
                commission_id=commission_id,
                status=CommissionStatus.FAILED.value,
                reason=reason,
            ),
        )
        self._write_snapshot(
            commission_id,
            {"project_name": project.name, "status": "failed", "reason": reason},
        )

    def _kill_quietly(self, entry: ActiveCommission, severity: KillSeverity) -> None:
        try:
            entry.process.kill(severity)
        except Exception:  # noqa: BLE001
            logger.debug(
                "Kill (%s) of pid %s failed",
                severity.value,
                entry.pid,
                exc_info=True,
            )

    def _remove_workdir(self, working_directory: Path) -> None:
        try:
            shutil.rmtree(working_directory)
        except FileNotFoundError:
            return
        except OSError as error:
            logger.warning(
                "Failed to clean up working directory %s: %s",
                working_directory,
                error,
            )

    def _write_snapshot(self, commission_id: str, fields: dict[str, Any]) -> None:
        """Write the crash-visibility state file. Failures are logged, never raised."""

        try:
            write_json(self.state_path(commission_id), {"commission_id": commission_id, **fields})
        except Exception:  # noqa: BLE001
            logger.exception("Failed to write state file for %s", commission_id)

    def _write_entry_snapshot(self, entry: ActiveCommission, fields: dict[str, Any]) -> None:
        self._write_snapshot(
            entry.commission_id,
            {
                "project_name": entry.project_name,
                "worker_name": entry.worker_name,
                **fields,
            },
        )


def _worker_overrides(overrides: ResourceOverrides) -> WorkerResourceOverrides | None:
    if overrides.is_empty():
        return None
    return WorkerResourceOverrides(
        max_turns=overrides.max_turns,
        max_budget_usd=overrides.max_budget_usd,
    )
