"""Top-level coordinator for workspaces, tasks and agent sessions.

All mutations of the in-memory collections run under one ``asyncio.Lock``:
caller requests, process output, process exits and the blocked sweep are
serialized through it, and every mutation is persisted before the lock is
released. Promotion of queued sessions happens inside the same critical section
as the event that freed a slot.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Protocol

from pydantic import BaseModel

from .process import LaunchError, Supervisor, session_environment
from .sessions import (
    AdmissionController,
    AppSettings,
    InvalidTransitionError,
    Session,
    SessionPhase,
    SessionStatus,
    TaskMode,
    WorkTask,
    Workspace,
    completion_status,
    extract_tool_action,
    initial_status,
    is_stalled,
    launch_status,
    phase_for_mode,
)
from .sessions.machine import accepts_exit, accepts_output
from .storage import SnapshotError, SnapshotStore
from .sweeper import Timer, TimerFactory
from .templating import build_prompt, command_bindings, render, tokenize
from .worktrees import NotARepositoryError, ProvisioningError

logger = logging.getLogger(__name__)

EntityKind = Literal["workspace", "task", "session", "settings"]
ChangeAction = Literal["created", "updated", "deleted"]

_LIVE_STATUSES = frozenset({SessionStatus.PLANNING, SessionStatus.RUNNING, SessionStatus.BLOCKED})


class UnknownEntityError(LookupError):
    """Raised when a workspace, task or session id does not exist."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind.capitalize()} '{entity_id}' not found")
        self.kind = kind
        self.entity_id = entity_id

    def __str__(self) -> str:
        return self.args[0]


class SessionLaunchError(RuntimeError):
    """Raised to the caller whose request created a session that failed to launch."""

    def __init__(self, session: Session, message: str) -> None:
        super().__init__(message)
        self.session = session


class PlanWriteError(RuntimeError):
    """Raised when an edited plan cannot be written before approval."""


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    kind: EntityKind
    action: ChangeAction
    entity_id: str | None
    snapshot: BaseModel | None


Observer = Callable[[ChangeEvent], None]


class WorktreeProvisioner(Protocol):
    async def is_valid_repository(self, repo_path: str) -> bool:
        ...

    async def create_worktree(
        self, repo_path: str, worktree_path: str, branch_name: str, base_branch: str
    ) -> None:
        ...

    async def remove_worktree(
        self, repo_path: str, worktree_path: str, *, delete_branch: bool = False
    ) -> None:
        ...


class Orchestrator:
    """Own the workspace, task and session collections and drive session lifecycles."""

    def __init__(
        self,
        *,
        store: SnapshotStore,
        supervisor: Supervisor,
        logs_dir: Path,
        provisioner: WorktreeProvisioner | None = None,
        clock: Callable[[], datetime] | None = None,
        timer_factory: TimerFactory | None = None,
        initial_settings: AppSettings | None = None,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._provisioner = provisioner
        self._logs_dir = Path(logs_dir)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._timer_factory = timer_factory
        self._timer: Timer | None = None
        self._lock = asyncio.Lock()
        self._observers: list[Observer] = []
        self._started = False
        self.last_error: str | None = None

        self._workspaces: list[Workspace] = store.load_workspaces()
        self._tasks: list[WorkTask] = store.load_tasks()
        self._sessions: list[Session] = store.load_sessions()
        stored_settings = store.load_settings()
        if stored_settings is None:
            self._settings = initial_settings or AppSettings()
            self._save("settings")
        else:
            self._settings = stored_settings

    async def start(self) -> None:
        """Reconcile persisted state, promote queued sessions and start the sweep timer."""

        async with self._lock:
            if self._started:
                return
            self._started = True
            self._reconcile_orphans_locked()
            await self._promote_queued_locked()
        if self._timer_factory is not None:
            self._timer = self._timer_factory(self.sweep_blocked)
            self._timer.start()

    async def shutdown(self, *, stop_sessions: bool = False) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not stop_sessions:
            return
        async with self._lock:
            now = self._now()
            for session in self._sessions:
                if session.status in _LIVE_STATUSES:
                    self._supervisor.stop(session.id)
                    session.status = SessionStatus.STOPPED
                    session.ended_at = now
                    self._notify("session", "updated", session.id, session)
            self._save("session")
        self._started = False

    def _reconcile_orphans_locked(self) -> None:
        now = self._now()
        orphaned = [
            session
            for session in self._sessions
            if session.status in _LIVE_STATUSES and not self._supervisor.is_alive(session.id)
        ]
        for session in orphaned:
            logger.warning(
                "Session had no live process after restart; marking stopped",
                extra={"session_id": session.id, "status": session.status.value},
            )
            session.status = SessionStatus.STOPPED
            session.ended_at = now
            self._notify("session", "updated", session.id, session)
        if orphaned:
            self._save("session")

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(
        self, kind: EntityKind, action: ChangeAction, entity_id: str | None, model: BaseModel | None
    ) -> None:
        event = ChangeEvent(
            kind=kind,
            action=action,
            entity_id=entity_id,
            snapshot=model.model_copy() if model is not None else None,
        )
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Observer failed", extra={"kind": kind, "entity_id": entity_id})

    def pop_error(self) -> str | None:
        """Return the current error message once and clear it."""

        message, self.last_error = self.last_error, None
        return message

    def _set_error(self, message: str) -> None:
        self.last_error = message

    def _save(self, kind: EntityKind) -> None:
        try:
            if kind == "workspace":
                self._store.save_workspaces(self._workspaces)
            elif kind == "task":
                self._store.save_tasks(self._tasks)
            elif kind == "session":
                self._store.save_sessions(self._sessions)
            else:
                self._store.save_settings(self._settings)
        except SnapshotError as exc:
            logger.warning("Snapshot save failed", extra={"kind": kind, "error": str(exc)})

    def _commit_session(self, session: Session, action: ChangeAction = "updated") -> None:
        self._save("session")
        self._notify("session", action, session.id, session)

    def _now(self) -> datetime:
        return self._clock()

    @property
    def settings(self) -> AppSettings:
        return self._settings.model_copy()

    @property
    def admission(self) -> AdmissionController:
        return AdmissionController(self._settings.max_concurrent_sessions)

    @property
    def active_count(self) -> int:
        return AdmissionController.active_count(self._sessions)

    def can_admit(self) -> bool:
        return self.admission.can_admit(self._sessions)

    def list_workspaces(self) -> list[Workspace]:
        return [workspace.model_copy() for workspace in self._workspaces]

    def list_tasks(self, workspace_id: str | None = None) -> list[WorkTask]:
        return [
            task.model_copy()
            for task in self._tasks
            if workspace_id is None or task.workspace_id == workspace_id
        ]

    def list_sessions(self) -> list[Session]:
        return [session.model_copy() for session in self._sessions]

    def get_workspace(self, workspace_id: str) -> Workspace:
        return self._require_workspace(workspace_id).model_copy()

    def get_task(self, task_id: str) -> WorkTask:
        return self._require_task(task_id).model_copy()

    def get_session(self, session_id: str) -> Session:
        return self._require_session(session_id).model_copy()

    def sessions_for_task(self, task_id: str) -> list[Session]:
        """Sessions of a task, most recent first."""

        sessions = [session for session in self._sessions if session.task_id == task_id]
        sessions.sort(key=lambda session: session.sort_key, reverse=True)
        return [session.model_copy() for session in sessions]

    def current_session(self, task_id: str) -> Session | None:
        sessions = self.sessions_for_task(task_id)
        return sessions[0] if sessions else None

    def read_log(self, session_id: str, *, tail: int = 500) -> str:
        session = self._require_session(session_id)
        path = Path(session.log_path)
        if not session.log_path or not path.is_file():
            return ""
        content = path.read_text(encoding="utf-8", errors="replace")
        if tail <= 0:
            return ""
        return "\n".join(content.splitlines()[-tail:])

    def read_plan(self, session_id: str) -> str | None:
        session = self._require_session(session_id)
        plan_path = session.plan_path
        if plan_path is None:
            task = self._find_task(session.task_id)
            if task is None:
                return None
            plan_path = task.plan_path
        try:
            return Path(plan_path).read_text(encoding="utf-8")
        except OSError:
            return None

    def summary(self) -> dict[str, Any]:
        status_counts: dict[str, int] = {}
        for session in self._sessions:
            status_counts[session.status.value] = status_counts.get(session.status.value, 0) + 1
        return {
            "workspaces": len(self._workspaces),
            "tasks": len(self._tasks),
            "sessions": len(self._sessions),
            "status_counts": status_counts,
            "active_sessions": self.active_count,
            "max_concurrent_sessions": self._settings.max_concurrent_sessions,
            "queued_session_ids": [
                session.id for session in self._sessions if session.status is SessionStatus.QUEUED
            ],
            "last_error": self.last_error,
        }

    def _find_workspace(self, workspace_id: str) -> Workspace | None:
        return next((item for item in self._workspaces if item.id == workspace_id), None)

    def _find_task(self, task_id: str) -> WorkTask | None:
        return next((item for item in self._tasks if item.id == task_id), None)

    def _find_session(self, session_id: str) -> Session | None:
        return next((item for item in self._sessions if item.id == session_id), None)

    def _require_workspace(self, workspace_id: str) -> Workspace:
        workspace = self._find_workspace(workspace_id)
        if workspace is None:
            raise UnknownEntityError("workspace", workspace_id)
        return workspace

    def _require_task(self, task_id: str) -> WorkTask:
        task = self._find_task(task_id)
        if task is None:
            raise UnknownEntityError("task", task_id)
        return task

    def _require_session(self, session_id: str) -> Session:
        session = self._find_session(session_id)
        if session is None:
            raise UnknownEntityError("session", session_id)
        return session

    async def update_settings(self, **changes: Any) -> AppSettings:
        unknown = sorted(set(changes) - set(AppSettings.model_fields))
        if unknown:
            raise ValueError("Unknown settings: " + ", ".join(unknown))
        async with self._lock:
            merged = {**self._settings.model_dump(), **changes}
            self._settings = AppSettings.model_validate(merged)
            self._save("settings")
            self._notify("settings", "updated", None, self._settings)
            await self._promote_queued_locked()
            return self._settings.model_copy()

    async def add_workspace(
        self,
        name: str,
        repo_path: str,
        *,
        default_base_branch: str = "main",
        worktrees_root: str | None = None,
    ) -> Workspace:
        workspace = Workspace(
            name=name,
            repo_path=repo_path,
            default_base_branch=default_base_branch,
            worktrees_root=worktrees_root or self._settings.default_worktrees_root,
        )
        if self._provisioner is not None and not await self._provisioner.is_valid_repository(
            workspace.repo_path
        ):
            error = NotARepositoryError(workspace.repo_path)
            self._set_error(str(error))
            raise error

        async with self._lock:
            self._workspaces.append(workspace)
            self._save("workspace")
            self._notify("workspace", "created", workspace.id, workspace)
        logger.info("Workspace added", extra={"workspace_id": workspace.id, "repo": workspace.repo_path})
        return workspace.model_copy()

    async def delete_workspace(self, workspace_id: str) -> None:
        """Delete a workspace and cascade to its tasks, removing their worktrees."""

        self._require_workspace(workspace_id)
        for task in [task for task in self._tasks if task.workspace_id == workspace_id]:
            await self.delete_task(task.id, remove_worktree=True, delete_branch=False)
        async with self._lock:
            workspace = self._find_workspace(workspace_id)
            if workspace is None:
                return
            self._workspaces.remove(workspace)
            self._save("workspace")
            self._notify("workspace", "deleted", workspace_id, None)
        logger.info("Workspace deleted", extra={"workspace_id": workspace_id})

    async def create_task(
        self,
        workspace_id: str,
        title: str,
        *,
        description: str = "",
        base_branch: str | None = None,
        branch_name: str | None = None,
        mode: TaskMode | str = TaskMode.PLAN_FIRST,
        agent_command_template: str | None = None,
    ) -> WorkTask:
        """Provision a worktree and register a task for it.

        Provisioning errors propagate and leave no task behind.
        """

        workspace = self._require_workspace(workspace_id)
        branch = (branch_name or "").strip() or WorkTask.suggest_branch_name(title)
        base = (base_branch or "").strip() or workspace.default_base_branch
        task = WorkTask(
            title=title,
            description=description,
            workspace_id=workspace.id,
            base_branch=base,
            branch_name=branch,
            worktree_path=os.path.join(workspace.worktrees_root, branch),
            mode=TaskMode(mode),
            agent_command_template=agent_command_template,
        )

        if self._provisioner is not None:
            try:
                await self._provisioner.create_worktree(
                    workspace.repo_path, task.worktree_path, task.branch_name, task.base_branch
                )
            except ProvisioningError as exc:
                self._set_error(str(exc))
                logger.warning(
                    "Worktree provisioning failed",
                    extra={"workspace_id": workspace.id, "branch": branch, "error": str(exc)},
                )
                raise

        async with self._lock:
            self._tasks.append(task)
            self._save("task")
            self._notify("task", "created", task.id, task)
        logger.info(
            "Task created",
            extra={"task_id": task.id, "branch": task.branch_name, "mode": task.mode.value},
        )
        return task.model_copy()

    async def delete_task(
        self,
        task_id: str,
        *,
        remove_worktree: bool = True,
        delete_branch: bool = False,
    ) -> None:
        async with self._lock:
            task = self._require_task(task_id)
            for session in self._sessions:
                if session.task_id == task_id and session.status in _LIVE_STATUSES:
                    self._supervisor.stop(session.id)
            removed = [session for session in self._sessions if session.task_id == task_id]
            self._sessions = [session for session in self._sessions if session.task_id != task_id]
            self._save("session")
            for session in removed:
                self._notify("session", "deleted", session.id, None)

            self._tasks.remove(task)
            self._save("task")
            self._notify("task", "deleted", task_id, None)
            await self._promote_queued_locked()

        if remove_worktree and self._provisioner is not None:
            workspace = self._find_workspace(task.workspace_id)
            if workspace is not None:
                try:
                    await self._provisioner.remove_worktree(
                        workspace.repo_path, task.worktree_path, delete_branch=delete_branch
                    )
                except ProvisioningError as exc:
                    logger.warning(
                        "Worktree removal failed",
                        extra={"task_id": task_id, "worktree": task.worktree_path, "error": str(exc)},
                    )
        logger.info("Task deleted", extra={"task_id": task_id, "sessions_removed": len(removed)})

    async def start_session(self, task_id: str) -> Session:
        """Start (or queue) a session for a task, phased by the task's mode."""

        async with self._lock:
            task = self._require_task(task_id)
            session = self._new_session_locked(task, phase_for_mode(task.mode))
            error = await self._admit_locked(session)
            snapshot = session.model_copy()
        if error is not None:
            raise SessionLaunchError(snapshot, error)
        return snapshot

    async def retry_session(self, session_id: str) -> Session:
        """Create a new attempt for a settled session, keeping its phase."""

        async with self._lock:
            previous = self._require_session(session_id)
            if not previous.status.is_terminal:
                raise InvalidTransitionError(previous, "retry")
            task = self._require_task(previous.task_id)
            session = self._new_session_locked(task, previous.phase, plan_path=previous.plan_path)
            error = await self._admit_locked(session)
            snapshot = session.model_copy()
        if error is not None:
            raise SessionLaunchError(snapshot, error)
        return snapshot

    async def approve_plan(self, session_id: str, plan: str | None = None) -> Session:
        """Approve a planner session and start its executor session.

        When ``plan`` is given it replaces ``PLAN.md`` before the executor launches.
        The planner session itself is left untouched.
        """

        async with self._lock:
            planner = self._require_session(session_id)
            if (
                planner.status is not SessionStatus.AWAITING_APPROVAL
                or planner.phase is not SessionPhase.PLANNER
            ):
                raise InvalidTransitionError(planner, "approve")
            task = self._require_task(planner.task_id)
            plan_path = task.plan_path
            if plan is not None:
                try:
                    Path(plan_path).write_text(plan, encoding="utf-8")
                except OSError as exc:
                    message = f"Failed to write plan to {plan_path}: {exc}"
                    self._set_error(message)
                    raise PlanWriteError(message) from exc
            session = self._new_session_locked(task, SessionPhase.EXECUTOR, plan_path=plan_path)
            error = await self._admit_locked(session)
            snapshot = session.model_copy()
        logger.info(
            "Plan approved",
            extra={"planner_session_id": session_id, "executor_session_id": snapshot.id},
        )
        if error is not None:
            raise SessionLaunchError(snapshot, error)
        return snapshot

    async def cancel_plan(self, session_id: str) -> Session:
        async with self._lock:
            session = self._require_session(session_id)
            if session.status is not SessionStatus.AWAITING_APPROVAL:
                raise InvalidTransitionError(session, "cancel")
            session.status = SessionStatus.STOPPED
            session.ended_at = self._now()
            self._commit_session(session)
            return session.model_copy()

    async def stop_session(self, session_id: str) -> Session:
        """Stop a session; settled sessions are returned unchanged."""

        async with self._lock:
            session = self._require_session(session_id)
            if session.status.is_terminal:
                return session.model_copy()
            self._supervisor.stop(session.id)
            session.status = SessionStatus.STOPPED
            session.ended_at = self._now()
            self._commit_session(session)
            logger.info("Session stopped", extra={"session_id": session.id})
            await self._promote_queued_locked()
            return session.model_copy()

    async def sweep_blocked(self, now: datetime | None = None) -> list[Session]:
        """Flag active sessions that stayed silent past the blocked timeout.

        Blocked is advisory: the process keeps running.
        """

        async with self._lock:
            now = now or self._now()
            timeout = timedelta(minutes=self._settings.blocked_timeout_minutes)
            flagged: list[Session] = []
            for session in self._sessions:
                if is_stalled(session, now=now, timeout=timeout) and self._supervisor.is_alive(
                    session.id
                ):
                    session.status = SessionStatus.BLOCKED
                    flagged.append(session)
            if flagged:
                self._save("session")
                for session in flagged:
                    self._notify("session", "updated", session.id, session)
                    logger.warning(
                        "Session flagged as blocked",
                        extra={"session_id": session.id, "task_id": session.task_id},
                    )
                # Blocked sessions no longer hold a slot.
                await self._promote_queued_locked()
            return [session.model_copy() for session in flagged]

    def _new_session_locked(
        self, task: WorkTask, phase: SessionPhase, *, plan_path: str | None = None
    ) -> Session:
        session = Session(task_id=task.id, phase=phase, created_at=self._now())
        session.log_path = str(self._logs_dir / task.id / f"{session.id}.log")
        if plan_path is not None:
            session.plan_path = plan_path
        elif phase is SessionPhase.PLANNER:
            session.plan_path = task.plan_path
        return session

    async def _admit_locked(self, session: Session) -> str | None:
        admitted = self.can_admit()
        session.status = initial_status(session.phase, admitted=admitted)
        self._sessions.append(session)
        self._commit_session(session, "created")
        logger.info(
            "Session created",
            extra={
                "session_id": session.id,
                "task_id": session.task_id,
                "phase": session.phase.value,
                "admitted": admitted,
            },
        )
        if not admitted:
            return None
        return await self._launch_locked(session)

    async def _launch_locked(self, session: Session) -> str | None:
        task = self._find_task(session.task_id)
        if task is None:
            message = f"Task '{session.task_id}' no longer exists"
            self._fail_launch(session, message)
            return message

        settings = self._settings
        command_template = task.agent_command_template or settings.agent_command_template
        prompt_template = (
            settings.planner_prompt_template
            if session.phase is SessionPhase.PLANNER
            else settings.executor_prompt_template
        )
        try:
            Path(task.prompt_path).write_text(build_prompt(prompt_template, task), encoding="utf-8")
        except OSError as exc:
            logger.warning(
                "Failed to write prompt file",
                extra={"session_id": session.id, "path": task.prompt_path, "error": str(exc)},
            )

        bindings = command_bindings(
            worktree=task.worktree_path,
            prompt_file=task.prompt_path,
            phase=session.phase,
            non_interactive_flag=settings.non_interactive_flag,
        )
        argv = tokenize(render(command_template, bindings))

        now = self._now()
        session.status = launch_status(session.phase)
        session.started_at = now
        session.last_activity_at = now
        try:
            handle = await self._supervisor.launch(
                session.id,
                argv,
                cwd=task.worktree_path,
                env=session_environment(
                    session_id=session.id,
                    task_id=task.id,
                    phase=session.phase.value,
                    worktree=task.worktree_path,
                ),
                log_path=Path(session.log_path),
                on_output=self._handle_output,
                on_exit=self._handle_exit,
            )
        except LaunchError as exc:
            message = f"Failed to start session: {exc}"
            self._fail_launch(session, message)
            return message

        session.pid = handle.pid
        self._commit_session(session)
        logger.info(
            "Session launched",
            extra={"session_id": session.id, "pid": handle.pid, "status": session.status.value},
        )
        return None

    def _fail_launch(self, session: Session, message: str) -> None:
        session.status = SessionStatus.FAILED
        session.ended_at = self._now()
        session.exit_code = None
        session.pid = None
        self._set_error(message)
        self._commit_session(session)
        logger.error("Session launch failed", extra={"session_id": session.id, "error": message})

    async def _promote_queued_locked(self) -> None:
        admission = self.admission
        while admission.can_admit(self._sessions):
            queued = admission.next_queued(self._sessions)
            if queued is None:
                return
            logger.info("Promoting queued session", extra={"session_id": queued.id})
            await self._launch_locked(queued)

    async def _handle_output(self, session_id: str, text: str) -> None:
        async with self._lock:
            session = self._find_session(session_id)
            if session is None or not accepts_output(session):
                return
            session.last_activity_at = self._now()
            action = extract_tool_action(text)
            if action:
                session.last_tool_action = action
            self._commit_session(session)

    async def _handle_exit(self, session_id: str, exit_code: int) -> None:
        async with self._lock:
            session = self._find_session(session_id)
            if session is None or not accepts_exit(session):
                logger.debug(
                    "Ignoring exit for settled or unknown session",
                    extra={"session_id": session_id, "exit_code": exit_code},
                )
                return
            session.status = completion_status(session.phase, exit_code)
            session.exit_code = exit_code
            session.ended_at = self._now()
            self._commit_session(session)
            logger.info(
                "Session finished",
                extra={
                    "session_id": session.id,
                    "exit_code": exit_code,
                    "status": session.status.value,
                },
            )
            if (
                session.status is SessionStatus.AWAITING_APPROVAL
                and session.plan_path
                and not os.path.isfile(session.plan_path)
            ):
                logger.warning(
                    "Planner exited without writing a plan",
                    extra={"session_id": session.id, "plan_path": session.plan_path},
                )
            await self._promote_queued_locked()


__all__ = [
    "ChangeEvent",
    "Observer",
    "Orchestrator",
    "PlanWriteError",
    "SessionLaunchError",
    "UnknownEntityError",
    "WorktreeProvisioner",
]
