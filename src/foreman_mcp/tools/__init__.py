"""Tool registration for Foreman MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP
from pydantic import BaseModel

from ..orchestrator import Orchestrator, SessionLaunchError
from ..sessions import Session, WorkTask

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_workspace: Any
    list_workspaces: Any
    delete_workspace: Any
    create_task: Any
    list_tasks: Any
    delete_task: Any
    start_session: Any
    stop_session: Any
    approve_plan: Any
    cancel_plan: Any
    retry_session: Any
    task_sessions: Any
    read_session_log: Any
    read_plan: Any
    get_settings: Any
    update_settings: Any


def _plain(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


def _session_payload(session: Session, *, error: str | None = None) -> dict[str, Any]:
    payload = _plain(session)
    if error is not None:
        payload["error"] = error
    return payload


def register_tools(server: FastMCP, *, orchestrator: Orchestrator) -> ToolHandles:
    """Register Foreman's MCP tools on the server."""

    def _task_summary(task: WorkTask) -> dict[str, Any]:
        payload = _plain(task)
        current = orchestrator.current_session(task.id)
        payload["current_session"] = _plain(current) if current is not None else None
        return payload

    async def _launch(operation, entity_id: str, context: Context | None, message: str):
        try:
            session = await operation(entity_id)
        except SessionLaunchError as exc:
            _emit_log(
                context,
                "error",
                "Session failed to launch",
                extra={"session_id": exc.session.id, "error": str(exc)},
            )
            return _session_payload(exc.session, error=str(exc))
        _emit_log(
            context,
            "info",
            message,
            extra={"session_id": session.id, "status": session.status.value},
        )
        return _session_payload(session)

    async def _create_workspace(
        name: str,
        repo_path: str,
        default_base_branch: str = "main",
        worktrees_root: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Register a git repository as a workspace."""

        workspace = await orchestrator.add_workspace(
            name,
            repo_path,
            default_base_branch=default_base_branch,
            worktrees_root=worktrees_root,
        )
        _emit_log(
            context,
            "info",
            "Workspace registered",
            extra={"workspace_id": workspace.id, "repo": workspace.repo_path},
        )
        return _plain(workspace)

    def _list_workspaces(context: Context | None = None) -> list[dict[str, Any]]:
        workspaces = orchestrator.list_workspaces()
        _emit_log(context, "debug", "Listing workspaces", extra={"count": len(workspaces)})
        return [_plain(workspace) for workspace in workspaces]

    async def _delete_workspace(
        workspace_id: str, context: Context | None = None
    ) -> dict[str, Any]:
        await orchestrator.delete_workspace(workspace_id)
        _emit_log(context, "warning", "Workspace deleted", extra={"workspace_id": workspace_id})
        return {"workspace_id": workspace_id, "deleted": True}

    tool_create_workspace = server.tool(
        name="create_workspace",
        description="Register a local git repository that tasks will create worktrees from.",
    )(_create_workspace)

    tool_list_workspaces = server.tool(
        name="list_workspaces",
        description="List registered workspaces.",
    )(_list_workspaces)

    tool_delete_workspace = server.tool(
        name="delete_workspace",
        description=(
            "Delete a workspace together with its tasks, stopping their sessions and "
            "removing their worktrees."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Removes every worktree created for the workspace's tasks",
            }
        },
    )(_delete_workspace)

    async def _create_task(
        workspace_id: str,
        title: str,
        description: str = "",
        base_branch: str | None = None,
        branch_name: str | None = None,
        mode: str = "plan_first",
        agent_command_template: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a task and provision its git worktree."""

        task = await orchestrator.create_task(
            workspace_id,
            title,
            description=description,
            base_branch=base_branch,
            branch_name=branch_name,
            mode=mode,
            agent_command_template=agent_command_template,
        )
        _emit_log(
            context,
            "info",
            "Task created",
            extra={"task_id": task.id, "branch": task.branch_name, "worktree": task.worktree_path},
        )
        return _task_summary(task)

    def _list_tasks(
        workspace_id: str | None = None, context: Context | None = None
    ) -> list[dict[str, Any]]:
        tasks = orchestrator.list_tasks(workspace_id)
        _emit_log(context, "debug", "Listing tasks", extra={"count": len(tasks)})
        return [_task_summary(task) for task in tasks]

    async def _delete_task(
        task_id: str,
        remove_worktree: bool = True,
        delete_branch: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        await orchestrator.delete_task(
            task_id, remove_worktree=remove_worktree, delete_branch=delete_branch
        )
        _emit_log(
            context,
            "warning",
            "Task deleted",
            extra={"task_id": task_id, "remove_worktree": remove_worktree},
        )
        return {"task_id": task_id, "deleted": True}

    tool_create_task = server.tool(
        name="create_task",
        description=(
            "Create a unit of work in a workspace. A new branch and worktree are created "
            "from the base branch; mode is 'plan_first' or 'direct'."
        ),
    )(_create_task)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List tasks, optionally filtered by workspace, with their latest session.",
    )(_list_tasks)

    tool_delete_task = server.tool(
        name="delete_task",
        description="Delete a task, stopping any running session and discarding its sessions.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Optionally removes the worktree and deletes the branch",
            }
        },
    )(_delete_task)

    async def _start_session(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Start or queue an agent session for a task."""

        return await _launch(orchestrator.start_session, task_id, context, "Session started")

    async def _stop_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        session = await orchestrator.stop_session(session_id)
        _emit_log(context, "warning", "Session stop requested", extra={"session_id": session_id})
        return _session_payload(session)

    async def _approve_plan(
        session_id: str, plan: str | None = None, context: Context | None = None
    ) -> dict[str, Any]:
        """Approve a planner session's PLAN.md and start the executor."""

        async def approve(planner_id: str) -> Session:
            return await orchestrator.approve_plan(planner_id, plan)

        return await _launch(approve, session_id, context, "Plan approved")

    async def _cancel_plan(session_id: str, context: Context | None = None) -> dict[str, Any]:
        session = await orchestrator.cancel_plan(session_id)
        _emit_log(context, "info", "Plan cancelled", extra={"session_id": session_id})
        return _session_payload(session)

    async def _retry_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        return await _launch(orchestrator.retry_session, session_id, context, "Session retried")

    tool_start_session = server.tool(
        name="start_session",
        description=(
            "Start an agent session for a task. The session is queued when the "
            "concurrency limit is reached."
        ),
    )(_start_session)

    tool_stop_session = server.tool(
        name="stop_session",
        description="Terminate a session's agent process and mark it stopped.",
    )(_stop_session)

    tool_approve_plan = server.tool(
        name="approve_plan",
        description=(
            "Approve a planner session awaiting approval. An edited plan may be supplied "
            "to replace PLAN.md before the executor starts."
        ),
    )(_approve_plan)

    tool_cancel_plan = server.tool(
        name="cancel_plan",
        description="Reject a plan awaiting approval; the planner session becomes stopped.",
    )(_cancel_plan)

    tool_retry_session = server.tool(
        name="retry_session",
        description="Start a new attempt for a finished session, reusing its phase.",
    )(_retry_session)

    def _task_sessions(task_id: str, context: Context | None = None) -> list[dict[str, Any]]:
        orchestrator.get_task(task_id)
        sessions = orchestrator.sessions_for_task(task_id)
        _emit_log(
            context, "debug", "Listing task sessions", extra={"task_id": task_id, "count": len(sessions)}
        )
        return [_plain(session) for session in sessions]

    def _read_session_log(
        session_id: str, tail: int = 200, context: Context | None = None
    ) -> dict[str, Any]:
        content = orchestrator.read_log(session_id, tail=tail)
        _emit_log(context, "debug", "Read session log", extra={"session_id": session_id})
        return {"session_id": session_id, "tail": tail, "content": content}

    def _read_plan(session_id: str, context: Context | None = None) -> dict[str, Any]:
        plan = orchestrator.read_plan(session_id)
        return {"session_id": session_id, "exists": plan is not None, "plan": plan}

    tool_task_sessions = server.tool(
        name="task_sessions",
        description="List every session of a task, most recent first.",
    )(_task_sessions)

    tool_read_log = server.tool(
        name="read_session_log",
        description="Return the last lines of a session's combined stdout/stderr log.",
    )(_read_session_log)

    tool_read_plan = server.tool(
        name="read_plan",
        description="Return the PLAN.md content associated with a session, if written.",
    )(_read_plan)

    def _get_settings(context: Context | None = None) -> dict[str, Any]:
        return _plain(orchestrator.settings)

    async def _update_settings(
        changes: dict[str, Any], context: Context | None = None
    ) -> dict[str, Any]:
        settings = await orchestrator.update_settings(**changes)
        _emit_log(context, "info", "Settings updated", extra={"keys": sorted(changes)})
        return _plain(settings)

    tool_get_settings = server.tool(
        name="get_settings",
        description="Return the current orchestration settings.",
    )(_get_settings)

    tool_update_settings = server.tool(
        name="update_settings",
        description=(
            "Update orchestration settings such as the agent command template, "
            "blocked timeout and max concurrent sessions."
        ),
    )(_update_settings)

    return ToolHandles(
        create_workspace=tool_create_workspace,
        list_workspaces=tool_list_workspaces,
        delete_workspace=tool_delete_workspace,
        create_task=tool_create_task,
        list_tasks=tool_list_tasks,
        delete_task=tool_delete_task,
        start_session=tool_start_session,
        stop_session=tool_stop_session,
        approve_plan=tool_approve_plan,
        cancel_plan=tool_cancel_plan,
        retry_session=tool_retry_session,
        task_sessions=tool_task_sessions,
        read_session_log=tool_read_log,
        read_plan=tool_read_plan,
        get_settings=tool_get_settings,
        update_settings=tool_update_settings,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
