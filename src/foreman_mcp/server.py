"""FastMCP server bootstrap for Foreman."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import ForemanSettings, get_settings
from .orchestrator import Orchestrator
from .process import ProcessSupervisor
from .sessions import AppSettings, SessionStatus
from .storage import SettingsLoadError, SnapshotStore, load_settings_file
from .sweeper import periodic_timer_factory
from .tools import register_tools
from .worktrees import GitWorktreeProvisioner

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Foreman server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _seed_settings(settings: ForemanSettings, metadata: dict[str, Any]) -> AppSettings | None:
    if settings.settings_file is None:
        return None
    try:
        seeded = load_settings_file(settings.settings_file)
    except SettingsLoadError as exc:
        metadata["error"] = str(exc)
        logger.warning("Ignoring settings file", extra={"error": str(exc)})
        return None
    metadata["loaded"] = True
    return seeded


def build_orchestrator(
    settings: ForemanSettings, seed_metadata: dict[str, Any] | None = None
) -> Orchestrator:
    """Wire the orchestrator to its on-disk store, process supervisor and git."""

    metadata = seed_metadata if seed_metadata is not None else {}
    return Orchestrator(
        store=SnapshotStore(settings.data_dir),
        supervisor=ProcessSupervisor(stop_grace_seconds=settings.stop_grace_seconds),
        provisioner=GitWorktreeProvisioner(settings.git_path),
        logs_dir=settings.logs_dir,
        timer_factory=periodic_timer_factory(settings.sweep_interval_seconds),
        initial_settings=_seed_settings(settings, metadata),
    )


def build_status(
    orchestrator: Orchestrator,
    settings: ForemanSettings,
    *,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Summarize runtime state for the status resource."""

    summary = orchestrator.summary()
    blocked = [
        {
            "session_id": session.id,
            "task_id": session.task_id,
            "last_activity_at": (
                session.last_activity_at.isoformat() if session.last_activity_at else None
            ),
            "last_tool_action": session.last_tool_action,
        }
        for session in orchestrator.list_sessions()
        if session.status is SessionStatus.BLOCKED
    ]
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": settings.log_level,
        "storage": {
            "data_dir": str(settings.data_dir),
            "logs_dir": str(settings.logs_dir),
        },
        "workspaces": summary["workspaces"],
        "tasks": summary["tasks"],
        "sessions": {
            "count": summary["sessions"],
            "status_counts": summary["status_counts"],
            "active": summary["active_sessions"],
            "max_concurrent": summary["max_concurrent_sessions"],
            "queued": summary["queued_session_ids"],
            "blocked": blocked,
        },
        "last_error": summary["last_error"],
        "request_id": request_id,
    }


def create_server(
    settings: Optional[ForemanSettings] = None,
    orchestrator: Orchestrator | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with tools and the status resource."""

    settings = settings or get_settings()
    seed_metadata: dict[str, Any] = {
        "path": str(settings.settings_file) if settings.settings_file else None,
        "loaded": False,
        "error": None,
    }
    if orchestrator is None:
        orchestrator = build_orchestrator(settings, seed_metadata)

    server = FastMCP(
        name="Foreman MCP",
        version=__version__,
        instructions=(
            "Foreman runs coding agents in isolated git worktrees. Create a workspace, "
            "create tasks inside it, then start sessions. Plan-first tasks stop at "
            "awaiting_approval until the plan is approved."
        ),
    )

    handles = register_tools(server, orchestrator=orchestrator)

    @server.resource(
        "resource://foreman/status",
        name="foreman_status",
        title="Foreman MCP Status",
        description="Provides the current runtime status for the Foreman MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing session and queue state."""

        payload = build_status(
            orchestrator, settings, request_id=getattr(context, "request_id", None)
        )
        payload["settings_file"] = seed_metadata
        return json.dumps(payload)

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "tool_handles", handles)
    setattr(server, "settings_seed", seed_metadata)
    return server


async def _serve(server: FastMCP) -> None:
    orchestrator: Orchestrator = getattr(server, "orchestrator")
    await orchestrator.start()
    try:
        await server.run_async()
    finally:
        await orchestrator.shutdown(stop_sessions=True)


def main() -> None:
    """Entry point for running the Foreman MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching Foreman MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "data_dir": str(settings.data_dir),
        },
    )
    asyncio.run(_serve(server))


if __name__ == "__main__":
    main()
