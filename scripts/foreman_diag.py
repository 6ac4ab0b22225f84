"""Foreman MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from foreman_mcp.config import ForemanSettings
from foreman_mcp.storage import SnapshotStore


def load_store(settings: ForemanSettings) -> SnapshotStore:
    data_dir = settings.data_dir.expanduser()
    if not data_dir.is_dir():
        print(f"No Foreman data found at {data_dir}")
        raise SystemExit(1)
    return SnapshotStore(data_dir)


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = ForemanSettings()
    store = load_store(settings)
    snapshot = store.dump()
    tasks = snapshot["tasks"]
    if args.json:
        print(json.dumps(tasks, indent=2))
        return

    latest: dict[str, dict] = {}
    for session in snapshot["sessions"]:
        key = session.get("started_at") or session["created_at"]
        current = latest.get(session["task_id"])
        if current is None or key > (current.get("started_at") or current["created_at"]):
            latest[session["task_id"]] = session
    for task in tasks:
        session = latest.get(task["id"])
        status = session["status"] if session else "idle"
        print(f"{task['id']} [{status}] {task['branch_name']} -> {task['worktree_path']}")


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = ForemanSettings()
    store = load_store(settings)
    sessions = store.dump()["sessions"]
    if args.task_id:
        sessions = [session for session in sessions if session["task_id"] == args.task_id]
    if args.status:
        sessions = [session for session in sessions if session["status"] == args.status]
    print(json.dumps(sessions, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = ForemanSettings()
    store = load_store(settings)
    snapshot = store.dump()
    sessions = snapshot["sessions"]

    status_counts: dict[str, int] = {}
    phase_counts: dict[str, int] = {}
    for session in sessions:
        status = session.get("status", "unknown")
        status_counts[status] = status_counts.get(status, 0) + 1
        phase = session.get("phase", "unknown")
        phase_counts[phase] = phase_counts.get(phase, 0) + 1

    app_settings = snapshot["settings"] or {}
    metrics = {
        "workspaces_total": len(snapshot["workspaces"]),
        "tasks_total": len(snapshot["tasks"]),
        "sessions_total": len(sessions),
        "status_counts": status_counts,
        "phase_counts": phase_counts,
        "active_sessions": status_counts.get("planning", 0) + status_counts.get("running", 0),
        "queued_sessions": status_counts.get("queued", 0),
        "max_concurrent_sessions": app_settings.get("max_concurrent_sessions"),
        "blocked_timeout_minutes": app_settings.get("blocked_timeout_minutes"),
    }

    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Foreman MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_tasks = sub.add_parser("tasks", help="List tasks with their latest session status")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_sessions = sub.add_parser("sessions", help="List persisted sessions")
    p_sessions.add_argument("--task-id")
    p_sessions.add_argument("--status", help="Only show sessions with this status")
    p_sessions.set_defaults(func=cmd_sessions)

    p_metrics = sub.add_parser("metrics", help="Show workspace/task/session counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
