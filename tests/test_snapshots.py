from __future__ import annotations

import json
from pathlib import Path

import pytest

from foreman_mcp.sessions import AppSettings, Session, SessionPhase, SessionStatus, WorkTask, Workspace
from foreman_mcp.storage import SnapshotError, SnapshotStore
from foreman_mcp.storage.snapshots import SESSIONS_FILE, TASKS_FILE


def _task(workspace: Workspace) -> WorkTask:
    return WorkTask(
        title="Add search",
        workspace_id=workspace.id,
        base_branch="main",
        branch_name="task/add-search",
        worktree_path="/tmp/wt/task/add-search",
    )


def test_snapshots_round_trip_each_collection(tmp_path: Path) -> None:
    store = SnapshotStore(tmp_path / "data")
    workspace = Workspace(name="demo", repo_path="/tmp/repo")
    task = _task(workspace)
    session = Session(task_id=task.id, phase=SessionPhase.PLANNER, status=SessionStatus.AWAITING_APPROVAL)

    store.save_workspaces([workspace])
    store.save_tasks([task])
    store.save_sessions([session])
    store.save_settings(AppSettings(max_concurrent_sessions=3))

    assert store.load_workspaces() == [workspace]
    assert store.load_tasks() == [task]
    assert store.load_sessions() == [session]
    assert store.load_settings().max_concurrent_sessions == 3
    assert sorted(path.name for path in store.data_dir.iterdir()) == [
        "sessions.json",
        "settings.json",
        "tasks.json",
        "workspaces.json",
    ]


def test_missing_snapshots_load_empty(tmp_path: Path) -> None:
    store = SnapshotStore(tmp_path / "absent")

    assert store.load_workspaces() == []
    assert store.load_tasks() == []
    assert store.load_sessions() == []
    assert store.load_settings() is None
    assert not store.exists(TASKS_FILE)


def test_corrupt_snapshot_is_ignored(tmp_path: Path, caplog) -> None:
    store = SnapshotStore(tmp_path)
    store.path_for(SESSIONS_FILE).write_text("{not json", encoding="utf-8")

    with caplog.at_level("WARNING"):
        assert store.load_sessions() == []

    assert "Ignoring unreadable snapshot" in caplog.text


def test_save_replaces_whole_document(tmp_path: Path) -> None:
    store = SnapshotStore(tmp_path)
    workspace = Workspace(name="demo", repo_path="/tmp/repo")
    store.save_workspaces([workspace, Workspace(name="other", repo_path="/tmp/other")])
    store.save_workspaces([workspace])

    document = json.loads(store.path_for("workspaces.json").read_text(encoding="utf-8"))

    assert [item["name"] for item in document] == ["demo"]
    assert [path.name for path in tmp_path.iterdir() if path.name.startswith(".")] == []


def test_unwritable_directory_raises_snapshot_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    store = SnapshotStore(blocker / "data")

    with pytest.raises(SnapshotError):
        store.save_tasks([])


def test_dump_returns_plain_data(tmp_path: Path) -> None:
    store = SnapshotStore(tmp_path)
    workspace = Workspace(name="demo", repo_path="/tmp/repo")
    store.save_workspaces([workspace])
    store.save_tasks([_task(workspace)])

    dumped = store.dump()

    assert dumped["workspaces"][0]["id"] == workspace.id
    assert dumped["tasks"][0]["mode"] == "plan_first"
    assert dumped["sessions"] == []
    assert dumped["settings"] is None
    json.dumps(dumped)
