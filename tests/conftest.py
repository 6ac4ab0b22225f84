from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from foreman_mcp.orchestrator import Orchestrator
from foreman_mcp.process import FakeProcessSupervisor
from foreman_mcp.sessions import AppSettings
from foreman_mcp.storage import SnapshotStore
from foreman_mcp.sweeper import ManualTimer
from foreman_mcp.worktrees import BranchExistsError, NotARepositoryError


class StubProvisioner:
    """Records worktree operations and creates plain directories instead of git worktrees."""

    def __init__(self) -> None:
        self.created: list[dict[str, str]] = []
        self.removed: list[dict[str, Any]] = []
        self.invalid_repos: set[str] = set()
        self._branches: set[str] = set()

    async def is_valid_repository(self, repo_path: str) -> bool:
        return repo_path not in self.invalid_repos

    async def create_worktree(
        self, repo_path: str, worktree_path: str, branch_name: str, base_branch: str
    ) -> None:
        if repo_path in self.invalid_repos:
            raise NotARepositoryError(repo_path)
        if branch_name in self._branches:
            raise BranchExistsError(branch_name)
        Path(worktree_path).mkdir(parents=True)
        self._branches.add(branch_name)
        self.created.append(
            {
                "repo": repo_path,
                "worktree": worktree_path,
                "branch": branch_name,
                "base": base_branch,
            }
        )

    async def remove_worktree(
        self, repo_path: str, worktree_path: str, *, delete_branch: bool = False
    ) -> None:
        self.removed.append(
            {"repo": repo_path, "worktree": worktree_path, "delete_branch": delete_branch}
        )


class StubClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.tmp_path = tmp_path
        self.data_dir = tmp_path / "data"
        self.logs_dir = tmp_path / "logs"
        self.repo = tmp_path / "repo"
        self.repo.mkdir()
        self.worktrees_root = tmp_path / "worktrees"
        self.supervisor = FakeProcessSupervisor()
        self.provisioner = StubProvisioner()
        self.clock = StubClock()
        self.timers: list[ManualTimer] = []

    def _timer_factory(self, callback) -> ManualTimer:
        timer = ManualTimer(callback)
        self.timers.append(timer)
        return timer

    def build(self, **settings: Any) -> Orchestrator:
        initial = AppSettings(agent_command_template="agent {{mode}} {{promptFile}}", **settings)
        return Orchestrator(
            store=SnapshotStore(self.data_dir),
            supervisor=self.supervisor,
            provisioner=self.provisioner,
            logs_dir=self.logs_dir,
            clock=self.clock,
            timer_factory=self._timer_factory,
            initial_settings=initial,
        )

    async def workspace(self, orchestrator: Orchestrator, name: str = "demo"):
        return await orchestrator.add_workspace(
            name, str(self.repo), worktrees_root=str(self.worktrees_root)
        )


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)

