from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
from pathlib import Path

import pytest

from foreman_mcp.worktrees import (
    BranchExistsError,
    GitCommandError,
    GitWorktreeProvisioner,
    NotARepositoryError,
    PathExistsError,
)

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(*args: str, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", "-c", "user.name=Foreman", "-c", "user.email=foreman@example.com", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _git("init", "-q", cwd=path)
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=path)
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    _git("add", "README.md", cwd=path)
    _git("commit", "-q", "-m", "init", cwd=path)
    return path


def test_create_and_remove_worktree(repo: Path, tmp_path: Path) -> None:
    provisioner = GitWorktreeProvisioner()
    target = tmp_path / "worktrees" / "task" / "add-search"

    async def scenario():
        await provisioner.create_worktree(str(repo), str(target), "task/add-search", "main")
        branch = await provisioner.current_branch(str(target))
        listed = await provisioner.list_worktrees(str(repo))
        await provisioner.remove_worktree(str(repo), str(target), delete_branch=True)
        return branch, listed

    branch, listed = asyncio.run(scenario())

    assert branch == "task/add-search"
    assert os.path.realpath(target) in [os.path.realpath(path) for path in listed]
    assert not target.exists()
    assert _git("branch", "--list", "task/add-search", cwd=repo).strip() == ""


def test_remove_worktree_keeps_branch_by_default(repo: Path, tmp_path: Path) -> None:
    provisioner = GitWorktreeProvisioner()
    target = tmp_path / "wt"

    async def scenario():
        await provisioner.create_worktree(str(repo), str(target), "task/keep", "main")
        await provisioner.remove_worktree(str(repo), str(target))

    asyncio.run(scenario())

    assert not target.exists()
    assert "task/keep" in _git("branch", "--list", "task/keep", cwd=repo)


def test_create_worktree_rejects_conflicts(repo: Path, tmp_path: Path) -> None:
    provisioner = GitWorktreeProvisioner()
    existing = tmp_path / "existing"
    existing.mkdir()

    async def scenario():
        with pytest.raises(PathExistsError):
            await provisioner.create_worktree(str(repo), str(existing), "task/new", "main")
        with pytest.raises(BranchExistsError):
            await provisioner.create_worktree(str(repo), str(tmp_path / "other"), "main", "main")
        with pytest.raises(NotARepositoryError):
            await provisioner.create_worktree(
                str(tmp_path / "nowhere"), str(tmp_path / "wt"), "task/x", "main"
            )
        with pytest.raises(GitCommandError):
            await provisioner.create_worktree(
                str(repo), str(tmp_path / "wt"), "task/x", "no-such-base"
            )

    asyncio.run(scenario())


def test_is_valid_repository(repo: Path, tmp_path: Path) -> None:
    provisioner = GitWorktreeProvisioner()
    plain = tmp_path / "plain"
    plain.mkdir()

    async def scenario():
        return (
            await provisioner.is_valid_repository(str(repo)),
            await provisioner.is_valid_repository(str(plain)),
            await provisioner.is_valid_repository(str(tmp_path / "missing")),
        )

    assert asyncio.run(scenario()) == (True, False, False)


def test_missing_git_binary_is_reported(tmp_path: Path) -> None:
    provisioner = GitWorktreeProvisioner(git_path=str(tmp_path / "no-git"))

    async def scenario():
        with pytest.raises(GitCommandError):
            await provisioner.list_worktrees(str(tmp_path))

    asyncio.run(scenario())
