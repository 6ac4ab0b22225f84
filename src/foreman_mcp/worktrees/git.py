"""Git CLI adapter that provisions per-task worktrees."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from ..process.utils import sanitize_environment

logger = logging.getLogger(__name__)

PROTECTED_BRANCHES = frozenset({"main", "master"})


class ProvisioningError(RuntimeError):
    """Base class for worktree provisioning failures."""


class NotARepositoryError(ProvisioningError):
    def __init__(self, path: str) -> None:
        super().__init__(f"'{path}' is not a git repository")
        self.path = path


class PathExistsError(ProvisioningError):
    def __init__(self, path: str) -> None:
        super().__init__(
            f"Path '{path}' already exists. Remove it first or choose a different worktree location."
        )
        self.path = path


class BranchExistsError(ProvisioningError):
    def __init__(self, branch: str) -> None:
        super().__init__(f"Branch '{branch}' already exists. Choose a different name.")
        self.branch = branch


class GitCommandError(ProvisioningError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Git command failed: {message}")


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def expand(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


class GitWorktreeProvisioner:
    """Create and remove git worktrees through the ``git`` executable."""

    def __init__(self, git_path: str = "git") -> None:
        self._git = git_path

    async def _invoke(self, *args: str, cwd: str | None = None) -> GitResult:
        cmd = [self._git, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment({"GIT_TERMINAL_PROMPT": "0"}),
            )
        except OSError as exc:
            raise GitCommandError(f"cannot run {self._git}: {exc}") from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        return GitResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def is_valid_repository(self, repo_path: str) -> bool:
        path = expand(repo_path)
        if not os.path.isdir(path):
            return False
        try:
            result = await self._invoke("-C", path, "rev-parse", "--git-dir")
        except GitCommandError:
            return False
        return result.ok

    async def fetch_all(self, repo_path: str) -> None:
        result = await self._invoke("-C", expand(repo_path), "fetch", "--all", "--prune")
        if not result.ok:
            raise GitCommandError(result.stderr.strip())

    async def branch_exists(self, repo_path: str, branch: str) -> bool:
        """Check local branches, then ``origin`` remote-tracking branches."""

        path = expand(repo_path)
        local = await self._invoke("-C", path, "branch", "--list", branch)
        if local.stdout.strip():
            return True
        remote = await self._invoke("-C", path, "branch", "-r", "--list", f"origin/{branch}")
        return bool(remote.stdout.strip())

    async def _start_point(self, repo_path: str, base_branch: str) -> str:
        remote_ref = f"origin/{base_branch}"
        probe = await self._invoke(
            "-C", repo_path, "rev-parse", "--verify", "--quiet", f"{remote_ref}^{{commit}}"
        )
        return remote_ref if probe.ok else base_branch

    async def create_worktree(
        self,
        repo_path: str,
        worktree_path: str,
        branch_name: str,
        base_branch: str,
    ) -> None:
        repo = expand(repo_path)
        target = expand(worktree_path)

        if os.path.exists(target):
            raise PathExistsError(target)
        if not await self.is_valid_repository(repo):
            raise NotARepositoryError(repo)
        if await self.branch_exists(repo, branch_name):
            raise BranchExistsError(branch_name)

        Path(target).parent.mkdir(parents=True, exist_ok=True)
        await self.fetch_all(repo)
        start_point = await self._start_point(repo, base_branch)

        result = await self._invoke(
            "-C", repo, "worktree", "add", target, "-b", branch_name, start_point
        )
        if not result.ok:
            raise GitCommandError(result.stderr.strip())
        logger.info(
            "Created worktree",
            extra={"repo": repo, "worktree": target, "branch": branch_name, "base": start_point},
        )

    async def remove_worktree(
        self,
        repo_path: str,
        worktree_path: str,
        *,
        delete_branch: bool = False,
    ) -> None:
        repo = expand(repo_path)
        target = expand(worktree_path)

        branch: str | None = None
        if delete_branch and os.path.isdir(target):
            head = await self._invoke("-C", target, "rev-parse", "--abbrev-ref", "HEAD")
            if head.ok:
                branch = head.stdout.strip()

        result = await self._invoke("-C", repo, "worktree", "remove", target, "--force")
        if not result.ok:
            logger.warning(
                "git worktree remove failed; deleting directory",
                extra={"worktree": target, "stderr": result.stderr.strip()},
            )
            shutil.rmtree(target, ignore_errors=True)
            await self._invoke("-C", repo, "worktree", "prune")

        if branch and branch not in PROTECTED_BRANCHES and branch != "HEAD":
            deleted = await self._invoke("-C", repo, "branch", "-D", branch)
            if not deleted.ok:
                logger.warning(
                    "Failed to delete branch",
                    extra={"branch": branch, "stderr": deleted.stderr.strip()},
                )

    async def list_worktrees(self, repo_path: str) -> list[str]:
        result = await self._invoke("-C", expand(repo_path), "worktree", "list", "--porcelain")
        if not result.ok:
            raise GitCommandError(result.stderr.strip())
        return [
            line[len("worktree ") :]
            for line in result.stdout.splitlines()
            if line.startswith("worktree ")
        ]

    async def current_branch(self, worktree_path: str) -> str:
        result = await self._invoke("-C", expand(worktree_path), "rev-parse", "--abbrev-ref", "HEAD")
        if not result.ok:
            raise GitCommandError(result.stderr.strip())
        return result.stdout.strip()


__all__ = [
    "BranchExistsError",
    "GitCommandError",
    "GitResult",
    "GitWorktreeProvisioner",
    "NotARepositoryError",
    "PathExistsError",
    "ProvisioningError",
]
