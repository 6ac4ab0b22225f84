"""Worktree provisioning adapters."""

from .git import (
    BranchExistsError,
    GitCommandError,
    GitResult,
    GitWorktreeProvisioner,
    NotARepositoryError,
    PathExistsError,
    ProvisioningError,
)

__all__ = [
    "BranchExistsError",
    "GitCommandError",
    "GitResult",
    "GitWorktreeProvisioner",
    "NotARepositoryError",
    "PathExistsError",
    "ProvisioningError",
]
