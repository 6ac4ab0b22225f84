"""Entity models for workspaces, tasks, sessions and user settings."""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

PLAN_FILENAME = "PLAN.md"
PROMPT_FILENAME = ".agent-prompt.txt"

DEFAULT_WORKTREES_ROOT = "~/Worktrees/Foreman"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


def _expand_path(value: str) -> str:
    return os.path.expanduser(value.strip())


class SessionPhase(str, Enum):
    PLANNER = "planner"
    EXECUTOR = "executor"
    DIRECT = "direct"


class SessionStatus(str, Enum):
    QUEUED = "queued"
    PLANNING = "planning"
    RUNNING = "running"
    BLOCKED = "blocked"
    AWAITING_APPROVAL = "awaiting_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Whether the status occupies an admission slot."""

        return self in _ACTIVE_STATUSES


_TERMINAL_STATUSES = frozenset(
    {SessionStatus.SUCCEEDED, SessionStatus.FAILED, SessionStatus.STOPPED}
)
_ACTIVE_STATUSES = frozenset({SessionStatus.PLANNING, SessionStatus.RUNNING})


class TaskMode(str, Enum):
    PLAN_FIRST = "plan_first"
    DIRECT = "direct"


class Workspace(BaseModel):
    """A git repository that tasks create worktrees from."""

    id: str = Field(default_factory=_new_id, description="Stable workspace identifier.")
    name: str = Field(..., description="Display name.")
    repo_path: str = Field(..., description="Absolute path of the repository root.")
    default_base_branch: str = Field(
        default="main", description="Branch new tasks are based on unless overridden."
    )
    worktrees_root: str = Field(
        default=DEFAULT_WORKTREES_ROOT,
        description="Directory under which task worktrees are created.",
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Workspace name must not be empty")
        return normalized

    @field_validator("repo_path", "worktrees_root")
    @classmethod
    def _expand(cls, value: str) -> str:
        expanded = _expand_path(value)
        if not expanded:
            raise ValueError("Workspace paths must not be empty")
        return expanded


class WorkTask(BaseModel):
    """A unit of work bound to one workspace, branch and worktree."""

    id: str = Field(default_factory=_new_id, description="Stable task identifier.")
    title: str = Field(..., description="Short human-readable title.")
    description: str = Field(default="", description="Detailed description of what to build.")
    workspace_id: str = Field(..., description="Owning workspace id.")
    base_branch: str = Field(..., description="Branch the worktree was created from.")
    branch_name: str = Field(..., description="Branch created for this task.")
    worktree_path: str = Field(..., description="Absolute path of the task worktree.")
    mode: TaskMode = Field(default=TaskMode.PLAN_FIRST)
    agent_command_template: str | None = Field(
        default=None,
        description="Optional override of the global agent command template.",
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task title must not be empty")
        return normalized

    @field_validator("agent_command_template")
    @classmethod
    def _blank_template_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @property
    def plan_path(self) -> str:
        return os.path.join(self.worktree_path, PLAN_FILENAME)

    @property
    def prompt_path(self) -> str:
        return os.path.join(self.worktree_path, PROMPT_FILENAME)

    @staticmethod
    def suggest_branch_name(title: str) -> str:
        slug = title.lower().replace(" ", "-")
        slug = re.sub(r"[^a-z0-9-]", "", slug)[:50]
        return f"task/{slug}"


class Session(BaseModel):
    """One execution attempt of a task."""

    id: str = Field(default_factory=_new_id)
    task_id: str
    phase: SessionPhase
    status: SessionStatus = SessionStatus.QUEUED
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_code: int | None = None
    pid: int | None = None
    log_path: str = ""
    plan_path: str | None = None
    last_activity_at: datetime | None = None
    last_tool_action: str | None = None

    @property
    def sort_key(self) -> datetime:
        return self.started_at or self.created_at


DEFAULT_AGENT_COMMAND = (
    "echo Configure the agent command template. Worktree: {{worktree}} Prompt: {{promptFile}}"
)

DEFAULT_PLANNER_PROMPT = """\
You are a planning agent. Analyze the task and create a detailed implementation plan.

Output a plan to PLAN.md with:
1. Scope summary
2. File-level changes (list each file to create/modify/delete)
3. Risks and unknowns
4. Test plan
5. Ordered checklist of steps

Do NOT implement anything. Only create the plan.
"""

DEFAULT_EXECUTOR_PROMPT = """\
You are an executor agent. Follow the implementation plan in PLAN.md exactly.

Constraints:
- Keep changes minimal
- Do not change tech stack unless required
- Update/add tests where appropriate
- Follow the checklist order

Execute the plan step by step.
"""


class AppSettings(BaseModel):
    """User-editable settings read by every session start."""

    agent_command_template: str = Field(
        default=DEFAULT_AGENT_COMMAND,
        description="Command template used to launch the agent process.",
    )
    planner_prompt_template: str = Field(default=DEFAULT_PLANNER_PROMPT)
    executor_prompt_template: str = Field(default=DEFAULT_EXECUTOR_PROMPT)
    non_interactive_flag: str = Field(
        default="--yes",
        description="Flag bound to {{nonInteractiveFlag}} for executor sessions only.",
    )
    blocked_timeout_minutes: int = Field(default=3, ge=1)
    max_concurrent_sessions: int = Field(default=1, ge=1)
    default_worktrees_root: str = Field(default=DEFAULT_WORKTREES_ROOT)
    editor_command: str = Field(default="code")
    terminal_command: str = Field(default="")

    @field_validator("agent_command_template")
    @classmethod
    def _require_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Agent command template must not be empty")
        return value


__all__ = [
    "AppSettings",
    "PLAN_FILENAME",
    "PROMPT_FILENAME",
    "Session",
    "SessionPhase",
    "SessionStatus",
    "TaskMode",
    "WorkTask",
    "Workspace",
]
