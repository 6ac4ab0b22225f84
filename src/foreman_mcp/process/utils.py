"""Environment construction for agent and git subprocesses.

Agents run inside task worktrees that may carry their own virtualenvs, so the
server's interpreter settings are stripped before the per-session variables
are layered on top.
"""

from __future__ import annotations

import os
from typing import Mapping

_INTERPRETER_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy ``os.environ`` without the server's Python settings, then apply ``additional``."""

    env = dict(os.environ)
    for key in _INTERPRETER_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def session_environment(
    *,
    session_id: str,
    task_id: str,
    phase: str,
    worktree: str,
) -> dict[str, str]:
    """Variables exported to every agent process so it can identify its session."""

    return {
        "FOREMAN_SESSION_ID": session_id,
        "FOREMAN_TASK_ID": task_id,
        "FOREMAN_PHASE": phase,
        "FOREMAN_WORKTREE": worktree,
    }
