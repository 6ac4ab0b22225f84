"""Session lifecycle transitions and admission control."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Iterable

from .models import Session, SessionPhase, SessionStatus, TaskMode

TOOL_ACTION_MARKERS = ("Running:", "Executing:", "tool:", "bash:", "git:", "command:")
_TOOL_ACTION_PATTERNS = tuple(
    re.compile(re.escape(marker), re.IGNORECASE) for marker in TOOL_ACTION_MARKERS
)


class InvalidTransitionError(RuntimeError):
    """Raised when an event is not allowed from the session's current status."""

    def __init__(self, session: Session, event: str) -> None:
        super().__init__(
            f"Cannot {event} session '{session.id}' in status '{session.status.value}'"
        )
        self.session_id = session.id
        self.status = session.status
        self.event = event


class AdmissionController:
    """Count-based gate over the pool of concurrent execution slots."""

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent

    @staticmethod
    def active_count(sessions: Iterable[Session]) -> int:
        return sum(1 for session in sessions if session.status.is_active)

    def can_admit(self, sessions: Iterable[Session]) -> bool:
        return self.active_count(sessions) < self.max_concurrent

    @staticmethod
    def next_queued(sessions: Iterable[Session]) -> Session | None:
        """Return the oldest queued session in insertion order."""

        for session in sessions:
            if session.status is SessionStatus.QUEUED:
                return session
        return None


def phase_for_mode(mode: TaskMode) -> SessionPhase:
    return SessionPhase.PLANNER if mode is TaskMode.PLAN_FIRST else SessionPhase.DIRECT


def launch_status(phase: SessionPhase) -> SessionStatus:
    return SessionStatus.PLANNING if phase is SessionPhase.PLANNER else SessionStatus.RUNNING


def initial_status(phase: SessionPhase, *, admitted: bool) -> SessionStatus:
    return launch_status(phase) if admitted else SessionStatus.QUEUED


def completion_status(phase: SessionPhase, exit_code: int) -> SessionStatus:
    if exit_code != 0:
        return SessionStatus.FAILED
    if phase is SessionPhase.PLANNER:
        return SessionStatus.AWAITING_APPROVAL
    return SessionStatus.SUCCEEDED


def accepts_exit(session: Session) -> bool:
    """Whether a process exit report should change the session.

    Sessions already stopped (or otherwise settled) ignore late exit reports.
    """

    return session.status in {
        SessionStatus.PLANNING,
        SessionStatus.RUNNING,
        SessionStatus.BLOCKED,
    }


def accepts_output(session: Session) -> bool:
    return session.status in {
        SessionStatus.PLANNING,
        SessionStatus.RUNNING,
        SessionStatus.BLOCKED,
    }


def is_stalled(session: Session, *, now: datetime, timeout: timedelta) -> bool:
    """Whether an active session has been silent for at least ``timeout``."""

    if not session.status.is_active or session.last_activity_at is None:
        return False
    return now - session.last_activity_at >= timeout


def extract_tool_action(output: str) -> str | None:
    """Best-effort extraction of the last tool action mentioned in an output chunk."""

    action: str | None = None
    for pattern in _TOOL_ACTION_PATTERNS:
        match = pattern.search(output)
        if match is None:
            continue
        candidate = output[match.end() : match.end() + 100].strip()
        if candidate:
            action = candidate[:80]
    return action


__all__ = [
    "AdmissionController",
    "InvalidTransitionError",
    "TOOL_ACTION_MARKERS",
    "accepts_exit",
    "accepts_output",
    "completion_status",
    "extract_tool_action",
    "initial_status",
    "is_stalled",
    "launch_status",
    "phase_for_mode",
]
