from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from foreman_mcp.sessions import (
    AdmissionController,
    InvalidTransitionError,
    Session,
    SessionPhase,
    SessionStatus,
    TaskMode,
    WorkTask,
    completion_status,
    extract_tool_action,
    initial_status,
    is_stalled,
    phase_for_mode,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _session(status: SessionStatus, **overrides) -> Session:
    return Session(task_id="t", phase=SessionPhase.DIRECT, status=status, **overrides)


def test_active_statuses_count_against_limit() -> None:
    sessions = [
        _session(SessionStatus.PLANNING),
        _session(SessionStatus.RUNNING),
        _session(SessionStatus.BLOCKED),
        _session(SessionStatus.AWAITING_APPROVAL),
        _session(SessionStatus.QUEUED),
    ]

    assert AdmissionController.active_count(sessions) == 2
    assert not AdmissionController(2).can_admit(sessions)
    assert AdmissionController(3).can_admit(sessions)


def test_admission_controller_rejects_zero() -> None:
    with pytest.raises(ValueError):
        AdmissionController(0)


def test_next_queued_uses_insertion_order() -> None:
    first = _session(SessionStatus.QUEUED)
    second = _session(SessionStatus.QUEUED)
    sessions = [_session(SessionStatus.RUNNING), first, second]

    assert AdmissionController.next_queued(sessions) is first
    assert AdmissionController.next_queued([_session(SessionStatus.FAILED)]) is None


def test_phase_and_initial_status() -> None:
    assert phase_for_mode(TaskMode.PLAN_FIRST) is SessionPhase.PLANNER
    assert phase_for_mode(TaskMode.DIRECT) is SessionPhase.DIRECT
    assert initial_status(SessionPhase.PLANNER, admitted=True) is SessionStatus.PLANNING
    assert initial_status(SessionPhase.EXECUTOR, admitted=True) is SessionStatus.RUNNING
    assert initial_status(SessionPhase.DIRECT, admitted=False) is SessionStatus.QUEUED


@pytest.mark.parametrize(
    ("phase", "exit_code", "expected"),
    [
        (SessionPhase.PLANNER, 0, SessionStatus.AWAITING_APPROVAL),
        (SessionPhase.PLANNER, 1, SessionStatus.FAILED),
        (SessionPhase.EXECUTOR, 0, SessionStatus.SUCCEEDED),
        (SessionPhase.DIRECT, 0, SessionStatus.SUCCEEDED),
        (SessionPhase.DIRECT, -15, SessionStatus.FAILED),
    ],
)
def test_completion_status(phase, exit_code, expected) -> None:
    assert completion_status(phase, exit_code) is expected


def test_terminal_statuses() -> None:
    terminal = {status for status in SessionStatus if status.is_terminal}

    assert terminal == {SessionStatus.SUCCEEDED, SessionStatus.FAILED, SessionStatus.STOPPED}


def test_is_stalled_at_exact_timeout() -> None:
    timeout = timedelta(minutes=3)
    session = _session(SessionStatus.RUNNING, last_activity_at=NOW - timeout)

    assert is_stalled(session, now=NOW, timeout=timeout)
    assert not is_stalled(session, now=NOW - timedelta(seconds=1), timeout=timeout)


def test_is_stalled_only_for_active_sessions() -> None:
    timeout = timedelta(minutes=3)
    old = NOW - timedelta(hours=1)

    assert not is_stalled(_session(SessionStatus.BLOCKED, last_activity_at=old), now=NOW, timeout=timeout)
    assert not is_stalled(_session(SessionStatus.QUEUED, last_activity_at=old), now=NOW, timeout=timeout)
    assert not is_stalled(_session(SessionStatus.RUNNING), now=NOW, timeout=timeout)


def test_extract_tool_action_prefers_later_markers() -> None:
    output = "Running: npm test\ngit: commit -m 'wip'\n"

    assert extract_tool_action(output) == "commit -m 'wip'"


def test_extract_tool_action_is_case_insensitive_and_truncated() -> None:
    output = "BASH:   " + "x" * 200

    assert extract_tool_action(output) == "x" * 80


def test_extract_tool_action_ignores_empty_candidates() -> None:
    assert extract_tool_action("Executing: ls\ncommand:   ") == "ls\ncommand:"
    assert extract_tool_action("nothing to see") is None


def test_invalid_transition_message() -> None:
    session = _session(SessionStatus.SUCCEEDED)
    error = InvalidTransitionError(session, "approve")

    assert "approve" in str(error)
    assert error.status is SessionStatus.SUCCEEDED


def test_branch_name_suggestion() -> None:
    assert WorkTask.suggest_branch_name("Fix: Login & Signup") == "task/fix-login--signup"
    assert len(WorkTask.suggest_branch_name("a" * 80)) == len("task/") + 50
