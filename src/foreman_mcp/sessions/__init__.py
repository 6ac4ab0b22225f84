"""Session models and lifecycle rules."""

from .machine import (
    AdmissionController,
    InvalidTransitionError,
    completion_status,
    extract_tool_action,
    initial_status,
    is_stalled,
    launch_status,
    phase_for_mode,
)
from .models import (
    AppSettings,
    PLAN_FILENAME,
    PROMPT_FILENAME,
    Session,
    SessionPhase,
    SessionStatus,
    TaskMode,
    WorkTask,
    Workspace,
)

__all__ = [
    "AdmissionController",
    "AppSettings",
    "InvalidTransitionError",
    "PLAN_FILENAME",
    "PROMPT_FILENAME",
    "Session",
    "SessionPhase",
    "SessionStatus",
    "TaskMode",
    "WorkTask",
    "Workspace",
    "completion_status",
    "extract_tool_action",
    "initial_status",
    "is_stalled",
    "launch_status",
    "phase_for_mode",
]
