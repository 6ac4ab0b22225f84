"""Agent process supervision."""

from .supervisor import (
    FakeProcessSupervisor,
    LaunchError,
    ProcessHandle,
    ProcessSupervisor,
    Supervisor,
)
from .utils import sanitize_environment, session_environment

__all__ = [
    "FakeProcessSupervisor",
    "LaunchError",
    "ProcessHandle",
    "ProcessSupervisor",
    "Supervisor",
    "sanitize_environment",
    "session_environment",
]
