"""Placeholder substitution for agent command and prompt templates."""

from __future__ import annotations

from typing import Mapping

from .sessions.models import SessionPhase, WorkTask

PLACEHOLDERS = ("worktree", "promptFile", "mode", "nonInteractiveFlag")


def render(template: str, bindings: Mapping[str, str]) -> str:
    """Replace every recognized, bound ``{{placeholder}}`` in ``template``.

    Unknown or unbound placeholders are left verbatim.
    """

    rendered = template
    for name in PLACEHOLDERS:
        if name in bindings:
            rendered = rendered.replace("{{" + name + "}}", bindings[name])
    return rendered


def command_bindings(
    *,
    worktree: str,
    prompt_file: str,
    phase: SessionPhase,
    non_interactive_flag: str,
) -> dict[str, str]:
    flag = non_interactive_flag if phase is SessionPhase.EXECUTOR and non_interactive_flag else ""
    return {
        "worktree": worktree,
        "promptFile": prompt_file,
        "mode": phase.value,
        "nonInteractiveFlag": flag,
    }


def tokenize(command: str) -> list[str]:
    """Split a rendered command on whitespace.

    Quoting is not interpreted, so arguments cannot contain spaces.
    """

    return command.split()


def build_prompt(template: str, task: WorkTask) -> str:
    sections = [template.strip()]
    brief = task.title
    if task.description.strip():
        brief = f"{task.title}\n\n{task.description.strip()}"
    sections.append("Task:\n" + brief)
    return "\n\n".join(sections) + "\n"


__all__ = ["PLACEHOLDERS", "build_prompt", "command_bindings", "render", "tokenize"]
