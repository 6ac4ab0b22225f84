from __future__ import annotations

from pathlib import Path

import pytest

from foreman_mcp.storage import SettingsLoadError, load_settings_file


def test_load_settings_file_overrides_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(
        """
agent_command_template: "claude -p {{promptFile}} {{nonInteractiveFlag}}"
non_interactive_flag: "--dangerously-skip-permissions"
max_concurrent_sessions: 2
blocked_timeout_minutes: 5
""",
        encoding="utf-8",
    )

    settings = load_settings_file(path)

    assert settings.agent_command_template == "claude -p {{promptFile}} {{nonInteractiveFlag}}"
    assert settings.non_interactive_flag == "--dangerously-skip-permissions"
    assert settings.max_concurrent_sessions == 2
    assert settings.blocked_timeout_minutes == 5
    assert settings.editor_command == "code"


def test_empty_settings_file_yields_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("", encoding="utf-8")

    settings = load_settings_file(path)

    assert settings.max_concurrent_sessions == 1
    assert settings.blocked_timeout_minutes == 3


@pytest.mark.parametrize(
    "content",
    [
        "- just\n- a list\n",
        "max_concurrent_sessions: 0\n",
        "max_sessions: 4\n",
        "agent_command_template: '  '\n",
        "key: [unclosed\n",
    ],
)
def test_invalid_settings_file_raises(tmp_path: Path, content: str) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(SettingsLoadError):
        load_settings_file(path)


def test_missing_settings_file_raises(tmp_path: Path) -> None:
    with pytest.raises(SettingsLoadError):
        load_settings_file(tmp_path / "absent.yaml")
