from __future__ import annotations

import asyncio
import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from foreman_mcp import server as server_module
from foreman_mcp.config import ForemanSettings
from foreman_mcp.server import build_orchestrator, build_status, create_server


class StubFastMCP:
    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.tools: dict[str, object] = {}
        self.resources: dict[str, object] = {}

    def resource(self, uri, **kwargs):
        def decorator(fn):
            self.resources[uri] = fn
            return fn

        return decorator

    def tool(self, *args, **kwargs):
        def decorator(fn):
            self.tools[kwargs["name"]] = fn
            return fn

        return decorator


@pytest.fixture
def settings(tmp_path: Path) -> ForemanSettings:
    settings = ForemanSettings()
    settings.data_dir = tmp_path / "data"
    settings.logs_dir = tmp_path / "logs"
    settings.settings_file = None
    return settings


def test_build_status_summarizes_sessions(harness, settings) -> None:
    async def scenario():
        orchestrator = harness.build()
        workspace = await harness.workspace(orchestrator)
        first = await orchestrator.create_task(workspace.id, "One", mode="direct")
        second = await orchestrator.create_task(workspace.id, "Two", mode="direct")
        running = await orchestrator.start_session(first.id)
        queued = await orchestrator.start_session(second.id)
        harness.clock.advance(minutes=5)
        await orchestrator.sweep_blocked()
        return orchestrator, running, queued

    orchestrator, running, queued = asyncio.run(scenario())

    status = build_status(orchestrator, settings, request_id="req-1")

    assert status["workspaces"] == 1
    assert status["tasks"] == 2
    assert status["sessions"]["count"] == 2
    assert status["sessions"]["status_counts"] == {"blocked": 1, "queued": 1}
    assert status["sessions"]["active"] == 0
    assert status["sessions"]["max_concurrent"] == 1
    assert status["sessions"]["queued"] == [queued.id]
    assert status["sessions"]["blocked"][0]["session_id"] == running.id
    assert status["request_id"] == "req-1"
    json.dumps(status)


def test_create_server_registers_tools_and_status(monkeypatch, harness, settings) -> None:
    monkeypatch.setattr(server_module, "FastMCP", StubFastMCP)
    orchestrator = harness.build()

    server = create_server(settings, orchestrator=orchestrator)

    assert server.orchestrator is orchestrator
    assert "start_session" in server.tools
    assert server.kwargs["name"] == "Foreman MCP"
    status_fn = server.resources["resource://foreman/status"]
    payload = json.loads(status_fn(SimpleNamespace(request_id="abc")))
    assert payload["request_id"] == "abc"
    assert payload["settings_file"] == {"path": None, "loaded": False, "error": None}
    assert payload["sessions"]["count"] == 0


def test_settings_file_seeds_new_store(tmp_path: Path, settings) -> None:
    seed = tmp_path / "foreman.yaml"
    seed.write_text("max_concurrent_sessions: 3\n", encoding="utf-8")
    settings.settings_file = seed
    metadata: dict[str, object] = {}

    orchestrator = build_orchestrator(settings, metadata)

    assert orchestrator.settings.max_concurrent_sessions == 3
    assert metadata["loaded"] is True
    assert (settings.data_dir / "settings.json").is_file()


def test_invalid_settings_file_is_reported(tmp_path: Path, settings, caplog) -> None:
    seed = tmp_path / "foreman.yaml"
    seed.write_text("bogus: true\n", encoding="utf-8")
    settings.settings_file = seed
    metadata: dict[str, object] = {}

    with caplog.at_level("WARNING"):
        orchestrator = build_orchestrator(settings, metadata)

    assert orchestrator.settings.max_concurrent_sessions == 1
    assert "bogus" in metadata["error"]
    assert "Ignoring settings file" in caplog.text
