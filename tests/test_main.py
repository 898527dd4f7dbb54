"""Tests for component wiring in kaldi.main."""

import json

import pytest

from kaldi.config import Settings
from kaldi.core.context import BASE_SYSTEM_PROMPT
from kaldi.core.permissions import PermissionGate, PermissionMode, PermissionRequest
from kaldi.main import _make_permission_callback, create_components, shutdown_components
from kaldi.providers import AnthropicClient


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    monkeypatch.chdir(tmp_path)
    return Settings(
        ANTHROPIC_API_KEY="sk-ant-test",
        workspace_dir=str(tmp_path),
        permission_mode="plan",
        max_turns=7,
    )


class TestCreateComponents:
    @pytest.mark.asyncio
    async def test_wires_all_components(self, settings):
        components = await create_components(settings)
        try:
            assert set(components) == {
                "provider",
                "web_http",
                "registry",
                "hooks",
                "permissions",
                "pipeline",
                "compaction",
                "delegator",
                "engine",
            }
            assert isinstance(components["provider"], AnthropicClient)
            assert components["permissions"].mode == PermissionMode.PLAN

            engine = components["engine"]
            assert engine.max_turns == 7
            assert engine.system_prompt.startswith(BASE_SYSTEM_PROMPT)
            assert components["delegator"].timeout == settings.subagent_timeout
            assert engine.compaction is components["compaction"]
            assert engine.pipeline is components["pipeline"]
            assert components["pipeline"].cwd == settings.workspace_dir
        finally:
            await shutdown_components(components)

    @pytest.mark.asyncio
    async def test_registers_expected_tools(self, settings):
        components = await create_components(settings)
        try:
            assert sorted(components["registry"].names()) == [
                "bash",
                "edit_file",
                "glob",
                "grep",
                "list_dir",
                "read_file",
                "task",
                "web_fetch",
                "write_file",
            ]
        finally:
            await shutdown_components(components)

    @pytest.mark.asyncio
    async def test_session_hooks_run(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        log = tmp_path / "sessions.log"
        hooks_file = tmp_path / "hooks.json"
        hooks_file.write_text(json.dumps({
            "hooks": [
                {"name": "start", "event": "session-start", "command": f'echo start >> "{log}"'},
                {"name": "end", "event": "session-end", "command": f'echo end >> "{log}"'},
            ]
        }))
        settings = Settings(ANTHROPIC_API_KEY="sk-ant-test", workspace_dir=str(tmp_path), hooks_file=str(hooks_file))

        components = await create_components(settings)
        assert len(components["hooks"].hooks) == 2
        await shutdown_components(components)

        assert log.read_text().split() == ["start", "end"]

    @pytest.mark.asyncio
    async def test_shutdown_tolerates_partial_components(self):
        await shutdown_components({})

    @pytest.mark.asyncio
    async def test_project_context_in_system_prompt(self, settings, tmp_path):
        (tmp_path / "AGENTS.md").write_text("Never touch vendor/.")
        components = await create_components(settings)
        try:
            prompt = components["engine"].system_prompt
            assert "<project-context>" in prompt
            assert "Never touch vendor/." in prompt
        finally:
            await shutdown_components(components)


class TestConsolePermissionCallback:
    @pytest.mark.asyncio
    async def test_closed_stdin_denies(self, monkeypatch):
        async def closed(text):
            raise EOFError

        monkeypatch.setattr("kaldi.main._prompt", closed)
        ask = _make_permission_callback(PermissionGate("safe"))

        assert await ask(PermissionRequest(tool="bash", args={"command": "ls"}, description="bash: ls")) is False

    @pytest.mark.asyncio
    async def test_always_grants_for_session(self, monkeypatch):
        async def answer(text):
            return "a\n"

        monkeypatch.setattr("kaldi.main._prompt", answer)
        gate = PermissionGate("safe")
        ask = _make_permission_callback(gate)

        assert await ask(PermissionRequest(tool="bash", args={"command": "ls"}, description="bash: ls")) is True
        assert len(gate.overrides) == 1
