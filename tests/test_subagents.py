"""Tests for SubagentDelegator: tool isolation, concurrency limits,
partial results and the `task` tool as seen from a parent engine."""

import asyncio

import pytest
from pydantic import ValidationError

from conftest import FakeProvider, make_engine, make_tool, text_response, tool_response
from kaldi.core.cancellation import CancelToken
from kaldi.core.errors import ProviderError
from kaldi.core.messages import ToolUseBlock, Usage
from kaldi.core.permissions import PermissionGate
from kaldi.core.pipeline import ToolExecutionPipeline
from kaldi.core.subagents import (
    TASK_TOOL_NAME,
    ExecutionMode,
    SubagentDelegator,
    SubAgentTask,
    builtin_presets,
)
from kaldi.tools.registry import ToolContext, ToolRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parent_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(make_tool("read_file", output="file contents"))
    registry.register(make_tool("grep", output="a.py:1:match"))
    registry.register(make_tool("write_file", output="written", requires_permission=True, mutating=True))
    registry.register(make_tool("bash", output="ran", requires_permission=True, mutating=True))
    return registry


def _delegator(provider, registry=None, **kwargs) -> SubagentDelegator:
    pipeline = ToolExecutionPipeline(registry or _parent_registry(), PermissionGate("auto"))
    delegator = SubagentDelegator(provider, pipeline, **kwargs)
    delegator.register(pipeline.registry)
    return delegator


def _use(tool_id: str, name: str, **args) -> ToolUseBlock:
    return ToolUseBlock(id=tool_id, name=name, input=args)


# ---------------------------------------------------------------------------
# Tool isolation
# ---------------------------------------------------------------------------


class TestToolIsolation:
    @pytest.mark.asyncio
    async def test_disallowed_tool_is_unknown_to_child(self):
        """allowed={read_file}: a write attempt is 'unknown tool', not a denial."""
        provider = FakeProvider(
            tool_response(_use("w1", "write_file", path="x.txt", content="hi")),
            text_response("I could not write the file."),
        )
        delegator = _delegator(provider)
        task = SubAgentTask(
            goal="write x.txt",
            allowed_tools=["read_file"],
            execution_mode=ExecutionMode.READ_WRITE,
        )

        result = await delegator.run(task)

        assert result.success
        assert result.summary_text == "I could not write the file."
        assert [t.name for t in provider.requests[0].tools] == ["read_file"]
        tool_result = provider.requests[1].messages[-1].tool_results[0]
        assert tool_result.is_error
        assert "unknown tool: write_file" in tool_result.content

    def test_read_only_mode_drops_mutating_tools(self):
        delegator = _delegator(FakeProvider())
        registry = delegator.child_registry(SubAgentTask(goal="look around"))
        assert sorted(registry.names()) == ["grep", "read_file"]

    def test_read_write_mode_keeps_mutating_tools(self):
        delegator = _delegator(FakeProvider())
        registry = delegator.child_registry(
            SubAgentTask(goal="fix it", execution_mode=ExecutionMode.READ_WRITE)
        )
        assert sorted(registry.names()) == ["bash", "grep", "read_file", "write_file"]

    def test_children_never_get_task_tool(self):
        delegator = _delegator(FakeProvider())
        registry = delegator.child_registry(
            SubAgentTask(goal="x", allowed_tools=["read_file", TASK_TOOL_NAME], execution_mode="read-write")
        )
        assert registry.names() == ["read_file"]

    def test_preset_limits_tools(self):
        delegator = _delegator(FakeProvider())
        preset = delegator.presets["explore"]
        registry = delegator.child_registry(
            SubAgentTask(goal="x", execution_mode=ExecutionMode.READ_WRITE), preset
        )
        assert sorted(registry.names()) == ["grep", "read_file"]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TestResults:
    @pytest.mark.asyncio
    async def test_success_summary_and_usage(self):
        provider = FakeProvider(
            tool_response(_use("r1", "read_file", path="a.py"), input_tokens=50, output_tokens=10),
            text_response("a.py defines main()", input_tokens=80, output_tokens=20),
        )

        result = await _delegator(provider).run(SubAgentTask(goal="what does a.py do?"))

        assert result.success
        assert result.summary_text == "a.py defines main()"
        assert result.turns_used == 2
        assert result.usage.input_tokens == 130
        assert result.usage.output_tokens == 30
        assert result.task_id.startswith("sub-")

    @pytest.mark.asyncio
    async def test_max_turns_returns_partial_result(self):
        provider = FakeProvider(
            responder=lambda req: tool_response(_use(f"r{len(req.messages)}", "read_file"), text="partial findings")
        )

        result = await _delegator(provider).run(SubAgentTask(goal="search forever", max_turns=2))

        assert not result.success
        assert result.error == "max turns (2) reached"
        assert result.summary_text == "partial findings"
        assert result.turns_used == 2
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_provider_error_becomes_failed_result(self):
        provider = FakeProvider(ProviderError("backend down", status_code=503))

        result = await _delegator(provider).run(SubAgentTask(goal="x"))

        assert not result.success
        assert "backend down" in result.error

    @pytest.mark.asyncio
    async def test_unknown_agent(self):
        provider = FakeProvider()
        result = await _delegator(provider).run(SubAgentTask(goal="x", agent="wizard"))
        assert result.error == "unknown agent: wizard"
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_preset_sets_prompt_and_turns(self):
        provider = FakeProvider(text_response("found it"))

        await _delegator(provider).run(SubAgentTask(goal="where is main?", agent="explore:quick"))

        assert "exploration agent" in provider.requests[0].system_prompt
        assert "Speed mode: quick" in provider.requests[0].system_prompt

    def test_empty_goal_rejected(self):
        with pytest.raises(ValidationError):
            SubAgentTask(goal="")

    def test_builtin_presets(self):
        presets = builtin_presets()
        assert presets["explore:quick"].max_turns == 5
        assert presets["explore:thorough"].max_turns == 50
        assert presets["plan"].max_turns == 30
        assert "write_file" not in presets["plan"].allowed_tools


# ---------------------------------------------------------------------------
# Concurrency and cancellation
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        async def respond(request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return text_response(f"done: {request.messages[0].text}")

        delegator = _delegator(FakeProvider(responder=respond), max_concurrent=2)
        tasks = [SubAgentTask(goal=f"task {i}") for i in range(5)]

        results = await delegator.run_many(tasks)

        assert peak == 2
        assert [r.summary_text for r in results] == [f"done: task {i}" for i in range(5)]
        assert delegator.active_count == 0

    @pytest.mark.asyncio
    async def test_parent_cancel_reaches_child(self):
        started = asyncio.Event()

        async def hang(request):
            started.set()
            await asyncio.Event().wait()

        delegator = _delegator(FakeProvider(hang))
        token = CancelToken()
        run = asyncio.create_task(delegator.run(SubAgentTask(goal="slow"), token))
        await asyncio.wait_for(started.wait(), timeout=2.0)
        token.cancel()

        result = await asyncio.wait_for(run, timeout=2.0)
        assert not result.success
        assert result.error == "cancelled"

    @pytest.mark.asyncio
    async def test_already_cancelled_parent_skips_run(self):
        provider = FakeProvider()
        token = CancelToken()
        token.cancel()

        result = await _delegator(provider).run(SubAgentTask(goal="x"), token)

        assert result.error == "cancelled"
        assert provider.calls == 0


# ---------------------------------------------------------------------------
# task tool through a parent engine
# ---------------------------------------------------------------------------


class TestTaskTool:
    @pytest.mark.asyncio
    async def test_parent_sees_only_the_summary(self):
        provider = FakeProvider(
            # parent: delegate
            tool_response(_use("p1", "task", prompt="find the config loader", agent="explore:quick")),
            # child: search, then answer
            tool_response(_use("c1", "grep", pattern="Settings")),
            text_response("The loader is kaldi/config.py"),
            # parent: final answer
            text_response("Config lives in kaldi/config.py."),
        )
        registry = _parent_registry()
        pipeline = ToolExecutionPipeline(registry, PermissionGate("auto"))
        SubagentDelegator(provider, pipeline).register(registry)
        engine = make_engine(provider, registry)

        result = await engine.run_turn("where is config loaded?")

        assert result.ok
        assert result.text == "Config lives in kaldi/config.py."
        messages = engine.messages
        assert len(messages) == 4
        task_result = messages[2].tool_results[0]
        assert task_result.tool_use_id == "p1"
        assert task_result.content == "The loader is kaldi/config.py"
        # The child's own history never reaches the parent
        assert len(provider.requests[3].messages) == 3
        # Child started from just the goal, without the task tool
        assert [m.text for m in provider.requests[1].messages] == ["find the config loader"]
        assert TASK_TOOL_NAME not in [t.name for t in provider.requests[1].tools]
        assert TASK_TOOL_NAME in [t.name for t in provider.requests[0].tools]

    @pytest.mark.asyncio
    async def test_failed_child_reported_as_error_result(self):
        provider = FakeProvider(responder=lambda req: tool_response(_use("x", "grep"), text="halfway"))
        delegator = _delegator(provider)
        tool = delegator.pipeline.registry.get(TASK_TOOL_NAME)

        result = await tool.execute({"prompt": "dig", "max_turns": 1}, ToolContext())

        assert not result.success
        assert result.error == "max turns (1) reached"
        assert result.output == "halfway"

    @pytest.mark.asyncio
    async def test_deadline_keeps_partial_result(self):
        """The delegator's deadline, not the pipeline timeout, ends a long child."""

        async def stuck(request):
            await asyncio.sleep(10)

        provider = FakeProvider(tool_response(_use("c1", "grep"), text="found a.py so far"), stuck)
        registry = _parent_registry()
        pipeline = ToolExecutionPipeline(registry, PermissionGate("auto"), timeout=0.05)
        delegator = SubagentDelegator(provider, pipeline, timeout=0.2)
        delegator.register(registry)

        assert registry.get(TASK_TOOL_NAME).timeout > delegator.timeout
        result = await asyncio.wait_for(pipeline.execute(TASK_TOOL_NAME, {"prompt": "dig"}), timeout=2.0)

        assert not result.success
        assert result.error == "timed out after 0.2s (2 turns)"
        assert result.output == "found a.py so far"

    @pytest.mark.asyncio
    async def test_child_usage_counts_toward_parent_session(self):
        provider = FakeProvider(
            tool_response(_use("p1", "task", prompt="look around"), input_tokens=100, output_tokens=10),
            text_response("nothing unusual", input_tokens=40, output_tokens=4),
            text_response("All clear.", input_tokens=200, output_tokens=20),
        )
        registry = _parent_registry()
        pipeline = ToolExecutionPipeline(registry, PermissionGate("auto"))
        SubagentDelegator(provider, pipeline).register(registry)
        engine = make_engine(provider, registry)

        result = await engine.run_turn("check the repo")

        assert result.ok
        assert result.usage == Usage(340, 34)
        assert engine.get_usage() == Usage(340, 34)

    def test_task_tool_schema(self):
        tool = _delegator(FakeProvider()).task_tool()
        assert tool.parameters["required"] == ["prompt"]
        assert "explore:quick" in tool.parameters["properties"]["agent"]["enum"]
        assert not tool.mutating
