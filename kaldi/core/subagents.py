"""Sub-agent delegation -- isolated child conversations with restricted tools.

Each task runs in a fresh ConversationEngine whose history holds only the
goal, over a filtered view of the parent's registry. The child's history
is dropped once its result is captured; only the summary text reaches the
parent, as the output of the `task` tool.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from kaldi.core.cancellation import CancelToken
from kaldi.core.engine import ConversationEngine, EngineState
from kaldi.core.errors import KaldiError
from kaldi.core.messages import Usage
from kaldi.core.pipeline import ToolExecutionPipeline
from kaldi.providers.base import ProviderClient
from kaldi.tools.registry import ToolContext, ToolDefinition, ToolExecutionResult, ToolRegistry

logger = logging.getLogger(__name__)

TASK_TOOL_NAME = "task"
READ_ONLY_TOOLS = ("read_file", "glob", "grep", "list_dir")
# Pipeline timeout for `task` = delegator timeout + grace; the delegator's
# own deadline must fire first.
TASK_TIMEOUT_GRACE = 10.0


class ExecutionMode(StrEnum):
    READ_ONLY = "read-only"
    READ_WRITE = "read-write"


class SubAgentTask(BaseModel):
    goal: str = Field(min_length=1)
    allowed_tools: list[str] | None = None  # None = everything the parent has
    execution_mode: ExecutionMode = ExecutionMode.READ_ONLY
    parent_conversation_id: str = ""
    max_turns: int | None = Field(default=None, ge=1)
    system_prompt: str | None = None
    agent: str | None = None  # preset name, e.g. "explore:quick"


@dataclass
class SubAgentResult:
    success: bool
    summary_text: str
    turns_used: int
    usage: Usage = field(default_factory=Usage)
    error: str | None = None
    task_id: str = ""


@dataclass(frozen=True)
class AgentPreset:
    name: str
    description: str
    system_prompt: str
    allowed_tools: tuple[str, ...]
    max_turns: int


EXPLORE_PROMPT = """\
You are an exploration agent specialized in searching and understanding codebases.

Search through code to find relevant files, understand patterns, and answer
questions about the codebase structure. Start broad, then narrow down: use
glob to find files by name, grep for code patterns, and read_file for details.

Report clearly: the relevant files you found, the key patterns, and a direct
answer to the question asked. You are READ-ONLY and cannot modify files."""

_EXPLORE_SPEEDS = {
    "quick": (5, "Make at most 3-5 tool calls. Check the most likely locations first."),
    "medium": (15, "Make up to 10-15 tool calls, searching several likely locations."),
    "very_thorough": (50, "Be comprehensive: search all relevant directories and cross-reference files."),
}

PLAN_PROMPT = """\
You are a planning agent. Research the codebase and produce a step-by-step
implementation plan for the requested feature, fix or refactor.

Structure the plan as: Analysis (current state, relevant patterns),
Implementation Steps, Files to Modify/Create, and Considerations (edge cases,
risks, testing). You are READ-ONLY and cannot modify files."""


def explore_preset(speed: str = "medium") -> AgentPreset:
    max_turns, addendum = _EXPLORE_SPEEDS[speed]
    return AgentPreset(
        name="explore",
        description=f"Fast, read-only codebase search ({speed} mode)",
        system_prompt=f"{EXPLORE_PROMPT}\n\nSpeed mode: {speed}. {addendum}",
        allowed_tools=READ_ONLY_TOOLS,
        max_turns=max_turns,
    )


def builtin_presets() -> dict[str, AgentPreset]:
    return {
        "explore": explore_preset("medium"),
        "explore:quick": explore_preset("quick"),
        "explore:medium": explore_preset("medium"),
        "explore:thorough": explore_preset("very_thorough"),
        "plan": AgentPreset(
            name="plan",
            description="Research agent for planning implementation approaches",
            system_prompt=PLAN_PROMPT,
            allowed_tools=READ_ONLY_TOOLS,
            max_turns=30,
        ),
    }


class SubagentDelegator:
    """Runs SubAgentTasks under a shared concurrency limit."""

    def __init__(
        self,
        provider: ProviderClient,
        pipeline: ToolExecutionPipeline,
        *,
        max_concurrent: int = 3,
        default_max_turns: int = 15,
        max_parallel_tools: int = 4,
        model: str | None = None,
        timeout: float = 600.0,
    ) -> None:
        self.provider = provider
        self.pipeline = pipeline
        self.max_concurrent = max_concurrent
        self.default_max_turns = default_max_turns
        self.max_parallel_tools = max_parallel_tools
        self.model = model
        self.timeout = timeout
        self.presets = builtin_presets()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._ids = itertools.count(1)
        self._active = 0

    @property
    def active_count(self) -> int:
        return self._active

    def child_registry(self, task: SubAgentTask, preset: AgentPreset | None = None) -> ToolRegistry:
        allowed = task.allowed_tools
        if allowed is None and preset is not None:
            allowed = list(preset.allowed_tools)
        names = self.pipeline.registry.names() if allowed is None else allowed
        # Children never delegate further
        names = [n for n in names if n != TASK_TOOL_NAME]
        return self.pipeline.registry.filtered(
            names,
            exclude_mutating=task.execution_mode == ExecutionMode.READ_ONLY,
        )

    async def run(self, task: SubAgentTask, cancel: CancelToken | None = None) -> SubAgentResult:
        """Run one task. Never raises for child failures; see SubAgentResult.error."""
        task_id = f"sub-{next(self._ids)}"
        preset = None
        if task.agent:
            preset = self.presets.get(task.agent)
            if preset is None:
                return SubAgentResult(False, "", 0, error=f"unknown agent: {task.agent}", task_id=task_id)

        max_turns = task.max_turns or (preset.max_turns if preset else self.default_max_turns)
        system_prompt = task.system_prompt or (preset.system_prompt if preset else "")
        registry = self.child_registry(task, preset)
        session_id = f"{task.parent_conversation_id}:{task_id}" if task.parent_conversation_id else task_id
        child_cancel = CancelToken(parent=cancel)
        timed_out = False

        def expire() -> None:
            nonlocal timed_out
            timed_out = True
            child_cancel.cancel()

        engine = ConversationEngine(
            self.provider,
            self.pipeline.with_registry(registry),
            system_prompt=system_prompt,
            max_turns=max_turns,
            max_parallel_tools=self.max_parallel_tools,
            model=self.model,
            cwd=self.pipeline.cwd,
            session_id=session_id,
            parent_cancel=child_cancel,
        )

        async with self._semaphore:
            if child_cancel.cancelled:
                return SubAgentResult(False, "", 0, error="cancelled", task_id=task_id)
            self._active += 1
            logger.info("Sub-agent %s started (tools: %s, max_turns: %d)", task_id, registry.names(), max_turns)
            deadline = asyncio.get_running_loop().call_later(self.timeout, expire)
            try:
                result = await engine.run_turn(task.goal)
            except KaldiError as e:
                logger.warning("Sub-agent %s failed: %s", task_id, e)
                return SubAgentResult(False, "", 0, usage=engine.usage, error=str(e), task_id=task_id)
            finally:
                deadline.cancel()
                self._active -= 1

        if result.state == EngineState.MAX_TURNS_REACHED:
            error = f"max turns ({max_turns}) reached"
        elif result.state == EngineState.ABORTED and timed_out:
            logger.warning("Sub-agent %s timed out after %.0fs", task_id, self.timeout)
            error = f"timed out after {self.timeout}s ({result.turns} turns)"
        elif result.state == EngineState.ABORTED:
            error = "cancelled"
        else:
            error = result.error

        logger.info("Sub-agent %s finished: %s after %d turns", task_id, error or "ok", result.turns)
        return SubAgentResult(
            success=error is None,
            summary_text=result.text,
            turns_used=result.turns,
            usage=result.usage,
            error=error,
            task_id=task_id,
        )

    async def run_many(self, tasks: list[SubAgentTask], cancel: CancelToken | None = None) -> list[SubAgentResult]:
        """Run tasks concurrently (bounded by max_concurrent); results in task order."""
        return list(await asyncio.gather(*(self.run(t, cancel) for t in tasks)))

    # ------------------------------------------------------------------
    # `task` tool
    # ------------------------------------------------------------------

    def task_tool(self) -> ToolDefinition:
        agents = sorted(self.presets)

        async def execute(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
            try:
                task = SubAgentTask(
                    goal=args.get("prompt", ""),
                    agent=args.get("agent"),
                    allowed_tools=args.get("allowed_tools"),
                    execution_mode=args.get("mode", ExecutionMode.READ_ONLY),
                    max_turns=args.get("max_turns"),
                    parent_conversation_id=ctx.session_id,
                )
            except ValidationError as e:
                return ToolExecutionResult.fail(f"invalid task: {e.errors()[0]['msg']}")

            result = await self.run(task, cancel=ctx.cancel)
            if ctx.on_usage is not None:
                ctx.on_usage(result.usage)
            if result.success:
                return ToolExecutionResult.ok(result.summary_text)
            return ToolExecutionResult.fail(result.error or "sub-agent failed", output=result.summary_text)

        return ToolDefinition(
            name=TASK_TOOL_NAME,
            description=(
                "Delegate a self-contained task to a sub-agent with its own tool restrictions. "
                "Returns the sub-agent's final answer. Agents: "
                + ", ".join(f"{name} ({self.presets[name].description})" for name in agents)
            ),
            parameters={
                "type": "object",
                "properties": {
                    "prompt": {"type": "string", "description": "Goal for the sub-agent"},
                    "agent": {"type": "string", "enum": agents},
                    "allowed_tools": {"type": "array", "items": {"type": "string"}},
                    "mode": {"type": "string", "enum": [m.value for m in ExecutionMode]},
                    "max_turns": {"type": "integer", "minimum": 1},
                },
                "required": ["prompt"],
            },
            execute=execute,
            timeout=self.timeout + TASK_TIMEOUT_GRACE,
            describe=lambda args: f"Sub-agent: {str(args.get('prompt', ''))[:80]}",
        )

    def register(self, registry: ToolRegistry) -> None:
        registry.register(self.task_tool(), replace=True)
