"""Shared test fixtures: a scripted provider and small tool/engine builders.

No network access: providers are faked here, or driven through
httpx.MockTransport in the provider tests.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from kaldi.core.engine import ConversationEngine
from kaldi.core.hooks import HookInterceptor
from kaldi.core.messages import (
    CompletionRequest,
    CompletionResponse,
    StopReason,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    Usage,
)
from kaldi.core.permissions import PermissionGate
from kaldi.core.pipeline import ToolExecutionPipeline
from kaldi.providers.base import ProviderClient, StreamEvent, StreamEventType
from kaldi.tools.registry import ToolContext, ToolDefinition, ToolExecutionResult, ToolRegistry

# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


def text_response(text: str, input_tokens: int = 10, output_tokens: int = 5) -> CompletionResponse:
    return CompletionResponse(
        content=[TextBlock(text)],
        stop_reason=StopReason.END_TURN,
        usage=Usage(input_tokens, output_tokens),
    )


def tool_response(*uses: ToolUseBlock, text: str = "", input_tokens: int = 10, output_tokens: int = 5) -> CompletionResponse:
    content: list = [TextBlock(text)] if text else []
    content.extend(uses)
    return CompletionResponse(
        content=content,
        stop_reason=StopReason.TOOL_USE,
        usage=Usage(input_tokens, output_tokens),
    )


def response_events(response: CompletionResponse) -> list[StreamEvent]:
    """Render a response as the event stream a backend would produce."""
    events: list[StreamEvent] = []
    tool_index = 0
    for block in response.content:
        if isinstance(block, ThinkingBlock):
            events.append(StreamEvent(type=StreamEventType.THINKING_DELTA, text=block.text))
        elif isinstance(block, TextBlock):
            events.append(StreamEvent(type=StreamEventType.TEXT_DELTA, text=block.text))
        elif isinstance(block, ToolUseBlock):
            events.append(
                StreamEvent(type=StreamEventType.TOOL_START, index=tool_index, tool_id=block.id, tool_name=block.name)
            )
            events.append(
                StreamEvent(type=StreamEventType.TOOL_INPUT_DELTA, index=tool_index, text=json.dumps(block.input))
            )
            tool_index += 1
    events.append(StreamEvent(type=StreamEventType.USAGE, usage=response.usage))
    events.append(StreamEvent(type=StreamEventType.STOP, stop_reason=response.stop_reason))
    return events


class FakeProvider(ProviderClient):
    """Provider that replays scripted responses.

    Script items are CompletionResponses, exceptions (raised), or callables
    taking the request and returning either (sync or async). A `responder`
    callable, when given, answers every request instead of the script.
    """

    name = "fake"

    def __init__(self, *script: Any, responder: Any = None) -> None:
        super().__init__(model="fake-model", max_tokens=1024)
        self.script = list(script)
        self.responder = responder
        self.requests: list[CompletionRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        if self.responder is not None:
            item = self.responder
        elif self.script:
            item = self.script.pop(0)
        else:
            raise AssertionError("FakeProvider script exhausted")

        if callable(item) and not isinstance(item, BaseException):
            item = item(request)
        if inspect.isawaitable(item):
            item = await item
        if isinstance(item, BaseException):
            raise item
        for event in response_events(item):
            yield event


# ---------------------------------------------------------------------------
# Tool and engine builders
# ---------------------------------------------------------------------------


def make_tool(
    name: str,
    handler: Any = None,
    *,
    output: str = "ok",
    parameters: dict[str, Any] | None = None,
    **kwargs: Any,
) -> ToolDefinition:
    """Tool whose handler returns `output` unless a custom handler is given."""

    async def default_handler(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
        return ToolExecutionResult.ok(output)

    return ToolDefinition(
        name=name,
        description=f"test tool {name}",
        parameters=parameters or {"type": "object", "properties": {}},
        execute=handler or default_handler,
        **kwargs,
    )


def make_engine(
    provider: ProviderClient,
    registry: ToolRegistry | None = None,
    *,
    gate: PermissionGate | None = None,
    hooks: HookInterceptor | None = None,
    cwd: str = ".",
    tool_timeout: float = 5.0,
    **kwargs: Any,
) -> ConversationEngine:
    pipeline = ToolExecutionPipeline(
        registry or ToolRegistry(),
        gate or PermissionGate("auto"),
        hooks,
        timeout=tool_timeout,
        cwd=cwd,
    )
    return ConversationEngine(provider, pipeline, hooks=hooks, cwd=cwd, **kwargs)


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
def auto_gate() -> PermissionGate:
    return PermissionGate("auto")
