"""OpenAI-compatible Chat Completions adapter.

Also serves OpenRouter and Ollama, which speak the same protocol at a
different base URL.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from kaldi.core.errors import ProviderError
from kaldi.core.messages import (
    CompletionRequest,
    Message,
    Role,
    StopReason,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from kaldi.providers.base import HttpProviderClient, StreamEvent, StreamEventType

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
}

_FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
}


def openai_headers(api_key: str = "") -> dict[str, str]:
    headers = {"content-type": "application/json"}
    if api_key:
        headers["authorization"] = f"Bearer {api_key}"
    return headers


def to_wire_messages(messages: list[Message], system_prompt: str = "") -> list[dict[str, Any]]:
    """Convert history to chat-completions messages.

    Tool results become separate `tool` role messages; assistant tool calls
    carry their input re-serialized as a JSON string.
    """
    result: list[dict[str, Any]] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if msg.role == Role.ASSISTANT:
            tool_calls = [
                {
                    "id": b.id,
                    "type": "function",
                    "function": {"name": b.name, "arguments": json.dumps(b.input)},
                }
                for b in msg.content
                if isinstance(b, ToolUseBlock)
            ]
            wire: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            if tool_calls:
                wire["tool_calls"] = tool_calls
            result.append(wire)
            continue

        for block in msg.content:
            if isinstance(block, ToolResultBlock):
                result.append(
                    {"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content}
                )
        if msg.text:
            result.append({"role": "user", "content": msg.text})
    return result


class OpenAICompatibleClient(HttpProviderClient):
    endpoint = "/chat/completions"

    def __init__(self, http: httpx.AsyncClient, *, model: str, max_tokens: int = 8192, name: str = "openai") -> None:
        super().__init__(http, model=model, max_tokens=max_tokens)
        self.name = name

    def build_payload(self, request: CompletionRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens or self.max_tokens,
            "messages": to_wire_messages(request.messages, request.system_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in request.tools
            ]
        return payload

    def parse_event(self, data: dict[str, Any], state: dict[str, Any]) -> list[StreamEvent]:
        if "error" in data:
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ProviderError(f"{self.name} stream error: {message}")

        events: list[StreamEvent] = []
        usage = data.get("usage")
        if usage:
            events.append(
                StreamEvent(
                    type=StreamEventType.USAGE,
                    usage=Usage(
                        input_tokens=int(usage.get("prompt_tokens") or 0),
                        output_tokens=int(usage.get("completion_tokens") or 0),
                    ),
                )
            )

        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("reasoning"):
                events.append(StreamEvent(type=StreamEventType.THINKING_DELTA, text=delta["reasoning"]))
            if delta.get("content"):
                events.append(StreamEvent(type=StreamEventType.TEXT_DELTA, text=delta["content"]))
            for call in delta.get("tool_calls") or []:
                index = call.get("index", 0)
                function = call.get("function") or {}
                if call.get("id") or function.get("name"):
                    events.append(
                        StreamEvent(
                            type=StreamEventType.TOOL_START,
                            index=index,
                            tool_id=call.get("id") or "",
                            tool_name=function.get("name") or "",
                        )
                    )
                if function.get("arguments"):
                    events.append(
                        StreamEvent(
                            type=StreamEventType.TOOL_INPUT_DELTA,
                            index=index,
                            text=function["arguments"],
                        )
                    )
            reason = choice.get("finish_reason")
            if reason:
                events.append(
                    StreamEvent(
                        type=StreamEventType.STOP,
                        stop_reason=_FINISH_REASONS.get(reason, StopReason.END_TURN),
                    )
                )
        return events
