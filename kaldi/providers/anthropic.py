"""Anthropic Messages API adapter (SSE streaming)."""

from __future__ import annotations

import logging
from typing import Any

from kaldi.core.errors import ProviderError
from kaldi.core.messages import (
    CompletionRequest,
    Message,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from kaldi.providers.base import HttpProviderClient, StreamEvent, StreamEventType

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
API_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": StopReason.END_TURN,
    "stop_sequence": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
}


def anthropic_headers(api_key: str = "", auth_token: str = "") -> dict[str, str]:
    """Auth headers. An explicit auth token (Bearer) wins over an API key.

    OAT tokens (sk-ant-oat*) need Bearer auth plus the oauth beta header
    even when supplied as the API key.
    """
    headers: dict[str, str] = {
        "anthropic-version": API_VERSION,
        "content-type": "application/json",
    }
    bearer = auth_token or (api_key if "sk-ant-oat" in api_key else "")
    if bearer:
        headers["authorization"] = f"Bearer {bearer}"
        if "sk-ant-oat" in bearer:
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
    elif api_key:
        headers["x-api-key"] = api_key
    else:
        logger.warning("Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- API calls will fail")
    return headers


def _block_to_wire(block: Any) -> dict[str, Any] | None:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text} if block.text else None
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        wire: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
        }
        if block.is_error:
            wire["is_error"] = True
        return wire
    # Thinking blocks are not replayed: they need a signature we never keep.
    return None


def to_wire_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert history to Anthropic format, merging consecutive same-role messages."""
    result: list[dict[str, Any]] = []
    for msg in messages:
        blocks = [b for b in (_block_to_wire(b) for b in msg.content) if b is not None]
        if not blocks:
            continue
        if result and result[-1]["role"] == msg.role:
            result[-1]["content"].extend(blocks)
        else:
            result.append({"role": str(msg.role), "content": blocks})
    # The API wants a user turn first; a compaction summary is an assistant message.
    if result and result[0]["role"] == "assistant":
        result.insert(0, {"role": "user", "content": [{"type": "text", "text": "(continuing)"}]})
    return result


class AnthropicClient(HttpProviderClient):
    name = "anthropic"
    endpoint = "/v1/messages"

    def build_payload(self, request: CompletionRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens or self.max_tokens,
            "messages": to_wire_messages(request.messages),
            "stream": True,
        }
        if request.system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": request.system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if request.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in request.tools
            ]
        return payload

    def error_message(self, status_code: int, body: str) -> str:
        return f"Anthropic API error ({status_code}): {body[:500]}"

    def parse_event(self, data: dict[str, Any], state: dict[str, Any]) -> list[StreamEvent]:
        """Translate one Anthropic SSE event.

        stop_reason arrives in message_delta, not message_start. In-stream
        error events (HTTP 200 with an error body) raise ProviderError.
        """
        event_type = data.get("type")
        # Anthropic content-block index -> tool-call ordinal
        tool_index: dict[int, int] = state.setdefault("tool_index", {})

        if event_type == "error":
            error = data.get("error", {})
            raise ProviderError(
                f"Anthropic stream error: {error.get('type', 'unknown')}: {error.get('message', '')}",
                retryable=error.get("type") == "overloaded_error",
            )

        if event_type == "message_start":
            usage = data.get("message", {}).get("usage") or {}
            return [_usage_event(usage)]

        if event_type == "content_block_start":
            block = data.get("content_block", {})
            if block.get("type") == "tool_use":
                ordinal = tool_index.setdefault(data.get("index", 0), len(tool_index))
                return [
                    StreamEvent(
                        type=StreamEventType.TOOL_START,
                        index=ordinal,
                        tool_id=block.get("id", ""),
                        tool_name=block.get("name", ""),
                    )
                ]
            return []

        if event_type == "content_block_delta":
            delta = data.get("delta", {})
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [StreamEvent(type=StreamEventType.TEXT_DELTA, text=delta.get("text", ""))]
            if delta_type == "thinking_delta":
                return [StreamEvent(type=StreamEventType.THINKING_DELTA, text=delta.get("thinking", ""))]
            if delta_type == "input_json_delta":
                ordinal = tool_index.setdefault(data.get("index", 0), len(tool_index))
                return [
                    StreamEvent(
                        type=StreamEventType.TOOL_INPUT_DELTA,
                        index=ordinal,
                        text=delta.get("partial_json", ""),
                    )
                ]
            return []

        if event_type == "message_delta":
            events = []
            usage = data.get("usage")
            if usage:
                events.append(_usage_event(usage))
            reason = data.get("delta", {}).get("stop_reason")
            if reason:
                events.append(
                    StreamEvent(
                        type=StreamEventType.STOP,
                        stop_reason=_STOP_REASONS.get(reason, StopReason.END_TURN),
                    )
                )
            return events

        # ping, content_block_stop, message_stop
        return []


def _usage_event(usage: dict[str, Any]) -> StreamEvent:
    return StreamEvent(
        type=StreamEventType.USAGE,
        usage=Usage(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        ),
    )
