"""Conversation data model shared by providers, the engine and compaction.

Content blocks are frozen dataclasses; a Message is immutable once built.
Wire formats (Anthropic / OpenAI JSON) live in the provider adapters, not here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class StopReason(StrEnum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    ERROR = "error"


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ThinkingBlock:
    """Model-internal reasoning. May be partial or redacted."""

    text: str
    type: str = field(default="thinking", init=False)


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_use", init=False)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = field(default="tool_result", init=False)


ContentBlock = TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock


@dataclass(frozen=True)
class Message:
    """A single message in a conversation."""

    role: Role
    content: tuple[ContentBlock, ...]

    @classmethod
    def user_text(cls, text: str) -> Message:
        return cls(role=Role.USER, content=(TextBlock(text),))

    @classmethod
    def assistant_text(cls, text: str) -> Message:
        return cls(role=Role.ASSISTANT, content=(TextBlock(text),))

    @property
    def text(self) -> str:
        """Concatenated text of all TextBlocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def is_tool_result_message(self) -> bool:
        """User message carrying tool results rather than user text."""
        return self.role == Role.USER and any(
            isinstance(b, ToolResultBlock) for b in self.content
        )


@dataclass
class Usage:
    """Token usage. Additive across responses."""

    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ToolSpec:
    """Tool catalog entry sent to the model."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class CompletionRequest:
    messages: list[Message]
    system_prompt: str = ""
    tools: list[ToolSpec] = field(default_factory=list)
    model: str | None = None
    max_tokens: int | None = None


@dataclass
class CompletionResponse:
    content: list[ContentBlock]
    stop_reason: StopReason
    usage: Usage = field(default_factory=Usage)

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def to_message(self) -> Message:
        return Message(role=Role.ASSISTANT, content=tuple(self.content))
