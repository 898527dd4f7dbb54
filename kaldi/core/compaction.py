"""Conversation compaction -- keep the live history under a token budget.

Before each model call the engine asks the manager whether the estimated
history size crosses `threshold * context_window`. If so, the older prefix
is summarized through the provider and replaced by one synthetic assistant
message; the most recent messages are kept verbatim.

The cut point always lands on a user message that is not a tool-result
message, so a ToolUse and its ToolResult never end up on opposite sides.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field

from kaldi.core.cancellation import CancelToken
from kaldi.core.errors import TurnCancelled
from kaldi.core.messages import (
    CompletionRequest,
    Message,
    Role,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from kaldi.providers.base import ProviderClient

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Conversation summary]"

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer for a coding agent. Output ONLY a structured summary.
Keep it under 1000 words. Prioritize precision over completeness.

## Goal
[1-2 sentences]

## Progress
- [Completed and in-progress work]

## Key Decisions
- [Decision]: [Rationale]

## Critical Context
- [File paths, commands, error messages, function names -- verbatim]

## Next Steps
1. [Ordered list]
"""

UPDATE_INSTRUCTIONS = """\
Update the existing summary with the new conversation below. Preserve existing
information unless superseded, add new progress and decisions, and keep exact
file paths and error messages. Use the same format."""


class TokenEstimator:
    """chars/4 token estimate, calibrated from observed input_tokens.

    Calibration is an EMA (alpha=0.1) over the tokens-per-char ratio.
    For a fixed ratio the estimate is monotonic in content length.
    """

    def __init__(self, ratio: float = 0.25, alpha: float = 0.1) -> None:
        self._ratio = ratio
        self._alpha = alpha
        self._samples = 0

    @property
    def ratio(self) -> float:
        return self._ratio

    @property
    def samples(self) -> int:
        return self._samples

    def estimate(self, text: str) -> int:
        return int(len(text) * self._ratio)

    def estimate_messages(self, messages: list[Message], system_prompt: str = "") -> int:
        chars = count_chars(messages, system_prompt)
        # 4 tokens of framing per message
        return int(chars * self._ratio) + 4 * len(messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = self._alpha * observed + (1 - self._alpha) * self._ratio
        self._samples += 1


def count_chars(messages: list[Message], system_prompt: str = "") -> int:
    total = len(system_prompt)
    for msg in messages:
        for block in msg.content:
            if isinstance(block, (TextBlock, ThinkingBlock)):
                total += len(block.text)
            elif isinstance(block, ToolUseBlock):
                total += len(block.name) + len(json.dumps(block.input))
            elif isinstance(block, ToolResultBlock):
                total += len(block.content)
    return total


def is_summary_message(msg: Message) -> bool:
    return msg.role == Role.ASSISTANT and msg.text.startswith(SUMMARY_PREFIX)


@dataclass
class CompactionState:
    estimated_tokens: int = 0
    threshold_fraction: float = 0.8
    in_progress: bool = False
    compaction_count: int = 0


@dataclass(frozen=True)
class CompactionEvent:
    timestamp: float
    tokens_before: int
    tokens_after: int
    messages_before: int
    messages_after: int
    summary_chars: int
    duration_ms: int
    usage: Usage = field(default_factory=Usage)


@dataclass
class CompactionManager:
    provider: ProviderClient
    context_window: int = 200_000
    threshold: float = 0.8
    keep_recent: int = 6
    history_size: int = 20
    enabled: bool = True
    summary_model: str | None = None
    estimator: TokenEstimator = field(default_factory=TokenEstimator)

    def __post_init__(self) -> None:
        self.state = CompactionState(threshold_fraction=self.threshold)
        self.events: deque[CompactionEvent] = deque(maxlen=self.history_size)

    @property
    def token_budget(self) -> int:
        return int(self.context_window * self.threshold)

    def estimate(self, messages: list[Message], system_prompt: str = "") -> int:
        tokens = self.estimator.estimate_messages(messages, system_prompt)
        self.state.estimated_tokens = tokens
        return tokens

    def should_compact(self, messages: list[Message], system_prompt: str = "") -> bool:
        if not self.enabled or self.state.in_progress:
            return False
        return self.estimate(messages, system_prompt) > self.token_budget

    def observe(self, messages: list[Message], system_prompt: str, input_tokens: int) -> None:
        """Calibrate the estimator from a provider response's input_tokens."""
        self.estimator.calibrate(count_chars(messages, system_prompt), input_tokens)

    def find_cut_point(self, messages: list[Message]) -> int:
        """Index where the kept suffix starts; 0 means nothing to compact.

        The suffix starts at the first plain user message at or after
        `len - keep_recent`, else the nearest one before it. An existing
        summary at the head is only folded again once at least `keep_recent`
        newer messages precede the cut.
        """
        start = max(1, len(messages) - self.keep_recent)
        cut = 0
        for i in range(start, len(messages)):
            msg = messages[i]
            if msg.role == Role.USER and not msg.is_tool_result_message():
                cut = i
                break
        if cut == 0:
            # Long tool loop in the current turn: keep more rather than split a pair.
            for i in range(start - 1, 0, -1):
                msg = messages[i]
                if msg.role == Role.USER and not msg.is_tool_result_message():
                    cut = i
                    break
        if cut == 0:
            return 0
        if messages and is_summary_message(messages[0]) and cut - 1 < self.keep_recent:
            return 0
        return cut

    async def maybe_compact(
        self,
        messages: list[Message],
        system_prompt: str = "",
        cancel: CancelToken | None = None,
    ) -> list[Message]:
        """Return the history to send: compacted if over budget, else unchanged.

        Failures are logged and the original history is returned. Raises
        TurnCancelled if `cancel` fires while the summary is being written.
        """
        if not self.should_compact(messages, system_prompt):
            return messages
        cut = self.find_cut_point(messages)
        if cut == 0:
            logger.debug("Over budget but no safe cut point (%d messages)", len(messages))
            return messages

        self.state.in_progress = True
        start = time.monotonic()
        tokens_before = self.state.estimated_tokens
        try:
            summarizing = self._summarize(messages[:cut])
            summary, usage = await (cancel.race(summarizing) if cancel is not None else summarizing)
        except TurnCancelled:
            logger.info("Compaction cancelled")
            raise
        except Exception as e:
            logger.warning("Compaction failed, continuing with full history: %s", e)
            return messages
        finally:
            self.state.in_progress = False

        compacted = [Message.assistant_text(f"{SUMMARY_PREFIX}\n\n{summary}"), *messages[cut:]]
        tokens_after = self.estimate(compacted, system_prompt)
        event = CompactionEvent(
            timestamp=time.time(),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            messages_before=len(messages),
            messages_after=len(compacted),
            summary_chars=len(summary),
            duration_ms=int((time.monotonic() - start) * 1000),
            usage=usage,
        )
        self.events.append(event)
        self.state.compaction_count += 1
        logger.info(
            "Compacted history: %d messages -> %d (%d -> %d est. tokens, %d ms, compaction #%d)",
            event.messages_before,
            event.messages_after,
            tokens_before,
            tokens_after,
            event.duration_ms,
            self.state.compaction_count,
        )
        return compacted

    async def _summarize(self, prefix: list[Message]) -> tuple[str, Usage]:
        existing = None
        if prefix and is_summary_message(prefix[0]):
            existing = prefix[0].text[len(SUMMARY_PREFIX):].strip()
            prefix = prefix[1:]

        transcript = serialize_for_summary(prefix)
        if existing:
            content = f"{UPDATE_INSTRUCTIONS}\n\n## Existing Summary\n\n{existing}\n\n## New Conversation\n\n{transcript}"
        else:
            content = transcript

        response = await self.provider.complete(
            CompletionRequest(
                messages=[Message.user_text(content)],
                system_prompt=SUMMARY_SYSTEM_PROMPT,
                model=self.summary_model,
            )
        )
        summary = response.text.strip()
        if not summary:
            raise ValueError("summarizer returned no text")
        return summary, response.usage


def serialize_for_summary(messages: list[Message]) -> str:
    """Render messages as readable text for the summarizer."""
    lines = []
    for msg in messages:
        role = "User" if msg.role == Role.USER else "Assistant"
        parts = []
        for block in msg.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                parts.append(f"[tool call {block.name}: {json.dumps(block.input)[:500]}]")
            elif isinstance(block, ToolResultBlock):
                status = "error" if block.is_error else "result"
                parts.append(f"[tool {status}: {block.content[:1000]}]")
        if parts:
            lines.append(f"**{role}:** {chr(10).join(parts)}")
    return "\n\n".join(lines)
