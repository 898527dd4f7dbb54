"""Provider abstraction -- backend-neutral streaming completion.

Every backend adapter turns its SSE wire format into a flat sequence of
StreamEvents. `StreamAccumulator` folds those events into one
CompletionResponse, so chunk boundaries never influence the result.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from kaldi.core.errors import ProviderError
from kaldi.core.messages import (
    CompletionRequest,
    CompletionResponse,
    ContentBlock,
    StopReason,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    Usage,
)

logger = logging.getLogger(__name__)

# HTTP statuses worth one retry (rate limit, transient server errors, overload)
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 529})
MAX_RETRY_AFTER = 30.0


class StreamEventType(StrEnum):
    TEXT_DELTA = "text_delta"
    THINKING_DELTA = "thinking_delta"
    TOOL_START = "tool_start"
    TOOL_INPUT_DELTA = "tool_input_delta"
    USAGE = "usage"
    STOP = "stop"


@dataclass
class StreamEvent:
    """A single normalized event from a streaming response."""

    type: StreamEventType
    text: str = ""
    index: int = 0  # tool-call index for tool_start / tool_input_delta
    tool_id: str = ""
    tool_name: str = ""
    usage: Usage | None = None
    stop_reason: StopReason | None = None


StreamListener = Callable[[StreamEvent], None]


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    fragments: list[str] = field(default_factory=list)


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    """Parse concatenated argument fragments. Anything but a JSON object -> {}."""
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unparseable tool arguments, using {}: %s", raw[:200])
        return {}
    return value if isinstance(value, dict) else {}


class StreamAccumulator:
    """Folds StreamEvents into a CompletionResponse."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._thinking: list[str] = []
        self._tools: dict[int, _PendingToolCall] = {}  # insertion order = first-seen
        self._usage = Usage()
        self._backend_stop: StopReason | None = None

    def feed(self, event: StreamEvent) -> None:
        match event.type:
            case StreamEventType.TEXT_DELTA:
                self._text.append(event.text)
            case StreamEventType.THINKING_DELTA:
                self._thinking.append(event.text)
            case StreamEventType.TOOL_START:
                call = self._tools.setdefault(event.index, _PendingToolCall())
                if event.tool_id:
                    call.id = event.tool_id
                if event.tool_name:
                    call.name = event.tool_name
            case StreamEventType.TOOL_INPUT_DELTA:
                self._tools.setdefault(event.index, _PendingToolCall()).fragments.append(event.text)
            case StreamEventType.USAGE:
                if event.usage is not None:
                    # Backends report running totals; keep the largest seen.
                    self._usage = Usage(
                        input_tokens=max(self._usage.input_tokens, event.usage.input_tokens),
                        output_tokens=max(self._usage.output_tokens, event.usage.output_tokens),
                    )
            case StreamEventType.STOP:
                self._backend_stop = event.stop_reason

    def result(self) -> CompletionResponse:
        content: list[ContentBlock] = []
        thinking = "".join(self._thinking)
        if thinking:
            content.append(ThinkingBlock(thinking))
        text = "".join(self._text)
        if text:
            content.append(TextBlock(text))
        for index, call in self._tools.items():
            content.append(
                ToolUseBlock(
                    id=call.id or f"call_{index}",
                    name=call.name,
                    input=parse_tool_arguments("".join(call.fragments)),
                )
            )

        if self._tools:
            stop = StopReason.TOOL_USE
        elif self._backend_stop == StopReason.MAX_TOKENS:
            stop = StopReason.MAX_TOKENS
        else:
            stop = StopReason.END_TURN
        return CompletionResponse(content=content, stop_reason=stop, usage=self._usage)


def accumulate(events: Iterable[StreamEvent]) -> CompletionResponse:
    acc = StreamAccumulator()
    for event in events:
        acc.feed(event)
    return acc.result()


class ProviderClient(ABC):
    """Backend-neutral LLM client."""

    name: str = "provider"

    def __init__(self, *, model: str, max_tokens: int = 8192) -> None:
        self.model = model
        self.max_tokens = max_tokens

    @abstractmethod
    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        """Yield normalized events. Raises ProviderError on failure."""

    async def complete(
        self,
        request: CompletionRequest,
        listener: StreamListener | None = None,
    ) -> CompletionResponse:
        """Run one streaming completion and return the accumulated response.

        The listener sees every event in arrival order and is never called
        after this method returns. Events already delivered when a
        ProviderError is raised are not retracted.
        """
        acc = StreamAccumulator()
        async for event in self.stream(request):
            acc.feed(event)
            if listener is not None:
                listener(event)
        return acc.result()

    async def aclose(self) -> None:
        pass


def _retry_delay(response: httpx.Response) -> float:
    try:
        delay = float(response.headers.get("retry-after", "1"))
    except ValueError:
        delay = 1.0
    return max(0.0, min(delay, MAX_RETRY_AFTER))


class HttpProviderClient(ProviderClient):
    """SSE-over-httpx transport shared by the concrete backends.

    Subclasses build the JSON payload and translate one decoded `data:`
    object into zero or more StreamEvents.
    """

    endpoint: str = ""

    def __init__(self, http: httpx.AsyncClient, *, model: str, max_tokens: int = 8192) -> None:
        super().__init__(model=model, max_tokens=max_tokens)
        self._http = http

    @abstractmethod
    def build_payload(self, request: CompletionRequest) -> dict[str, Any]:
        ...

    @abstractmethod
    def parse_event(self, data: dict[str, Any], state: dict[str, Any]) -> list[StreamEvent]:
        """`state` is scratch space private to one stream."""

    def error_message(self, status_code: int, body: str) -> str:
        return f"{self.name} API error ({status_code}): {body[:500]}"

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(request)

        # One retry, and only while nothing has been emitted yet.
        for attempt in range(2):
            emitted = False
            try:
                async with self._http.stream("POST", self.endpoint, json=payload) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        retryable = response.status_code in RETRYABLE_STATUSES
                        if retryable and attempt == 0:
                            delay = _retry_delay(response)
                            logger.warning(
                                "%s API error %d, retrying in %.1fs",
                                self.name,
                                response.status_code,
                                delay,
                            )
                            await asyncio.sleep(delay)
                            continue
                        raise ProviderError(
                            self.error_message(response.status_code, body),
                            status_code=response.status_code,
                            retryable=retryable,
                        )

                    state: dict[str, Any] = {}
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        raw = line[5:].strip()
                        if raw == "[DONE]":
                            break
                        if not raw:
                            continue
                        try:
                            data = json.loads(raw)
                        except json.JSONDecodeError as e:
                            raise ProviderError(f"{self.name}: malformed stream chunk: {raw[:200]}") from e
                        if not isinstance(data, dict):
                            raise ProviderError(f"{self.name}: malformed stream chunk: {raw[:200]}")
                        for event in self.parse_event(data, state):
                            emitted = True
                            yield event
                    return
            except httpx.TimeoutException as e:
                if attempt == 0 and not emitted:
                    logger.warning("%s request timed out, retrying: %s", self.name, e)
                    await asyncio.sleep(1)
                    continue
                raise ProviderError(f"{self.name} request timed out: {e}", retryable=True) from e
            except httpx.HTTPError as e:
                # Connection errors are not retried
                raise ProviderError(f"{self.name} HTTP error: {e}") from e

    async def aclose(self) -> None:
        await self._http.aclose()
