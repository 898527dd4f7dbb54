"""Conversation engine -- the multi-turn model/tool loop.

One engine owns one conversation history. A run starts with a user
message and alternates model calls and tool execution until the model
stops asking for tools, the turn limit is reached, or the run is
cancelled:

    IDLE -> AWAITING_MODEL -> (EXECUTING_TOOLS -> AWAITING_MODEL)* -> IDLE
                                  terminal: MAX_TURNS_REACHED, ABORTED

Progress is published as EngineEvents to subscribers; `stream_turn()`
exposes the same events as an async iterator.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from kaldi.core.cancellation import CancelToken
from kaldi.core.compaction import CompactionEvent, CompactionManager
from kaldi.core.errors import KaldiError, TurnCancelled
from kaldi.core.hooks import HookContext, HookEvent, HookInterceptor
from kaldi.core.messages import (
    CompletionRequest,
    Message,
    Role,
    StopReason,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from kaldi.core.permissions import PermissionCallback
from kaldi.core.pipeline import CANCELLED, ToolExecutionPipeline
from kaldi.providers.base import ProviderClient, StreamEvent, StreamEventType
from kaldi.tools.registry import ToolExecutionResult

logger = logging.getLogger(__name__)


class EngineState(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    MAX_TURNS_REACHED = "max_turns_reached"
    ABORTED = "aborted"


class EngineEventType(StrEnum):
    TEXT_DELTA = "text_delta"
    THINKING_DELTA = "thinking_delta"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    USAGE = "usage"
    COMPACTION = "compaction"
    TURN_COMPLETE = "turn_complete"
    ERROR = "error"


@dataclass
class TurnResult:
    text: str
    state: EngineState
    turns: int
    usage: Usage = field(default_factory=Usage)
    stop_reason: StopReason | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state == EngineState.IDLE and self.error is None


@dataclass
class EngineEvent:
    type: EngineEventType
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] | None = None
    is_error: bool = False
    usage: Usage | None = None
    compaction: CompactionEvent | None = None
    result: TurnResult | None = None


EngineListener = Callable[[EngineEvent], None]


class ConversationEngine:
    def __init__(
        self,
        provider: ProviderClient,
        pipeline: ToolExecutionPipeline,
        *,
        system_prompt: str = "",
        max_turns: int = 50,
        max_parallel_tools: int = 4,
        compaction: CompactionManager | None = None,
        hooks: HookInterceptor | None = None,
        model: str | None = None,
        cwd: str = ".",
        session_id: str = "",
        parent_cancel: CancelToken | None = None,
    ) -> None:
        self.provider = provider
        self.pipeline = pipeline
        self.system_prompt = system_prompt
        self.max_turns = max_turns
        self.max_parallel_tools = max_parallel_tools
        self.compaction = compaction
        self.hooks = hooks or HookInterceptor()
        self.model = model
        self.cwd = cwd
        self.session_id = session_id
        self.state = EngineState.IDLE

        self._messages: list[Message] = []
        self._usage = Usage()
        self._run_usage = Usage()
        self._listeners: list[EngineListener] = []
        self._parent_cancel = parent_cancel
        self._cancel: CancelToken | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def usage(self) -> Usage:
        return Usage(self._usage.input_tokens, self._usage.output_tokens)

    def get_usage(self) -> Usage:
        return self.usage

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, listener: EngineListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_permission_callback(self, callback: PermissionCallback | None) -> None:
        self.pipeline.permissions.set_callback(callback)

    def cancel(self) -> None:
        """Cancel the running turn, if any. In-flight tools report 'cancelled'."""
        if self._cancel is not None:
            self._cancel.cancel()

    def seed(self, messages: list[Message]) -> None:
        """Replace history. Only valid while idle."""
        if self._running:
            raise KaldiError("cannot replace history while a turn is running")
        self._messages = list(messages)

    async def start_session(self) -> None:
        await self.hooks.run(self._hook_context(HookEvent.SESSION_START))

    async def end_session(self) -> None:
        await self.hooks.run(self._hook_context(HookEvent.SESSION_END))

    async def run_turn(self, user_text: str) -> TurnResult:
        """Run one user turn to completion.

        Raises ProviderError when the backend fails; every message this run
        appended is dropped first, so history is left as it was before.
        """
        if self._running:
            raise KaldiError("a turn is already running on this engine")
        self._running = True
        self._cancel = CancelToken(parent=self._parent_cancel)
        try:
            result = await self._run(user_text, self._cancel)
        except Exception as e:
            self.state = EngineState.IDLE
            self._emit(EngineEvent(type=EngineEventType.ERROR, text=str(e)))
            raise
        finally:
            self._running = False
            self._cancel = None
        self._emit(EngineEvent(type=EngineEventType.TURN_COMPLETE, text=result.text, result=result))
        return result

    async def stream_turn(self, user_text: str) -> AsyncIterator[EngineEvent]:
        """Run a turn, yielding its events as they happen.

        The final event is TURN_COMPLETE (or ERROR, after which the
        provider error is re-raised to the consumer).
        """
        queue: asyncio.Queue[EngineEvent | None] = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        task = asyncio.create_task(self.run_turn(user_text))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while (event := await queue.get()) is not None:
                yield event
            await task
        finally:
            unsubscribe()
            if not task.done():
                self.cancel()
                await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _run(self, user_text: str, cancel: CancelToken) -> TurnResult:
        try:
            submit = await self.hooks.run(
                self._hook_context(HookEvent.USER_PROMPT_SUBMIT, user_message=user_text), cancel
            )
        except TurnCancelled:
            self.state = EngineState.ABORTED
            return TurnResult(text="", state=self.state, turns=0)
        if submit.blocked:
            return TurnResult(
                text="",
                state=EngineState.IDLE,
                turns=0,
                error=f"Blocked by hook {submit.blocking_hook}: {submit.block_reason}",
            )
        for update in submit.updates:
            if update.user_message is not None:
                user_text = update.user_message

        checkpoint = len(self._messages)
        self._messages.append(Message.user_text(user_text))
        self._run_usage = Usage()
        turns = 0
        partial_text = ""
        stop_reason: StopReason | None = None

        while True:
            if cancel.cancelled:
                self.state = EngineState.ABORTED
                break
            if turns >= self.max_turns:
                logger.warning("Max turns (%d) reached", self.max_turns)
                self.state = EngineState.MAX_TURNS_REACHED
                break

            self.state = EngineState.AWAITING_MODEL
            try:
                checkpoint = await self._maybe_compact(checkpoint, cancel)
            except TurnCancelled:
                self.state = EngineState.ABORTED
                break
            turns += 1
            request = CompletionRequest(
                messages=list(self._messages),
                system_prompt=self.system_prompt,
                tools=self.pipeline.registry.specs(),
                model=self.model,
            )
            try:
                response = await cancel.race(self.provider.complete(request, listener=self._on_stream_event))
            except TurnCancelled:
                self.state = EngineState.ABORTED
                break
            except Exception:
                logger.warning("Provider call failed, rolling back %d messages", len(self._messages) - checkpoint)
                del self._messages[checkpoint:]
                raise

            self._record_usage(response.usage)
            if self.compaction is not None:
                self.compaction.observe(request.messages, self.system_prompt, response.usage.input_tokens)

            self._messages.append(response.to_message())
            stop_reason = response.stop_reason
            if response.text:
                partial_text = response.text

            if response.stop_reason != StopReason.TOOL_USE:
                self.state = EngineState.IDLE
                break

            self.state = EngineState.EXECUTING_TOOLS
            self._messages.append(await self._execute_tools(response.tool_uses, cancel))
            if cancel.cancelled:
                self.state = EngineState.ABORTED
                break

        if self.state == EngineState.IDLE:
            await self.hooks.run(self._hook_context(HookEvent.POST_RESPONSE, response=partial_text))

        return TurnResult(
            text=partial_text,
            state=self.state,
            turns=turns,
            usage=self._run_usage,
            stop_reason=stop_reason,
        )

    async def _maybe_compact(self, checkpoint: int, cancel: CancelToken) -> int:
        """Compact history if over budget; returns the rollback checkpoint re-based."""
        if self.compaction is None:
            return checkpoint
        before = len(self._messages)
        compacted = await self.compaction.maybe_compact(self._messages, self.system_prompt, cancel)
        if compacted is self._messages:
            return checkpoint
        # The cut never lands after this run's user message, so the run's
        # messages all survive at the tail.
        appended = before - checkpoint
        self._messages = compacted
        if self.compaction.events:
            event = self.compaction.events[-1]
            self._record_usage(event.usage)
            self._emit(EngineEvent(type=EngineEventType.COMPACTION, compaction=event))
        return max(0, len(compacted) - appended)

    async def _execute_tools(self, uses: list[ToolUseBlock], cancel: CancelToken) -> Message:
        semaphore = asyncio.Semaphore(self.max_parallel_tools)

        async def run_one(use: ToolUseBlock) -> ToolExecutionResult:
            async with semaphore:
                if cancel.cancelled:
                    return ToolExecutionResult.fail(CANCELLED)
                self._emit(
                    EngineEvent(
                        type=EngineEventType.TOOL_START,
                        tool_id=use.id,
                        tool_name=use.name,
                        tool_input=use.input,
                    )
                )
                result = await self.pipeline.execute(use.name, use.input, cancel, on_usage=self._record_usage)
                self._emit(
                    EngineEvent(
                        type=EngineEventType.TOOL_END,
                        tool_id=use.id,
                        tool_name=use.name,
                        text=result.to_text(),
                        is_error=not result.success,
                    )
                )
                return result

        # gather keeps input order, whatever order the tools finish in
        results = await asyncio.gather(*(run_one(u) for u in uses))
        blocks = tuple(
            ToolResultBlock(tool_use_id=use.id, content=result.to_text(), is_error=not result.success)
            for use, result in zip(uses, results, strict=True)
        )
        return Message(role=Role.USER, content=blocks)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _on_stream_event(self, event: StreamEvent) -> None:
        if event.type == StreamEventType.TEXT_DELTA:
            self._emit(EngineEvent(type=EngineEventType.TEXT_DELTA, text=event.text))
        elif event.type == StreamEventType.THINKING_DELTA:
            self._emit(EngineEvent(type=EngineEventType.THINKING_DELTA, text=event.text))

    def _record_usage(self, usage: Usage) -> None:
        """Add usage from any model call made for this run (sub-agents and
        summaries included) to the run and session totals."""
        self._run_usage.add(usage)
        self._usage.add(usage)
        self._emit(EngineEvent(type=EngineEventType.USAGE, usage=usage))

    def _emit(self, event: EngineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Engine listener failed on %s event", event.type)

    def _hook_context(self, event: HookEvent, **kwargs: Any) -> HookContext:
        return HookContext(event=event, cwd=self.cwd, session_id=self.session_id, **kwargs)
