"""Tool execution pipeline.

lookup -> pre-hooks -> schema validation -> permission -> execute
(timeout + cancellation) -> post-hooks -> truncate.

`execute()` never raises for tool-level problems: every failure becomes
a ToolExecutionResult with success=False, which the engine folds into
history as an error tool_result.
"""

from __future__ import annotations

import logging
from typing import Any

from kaldi.core.cancellation import CancelToken
from kaldi.core.errors import TurnCancelled
from kaldi.core.hooks import HookContext, HookEvent, HookInterceptor
from kaldi.core.permissions import PermissionGate
from kaldi.tools.registry import (
    DEFAULT_MAX_OUTPUT_CHARS,
    ToolContext,
    ToolDefinition,
    ToolExecutionResult,
    ToolRegistry,
    UsageSink,
    truncate_output,
)

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


class ToolExecutionPipeline:
    def __init__(
        self,
        registry: ToolRegistry,
        permissions: PermissionGate,
        hooks: HookInterceptor | None = None,
        *,
        timeout: float = 120.0,
        default_max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        cwd: str = ".",
        session_id: str = "",
    ) -> None:
        self.registry = registry
        self.permissions = permissions
        self.hooks = hooks or HookInterceptor()
        self.timeout = timeout
        self.default_max_output_chars = default_max_output_chars
        self.cwd = cwd
        self.session_id = session_id

    def with_registry(self, registry: ToolRegistry) -> ToolExecutionPipeline:
        """Same gate, hooks and limits over a different (usually filtered) registry."""
        return ToolExecutionPipeline(
            registry,
            self.permissions,
            self.hooks,
            timeout=self.timeout,
            default_max_output_chars=self.default_max_output_chars,
            cwd=self.cwd,
            session_id=self.session_id,
        )

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        cancel: CancelToken | None = None,
        *,
        on_usage: UsageSink | None = None,
    ) -> ToolExecutionResult:
        """Run one tool call through every stage. Never raises.

        `on_usage` receives token usage from model calls a tool makes on
        the caller's behalf (the `task` tool's sub-agents).
        """
        token = cancel or CancelToken()
        tool = self.registry.get(name)
        if tool is None:
            return ToolExecutionResult.fail(f"unknown tool: {name}")
        if token.cancelled:
            return ToolExecutionResult.fail(CANCELLED)

        try:
            return await self._run(tool, dict(args), token, on_usage)
        except TurnCancelled:
            return ToolExecutionResult.fail(CANCELLED)
        except Exception as e:
            # Hooks and the permission callback are user code too
            logger.exception("Pipeline failed for tool %s", name)
            return ToolExecutionResult.fail(f"{type(e).__name__}: {e}")

    async def _run(
        self,
        tool: ToolDefinition,
        args: dict[str, Any],
        token: CancelToken,
        on_usage: UsageSink | None,
    ) -> ToolExecutionResult:
        pre = await self.hooks.run(self._hook_context(HookEvent.PRE_TOOL_CALL, tool.name, args), token)
        if pre.blocked:
            return ToolExecutionResult.fail(f"Blocked by hook {pre.blocking_hook}: {pre.block_reason}")
        if pre.tool_args is not None:
            args = pre.tool_args

        error = self.registry.validate(tool, args)
        if error:
            return ToolExecutionResult.fail(error)

        allowed, reason = await self.permissions.authorize(tool, args)
        if not allowed:
            return ToolExecutionResult.fail(reason)
        # The turn may have been cancelled while the prompt was open.
        if token.cancelled:
            return ToolExecutionResult.fail(CANCELLED)

        result = await self._invoke(tool, args, token, on_usage)

        context = self._hook_context(HookEvent.POST_TOOL_CALL, tool.name, args)
        context.tool_result = {"success": result.success, "output": result.output, "error": result.error}
        post = await self.hooks.run(context, token)
        if post.tool_result is not None:
            result = _apply_result_rewrite(result, post.tool_result)

        limit = tool.max_output_chars or self.default_max_output_chars
        result.output = truncate_output(result.output, limit)
        return result

    async def _invoke(
        self,
        tool: ToolDefinition,
        args: dict[str, Any],
        token: CancelToken,
        on_usage: UsageSink | None,
    ) -> ToolExecutionResult:
        ctx = ToolContext(cwd=self.cwd, cancel=token, session_id=self.session_id, on_usage=on_usage)
        timeout = tool.timeout if tool.timeout is not None else self.timeout
        try:
            return await token.race(tool.execute(args, ctx), timeout=timeout)
        except TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", tool.name, timeout)
            return ToolExecutionResult.fail(f"Tool {tool.name} timed out after {timeout}s")
        except TurnCancelled:
            raise
        except Exception as e:
            logger.exception("Tool %s raised", tool.name)
            return ToolExecutionResult.fail(f"{type(e).__name__}: {e}")

    def _hook_context(self, event: HookEvent, tool_name: str, args: dict[str, Any]) -> HookContext:
        return HookContext(
            event=event,
            cwd=self.cwd,
            session_id=self.session_id,
            tool_name=tool_name,
            tool_args=args,
        )


def _apply_result_rewrite(result: ToolExecutionResult, rewrite: Any) -> ToolExecutionResult:
    """Apply a post-hook KALDI_MODIFY tool_result (string or object)."""
    if isinstance(rewrite, dict):
        return ToolExecutionResult(
            success=bool(rewrite.get("success", result.success)),
            output=str(rewrite.get("output", result.output)),
            error=rewrite.get("error", result.error),
        )
    return ToolExecutionResult(success=result.success, output=str(rewrite), error=result.error)
