"""Hook interceptor -- user-configured commands around pipeline stages.

A hook is a shell command run with KALDI_* environment variables that
describe the event. Hooks can block an action or rewrite the context
seen by downstream stages. The stdout/stderr marker protocol is parsed
in exactly one place, `parse_hook_output()`; everything else works on
the structured HookResult.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from kaldi.core.cancellation import CancelToken
from kaldi.core.errors import TurnCancelled

logger = logging.getLogger(__name__)

BLOCK_MARKER = "KALDI_BLOCK:"
MODIFY_MARKER = "KALDI_MODIFY:"
DEFAULT_HOOK_TIMEOUT = 30.0


class HookEvent(StrEnum):
    PRE_TOOL_CALL = "pre-tool-call"
    POST_TOOL_CALL = "post-tool-call"
    USER_PROMPT_SUBMIT = "user-prompt-submit"
    POST_RESPONSE = "post-response"
    SESSION_START = "session-start"
    SESSION_END = "session-end"


class HookConfig(BaseModel):
    """One configured hook, as loaded from the hooks JSON file."""

    name: str
    event: HookEvent
    command: str
    enabled: bool = True
    timeout: float | None = None  # seconds; None = interceptor default
    tools: list[str] = Field(default_factory=list)  # empty = all tools
    env: dict[str, str] = Field(default_factory=dict)

    def matches(self, event: HookEvent, tool_name: str | None) -> bool:
        if not self.enabled or self.event != event:
            return False
        if tool_name and self.tools and tool_name not in self.tools:
            return False
        return True


class HookContextUpdate(BaseModel):
    """Fields a hook may rewrite via the KALDI_MODIFY marker."""

    model_config = ConfigDict(extra="ignore")

    tool_args: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("tool_args", "toolArgs")
    )
    tool_result: Any = Field(
        default=None, validation_alias=AliasChoices("tool_result", "toolResult")
    )
    user_message: str | None = Field(
        default=None, validation_alias=AliasChoices("user_message", "userMessage")
    )


@dataclass
class HookContext:
    event: HookEvent
    cwd: str
    session_id: str = ""
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    tool_result: Any = None
    user_message: str | None = None
    response: str | None = None

    def to_env(self) -> dict[str, str]:
        env = {
            "KALDI_HOOK_EVENT": str(self.event),
            "KALDI_CWD": self.cwd,
        }
        if self.session_id:
            env["KALDI_SESSION_ID"] = self.session_id
        if self.tool_name:
            env["KALDI_TOOL_NAME"] = self.tool_name
        if self.tool_args is not None:
            env["KALDI_TOOL_ARGS"] = json.dumps(self.tool_args)
        if self.tool_result is not None:
            env["KALDI_TOOL_RESULT"] = json.dumps(self.tool_result, default=str)
        if self.user_message:
            env["KALDI_USER_MESSAGE"] = self.user_message
        if self.response:
            env["KALDI_RESPONSE"] = self.response
        return env


@dataclass
class HookResult:
    hook: str
    success: bool
    exit_code: int | None = None
    output: str = ""
    error: str = ""
    blocked: bool = False
    block_reason: str | None = None
    update: HookContextUpdate | None = None
    duration_ms: int = 0


@dataclass
class HookOutcome:
    """Aggregate of all hooks run for one event."""

    blocked: bool = False
    block_reason: str | None = None
    blocking_hook: str | None = None
    updates: list[HookContextUpdate] = field(default_factory=list)
    results: list[HookResult] = field(default_factory=list)

    @property
    def tool_args(self) -> dict[str, Any] | None:
        """Last tool_args rewrite, if any hook made one."""
        for update in reversed(self.updates):
            if update.tool_args is not None:
                return update.tool_args
        return None

    @property
    def tool_result(self) -> Any:
        for update in reversed(self.updates):
            if update.tool_result is not None:
                return update.tool_result
        return None


def parse_hook_output(hook: str, exit_code: int | None, stdout: str, stderr: str) -> HookResult:
    """Translate the marker protocol into a HookResult.

    Block: non-zero exit AND a line in stderr containing KALDI_BLOCK:;
    the remainder of that line is the reason.
    Modify: KALDI_MODIFY: in stdout followed by a JSON object on the same line.
    """
    blocked = False
    block_reason: str | None = None
    if exit_code not in (0, None):
        for line in stderr.splitlines():
            if BLOCK_MARKER in line:
                blocked = True
                block_reason = line.split(BLOCK_MARKER, 1)[1].strip() or f"Blocked by hook {hook}"
                break

    update: HookContextUpdate | None = None
    for line in stdout.splitlines():
        if MODIFY_MARKER not in line:
            continue
        payload = line.split(MODIFY_MARKER, 1)[1].strip()
        try:
            data = json.loads(payload)
            if isinstance(data, dict):
                update = HookContextUpdate.model_validate(data)
            else:
                logger.warning("Hook %s: KALDI_MODIFY payload is not an object", hook)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Hook %s: invalid KALDI_MODIFY payload: %s", hook, e)
        break

    return HookResult(
        hook=hook,
        success=exit_code == 0,
        exit_code=exit_code,
        output=stdout,
        error=stderr,
        blocked=blocked,
        block_reason=block_reason,
        update=update,
    )


async def execute_hook(
    config: HookConfig,
    context: HookContext,
    timeout: float,
    cancel: CancelToken | None = None,
) -> HookResult:
    """Run one hook command. Timeouts and spawn failures never block."""
    start = time.monotonic()
    env = {**os.environ, **config.env, **context.to_env()}
    try:
        proc = await asyncio.create_subprocess_shell(
            config.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=context.cwd or None,
            env=env,
        )
    except OSError as e:
        logger.warning("Hook %s failed to start: %s", config.name, e)
        return HookResult(hook=config.name, success=False, error=str(e))

    token = cancel or CancelToken()
    try:
        stdout, stderr = await token.race(proc.communicate(), timeout=timeout)
    except (TimeoutError, TurnCancelled) as e:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        if isinstance(e, TurnCancelled):
            raise
        logger.warning("Hook %s timed out after %.1fs, ignoring", config.name, timeout)
        return HookResult(
            hook=config.name,
            success=False,
            error=f"Hook timed out after {timeout}s",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    result = parse_hook_output(
        config.name,
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )
    result.duration_ms = int((time.monotonic() - start) * 1000)
    return result


class HookInterceptor:
    """Holds hook configuration and runs matching hooks for an event.

    Hooks for one event run sequentially in configuration order; the first
    blocking hook stops the chain.
    """

    def __init__(
        self,
        hooks: list[HookConfig] | None = None,
        *,
        default_timeout: float = DEFAULT_HOOK_TIMEOUT,
    ) -> None:
        self._hooks: list[HookConfig] = list(hooks or [])
        self._default_timeout = default_timeout

    @classmethod
    def from_file(cls, path: str | Path, *, default_timeout: float = DEFAULT_HOOK_TIMEOUT) -> HookInterceptor:
        """Load `{"hooks": [...]}` from a JSON file. Missing file = no hooks."""
        p = Path(path).expanduser()
        if not p.exists():
            return cls(default_timeout=default_timeout)
        data = json.loads(p.read_text(encoding="utf-8"))
        hooks = [HookConfig.model_validate(h) for h in data.get("hooks", [])]
        logger.info("Loaded %d hooks from %s", len(hooks), p)
        return cls(hooks, default_timeout=default_timeout)

    @property
    def hooks(self) -> list[HookConfig]:
        return list(self._hooks)

    def add_hook(self, hook: HookConfig) -> None:
        self._hooks = [h for h in self._hooks if h.name != hook.name]
        self._hooks.append(hook)

    def remove_hook(self, name: str) -> bool:
        before = len(self._hooks)
        self._hooks = [h for h in self._hooks if h.name != name]
        return len(self._hooks) < before

    def hooks_for(self, event: HookEvent, tool_name: str | None = None) -> list[HookConfig]:
        return [h for h in self._hooks if h.matches(event, tool_name)]

    async def run(self, context: HookContext, cancel: CancelToken | None = None) -> HookOutcome:
        outcome = HookOutcome()
        for hook in self.hooks_for(context.event, context.tool_name):
            timeout = hook.timeout if hook.timeout is not None else self._default_timeout
            result = await execute_hook(hook, context, timeout, cancel)
            outcome.results.append(result)
            if result.update is not None:
                outcome.updates.append(result.update)
            if result.blocked:
                outcome.blocked = True
                outcome.block_reason = result.block_reason
                outcome.blocking_hook = hook.name
                logger.info("Hook %s blocked %s: %s", hook.name, context.event, result.block_reason)
                break
        return outcome
