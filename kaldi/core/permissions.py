"""Permission gate for tool execution.

`decide()` is a pure function over (mode, tool, args, overrides).
`PermissionGate` wraps it with the session override table and the
interactive callback. Overrides live in memory only, for the session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from kaldi.tools.registry import ToolDefinition

logger = logging.getLogger(__name__)


class PermissionMode(StrEnum):
    SAFE = "safe"
    AUTO = "auto"
    PLAN = "plan"


class Decision(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass(frozen=True)
class PermissionRequest:
    tool: str
    args: dict[str, Any]
    description: str


PermissionCallback = Callable[[PermissionRequest], Awaitable[bool]]


def override_key(tool: str, args: Mapping[str, Any]) -> str:
    """Session override key, scoped to the arguments that matter for the tool.

    File tools are keyed by path, bash by the command's first word,
    everything else by tool name alone.
    """
    if tool in ("write_file", "edit_file"):
        return f"{tool}:{args.get('path', '')}"
    if tool == "bash":
        command = str(args.get("command", "")).strip()
        first_word = command.split()[0] if command else ""
        return f"bash:{first_word}"
    return tool


def decide(
    mode: PermissionMode,
    tool: ToolDefinition,
    args: Mapping[str, Any],
    overrides: Mapping[str, bool],
) -> Decision:
    """Resolve a tool call to allow / deny / ask. No side effects."""
    if mode == PermissionMode.AUTO:
        return Decision.ALLOW
    if mode == PermissionMode.PLAN:
        return Decision.DENY if tool.mutating else Decision.ALLOW
    if not tool.requires_permission:
        return Decision.ALLOW
    override = overrides.get(override_key(tool.name, args))
    if override is None:
        override = overrides.get(tool.name)
    if override is None:
        return Decision.ASK
    return Decision.ALLOW if override else Decision.DENY


class PermissionGate:
    """Session-scoped permission state around `decide()`.

    Interactive callbacks are serialized: two requests from the same gate
    never reach the callback at the same time.
    """

    def __init__(
        self,
        mode: PermissionMode | str = PermissionMode.SAFE,
        callback: PermissionCallback | None = None,
        *,
        remember_decisions: bool = False,
    ) -> None:
        self.mode = PermissionMode(mode)
        self._callback = callback
        self._remember = remember_decisions
        self._overrides: dict[str, bool] = {}
        self._ask_lock = asyncio.Lock()

    def set_callback(self, callback: PermissionCallback | None) -> None:
        self._callback = callback

    @property
    def overrides(self) -> dict[str, bool]:
        return dict(self._overrides)

    def grant_session(self, tool: str, args: Mapping[str, Any] | None = None) -> None:
        key = override_key(tool, args) if args is not None else tool
        self._overrides[key] = True

    def deny_session(self, tool: str, args: Mapping[str, Any] | None = None) -> None:
        key = override_key(tool, args) if args is not None else tool
        self._overrides[key] = False

    def clear_session(self) -> None:
        self._overrides.clear()

    def check(self, tool: ToolDefinition, args: Mapping[str, Any]) -> Decision:
        return decide(self.mode, tool, args, self._overrides)

    async def authorize(self, tool: ToolDefinition, args: dict[str, Any]) -> tuple[bool, str]:
        """Return (allowed, reason). `reason` explains a denial."""
        decision = self.check(tool, args)
        if decision == Decision.ALLOW:
            return True, ""
        if decision == Decision.DENY:
            if self.mode == PermissionMode.PLAN:
                return False, f"Permission denied: {tool.name} modifies state and plan mode is read-only"
            return False, f"Permission denied: {tool.name} is denied for this session"

        if self._callback is None:
            return False, f"Permission denied: {tool.name} requires approval and no approver is available"

        request = PermissionRequest(
            tool=tool.name,
            args=args,
            description=tool.describe_call(args),
        )
        async with self._ask_lock:
            # Another request may have recorded an override while we waited.
            decision = self.check(tool, args)
            if decision != Decision.ASK:
                allowed = decision == Decision.ALLOW
            else:
                allowed = bool(await self._callback(request))
                if self._remember:
                    self._overrides[override_key(tool.name, args)] = allowed

        logger.info("Permission %s for %s", "granted" if allowed else "denied", request.description)
        if allowed:
            return True, ""
        return False, f"Permission denied by user: {request.description}"
