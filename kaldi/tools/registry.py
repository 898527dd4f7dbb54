"""Tool registry: name -> ToolDefinition, with filtered views for sub-agents.

Each handler is an async callable `(args, context) -> ToolExecutionResult`.
Arguments are validated against the tool's JSON schema before dispatch.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from kaldi.core.cancellation import CancelToken
from kaldi.core.messages import ToolSpec, Usage

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_CHARS = 30000


@dataclass
class ToolExecutionResult:
    success: bool
    output: str = ""
    error: str | None = None

    @classmethod
    def ok(cls, output: str) -> ToolExecutionResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, output: str = "") -> ToolExecutionResult:
        return cls(success=False, output=output, error=error)

    def to_text(self) -> str:
        """Text folded into the conversation as the tool_result content."""
        if self.success:
            return self.output or "(no output)"
        if self.output:
            return f"Error: {self.error}\n{self.output}"
        return f"Error: {self.error}"


UsageSink = Callable[[Usage], None]


@dataclass
class ToolContext:
    """Execution context handed to every tool call."""

    cwd: str = "."
    env: dict[str, str] = field(default_factory=lambda: dict(os.environ))
    cancel: CancelToken = field(default_factory=CancelToken)
    session_id: str = ""
    on_usage: UsageSink | None = None


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[ToolExecutionResult]]


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any]
    execute: ToolHandler
    requires_permission: bool = False
    mutating: bool = False
    max_output_chars: int | None = None
    timeout: float | None = None  # overrides the pipeline timeout
    describe: Callable[[dict[str, Any]], str] | None = None

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def describe_call(self, args: dict[str, Any]) -> str:
        """Human-readable summary used in permission prompts."""
        if self.describe is not None:
            return self.describe(args)
        rendered = ", ".join(f"{k}={v!r}" for k, v in args.items())
        return f"{self.name}: {rendered[:100]}"


def truncate_output(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n\n... [output truncated at {limit} chars, {len(text)} total]"


class ToolRegistry:
    """Registers tool definitions and exposes them by name.

    A registry created via `filtered()` is a read-only view over its
    parent: tools outside the allowed set are invisible, not denied.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._validators: dict[str, Draft202012Validator] = {}
        self._parent: ToolRegistry | None = None
        self._allowed: frozenset[str] | None = None

    def register(self, tool: ToolDefinition, *, replace: bool = False) -> None:
        if self._parent is not None:
            raise RuntimeError("cannot register tools on a filtered registry view")
        if tool.name in self._tools and not replace:
            raise ValueError(f"tool already registered: {tool.name}")
        try:
            Draft202012Validator.check_schema(tool.parameters)
        except SchemaError as e:
            raise ValueError(f"invalid parameter schema for {tool.name}: {e.message}") from e
        self._tools[tool.name] = tool
        self._validators.pop(tool.name, None)
        logger.debug("Registered tool %s", tool.name)

    def unregister(self, name: str) -> bool:
        if self._parent is not None:
            raise RuntimeError("cannot unregister tools on a filtered registry view")
        self._validators.pop(name, None)
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolDefinition | None:
        if self._parent is not None:
            if self._allowed is not None and name not in self._allowed:
                return None
            return self._parent.get(name)
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def all_tools(self) -> list[ToolDefinition]:
        if self._parent is not None:
            return [t for t in self._parent.all_tools() if self._allowed is None or t.name in self._allowed]
        return list(self._tools.values())

    def names(self) -> list[str]:
        return [t.name for t in self.all_tools()]

    def specs(self) -> list[ToolSpec]:
        return [t.spec() for t in self.all_tools()]

    def filtered(
        self,
        allowed: Iterable[str] | None = None,
        *,
        exclude_mutating: bool = False,
    ) -> ToolRegistry:
        """Return a view restricted to `allowed` (and non-mutating tools if asked)."""
        names = set(self.names()) if allowed is None else set(allowed) & set(self.names())
        if exclude_mutating:
            names = {n for n in names if not self.get(n).mutating}  # type: ignore[union-attr]
        view = ToolRegistry()
        view._parent = self
        view._allowed = frozenset(names)
        return view

    def validate(self, tool: ToolDefinition, args: dict[str, Any]) -> str | None:
        """Validate args against the tool schema. Returns an error message or None."""
        if self._parent is not None:
            return self._parent.validate(tool, args)
        validator = self._validators.get(tool.name)
        if validator is None:
            validator = Draft202012Validator(tool.parameters)
            self._validators[tool.name] = validator
        error = next(iter(validator.iter_errors(args)), None)
        if error is None:
            return None
        location = "/".join(str(p) for p in error.absolute_path)
        return f"invalid arguments for {tool.name}{f' at {location}' if location else ''}: {error.message}"
