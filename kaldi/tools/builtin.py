"""Built-in tools: bash, read_file, write_file, edit_file, list_dir.

Paths resolve against the tool context's cwd (the workspace) and may not
escape it. Handlers return ToolExecutionResult; unexpected exceptions are
left to the pipeline, which logs them and reports a failed result.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from kaldi.tools.registry import ToolContext, ToolDefinition, ToolExecutionResult, ToolRegistry

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 600  # seconds
_DEFAULT_BASH_TIMEOUT = 120
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def resolve_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve `path_str` inside the workspace.

    Raises ValueError if the path escapes it.
    """
    workspace = Path(workspace_dir).resolve()
    raw = Path(path_str).expanduser()
    target = raw.resolve() if raw.is_absolute() else (workspace / raw).resolve()
    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    """Execute a shell command in the workspace directory.

    The process is killed if the call times out or is cancelled.
    """
    command = args["command"]
    timeout = max(1, min(int(args.get("timeout", _DEFAULT_BASH_TIMEOUT)), _MAX_BASH_TIMEOUT))

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=ctx.cwd,
        env=ctx.env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        return ToolExecutionResult.fail(f"Command timed out after {timeout}s: {command}")
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    output = "\n".join(parts) if parts else "(no output)"

    if proc.returncode != 0:
        return ToolExecutionResult.fail(f"Exit code: {proc.returncode}", output=output)
    return ToolExecutionResult.ok(output)


async def read_file(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    """Read a file with `cat -n` style line numbers.

    `offset` is a 0-indexed line offset, `limit` a line count (0 = all).
    """
    path = args["path"]
    offset = int(args.get("offset", 0))
    limit = int(args.get("limit", 0))
    try:
        target = resolve_path(path, ctx.cwd)
    except ValueError as e:
        return ToolExecutionResult.fail(str(e))

    if not target.exists():
        return ToolExecutionResult.fail(f"File not found: {path}")
    if not target.is_file():
        return ToolExecutionResult.fail(f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE and not limit:
        return ToolExecutionResult.fail(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions."
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    lines = content.splitlines()
    selected = lines[offset:]
    if limit > 0:
        selected = selected[:limit]
    if not selected:
        return ToolExecutionResult.ok("(empty file)" if not lines else f"(no lines at offset {offset})")

    numbered = "\n".join(f"{n:>6}\t{line}" for n, line in enumerate(selected, start=offset + 1))
    return ToolExecutionResult.ok(numbered)


async def write_file(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    path = args["path"]
    content = args["content"]
    try:
        target = resolve_path(path, ctx.cwd)
    except ValueError as e:
        return ToolExecutionResult.fail(str(e))

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    return ToolExecutionResult.ok(f"File written successfully: {path}\nSize: {len(content):,} bytes")


async def edit_file(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    """Replace `old_string` with `new_string`; it must match exactly once unless replace_all."""
    path = args["path"]
    old = args["old_string"]
    new = args["new_string"]
    replace_all = bool(args.get("replace_all", False))
    try:
        target = resolve_path(path, ctx.cwd)
    except ValueError as e:
        return ToolExecutionResult.fail(str(e))
    if not target.is_file():
        return ToolExecutionResult.fail(f"File not found: {path}")
    if old == new:
        return ToolExecutionResult.fail("old_string and new_string are identical")

    content = await asyncio.to_thread(target.read_text, encoding="utf-8")
    count = content.count(old)
    if count == 0:
        return ToolExecutionResult.fail(f"old_string not found in {path}")
    if count > 1 and not replace_all:
        return ToolExecutionResult.fail(
            f"old_string matches {count} times in {path}; add context to make it unique or set replace_all"
        )

    updated = content.replace(old, new) if replace_all else content.replace(old, new, 1)
    await asyncio.to_thread(target.write_text, updated, encoding="utf-8")
    return ToolExecutionResult.ok(f"Edited {path}: {count if replace_all else 1} replacement(s)")


async def list_dir(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    path = args.get("path", ".")
    try:
        target = resolve_path(path, ctx.cwd)
    except ValueError as e:
        return ToolExecutionResult.fail(str(e))
    if not target.is_dir():
        return ToolExecutionResult.fail(f"Not a directory: {path}")

    entries = await asyncio.to_thread(lambda: sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name)))
    if not entries:
        return ToolExecutionResult.ok("(empty directory)")
    return ToolExecutionResult.ok("\n".join(f"{p.name}/" if p.is_dir() else p.name for p in entries))


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": f"Timeout in seconds (default {_DEFAULT_BASH_TIMEOUT}, max {_MAX_BASH_TIMEOUT})",
            "minimum": 1,
            "maximum": _MAX_BASH_TIMEOUT,
        },
    },
    "required": ["command"],
}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "File path (relative to the workspace or absolute within it)"},
        "offset": {"type": "integer", "description": "Line offset to start reading from (0-indexed)", "minimum": 0},
        "limit": {"type": "integer", "description": "Number of lines to read (0 = all)", "minimum": 0},
    },
    "required": ["path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "File path (relative to the workspace or absolute within it)"},
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["path", "content"],
}

_EDIT_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "File to edit"},
        "old_string": {"type": "string", "description": "Exact text to replace"},
        "new_string": {"type": "string", "description": "Replacement text"},
        "replace_all": {"type": "boolean", "description": "Replace every occurrence (default false)"},
    },
    "required": ["path", "old_string", "new_string"],
}

_LIST_DIR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Directory to list (default: workspace root)"},
    },
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def builtin_tools() -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name="bash",
            description="Execute a shell command in the workspace directory. Returns stdout and stderr.",
            parameters=_BASH_SCHEMA,
            execute=bash,
            # bash enforces its own `timeout` argument; outlast its maximum
            timeout=_MAX_BASH_TIMEOUT + 10,
            requires_permission=True,
            mutating=True,
            describe=lambda a: f"Run command: {a.get('command', '')}",
        ),
        ToolDefinition(
            name="read_file",
            description="Read a file from the workspace. Output is line-numbered; use offset/limit for large files.",
            parameters=_READ_FILE_SCHEMA,
            execute=read_file,
            describe=lambda a: f"Read file: {a.get('path', '')}",
        ),
        ToolDefinition(
            name="write_file",
            description="Write content to a file in the workspace, creating parent directories as needed.",
            parameters=_WRITE_FILE_SCHEMA,
            execute=write_file,
            requires_permission=True,
            mutating=True,
            describe=lambda a: f"Write file: {a.get('path', '')}",
        ),
        ToolDefinition(
            name="edit_file",
            description="Replace an exact, unique string in a file with new text.",
            parameters=_EDIT_FILE_SCHEMA,
            execute=edit_file,
            requires_permission=True,
            mutating=True,
            describe=lambda a: f"Edit file: {a.get('path', '')}",
        ),
        ToolDefinition(
            name="list_dir",
            description="List the entries of a directory in the workspace. Directories end with '/'.",
            parameters=_LIST_DIR_SCHEMA,
            execute=list_dir,
            describe=lambda a: f"List directory: {a.get('path', '.')}",
        ),
    ]


def register_builtin_tools(registry: ToolRegistry) -> None:
    for tool in builtin_tools():
        registry.register(tool)
