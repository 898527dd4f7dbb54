"""File search tools: glob (by name) and grep (by content)."""

from __future__ import annotations

import asyncio
import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from kaldi.tools.builtin import resolve_path
from kaldi.tools.registry import ToolContext, ToolDefinition, ToolExecutionResult, ToolRegistry

_SKIP_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"})
_MAX_GLOB_RESULTS = 500
_MAX_GREP_MATCHES = 200
_MAX_GREP_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def _walk_files(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        for name in sorted(filenames):
            yield Path(dirpath) / name


def find_files(root: Path, pattern: str) -> list[Path]:
    """Files under root matching a glob pattern, newest first."""
    matches = [
        p for p in root.glob(pattern)
        if p.is_file() and not any(part in _SKIP_DIRS for part in p.relative_to(root).parts)
    ]
    matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return matches


def grep_files(
    root: Path,
    regex: re.Pattern[str],
    include: str | None = None,
    max_matches: int = _MAX_GREP_MATCHES,
) -> tuple[list[str], bool]:
    """Return ("path:line:text" matches, truncated flag)."""
    results: list[str] = []
    files = [root] if root.is_file() else _walk_files(root)
    base = root.parent if root.is_file() else root
    for path in files:
        if include and not fnmatch.fnmatch(path.name, include):
            continue
        try:
            if path.stat().st_size > _MAX_GREP_FILE_SIZE:
                continue
            data = path.read_bytes()
        except OSError:
            continue
        if b"\0" in data[:8192]:
            continue  # binary
        text = data.decode("utf-8", errors="replace")
        for lineno, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                results.append(f"{path.relative_to(base)}:{lineno}:{line[:500]}")
                if len(results) >= max_matches:
                    return results, True
    return results, False


async def glob_tool(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    pattern = args["pattern"]
    try:
        root = resolve_path(args.get("path", "."), ctx.cwd)
    except ValueError as e:
        return ToolExecutionResult.fail(str(e))
    if not root.is_dir():
        return ToolExecutionResult.fail(f"Not a directory: {args.get('path')}")

    matches = await asyncio.to_thread(find_files, root, pattern)
    if not matches:
        return ToolExecutionResult.ok(f"No files match {pattern}")
    lines = [str(p.relative_to(root)) for p in matches[:_MAX_GLOB_RESULTS]]
    if len(matches) > _MAX_GLOB_RESULTS:
        lines.append(f"... [{len(matches) - _MAX_GLOB_RESULTS} more files not shown]")
    return ToolExecutionResult.ok("\n".join(lines))


async def grep_tool(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    flags = re.IGNORECASE if args.get("ignore_case") else 0
    try:
        regex = re.compile(args["pattern"], flags)
    except re.error as e:
        return ToolExecutionResult.fail(f"Invalid regex: {e}")
    try:
        root = resolve_path(args.get("path", "."), ctx.cwd)
    except ValueError as e:
        return ToolExecutionResult.fail(str(e))
    if not root.exists():
        return ToolExecutionResult.fail(f"Path not found: {args.get('path')}")

    matches, truncated = await asyncio.to_thread(grep_files, root, regex, args.get("include"))
    if not matches:
        return ToolExecutionResult.ok(f"No matches for {args['pattern']}")
    if truncated:
        matches.append(f"... [stopped after {_MAX_GREP_MATCHES} matches]")
    return ToolExecutionResult.ok("\n".join(matches))


_GLOB_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "pattern": {"type": "string", "description": "Glob pattern, e.g. **/*.py or src/**/test_*.py"},
        "path": {"type": "string", "description": "Directory to search (default: workspace root)"},
    },
    "required": ["pattern"],
}

_GREP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "pattern": {"type": "string", "description": "Regular expression to search for"},
        "path": {"type": "string", "description": "File or directory to search (default: workspace root)"},
        "include": {"type": "string", "description": "Only search files whose name matches this glob, e.g. *.py"},
        "ignore_case": {"type": "boolean"},
    },
    "required": ["pattern"],
}


def search_tools() -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name="glob",
            description="Find files by name pattern. Results are sorted by modification time, newest first.",
            parameters=_GLOB_SCHEMA,
            execute=glob_tool,
            describe=lambda a: f"Find files: {a.get('pattern', '')}",
        ),
        ToolDefinition(
            name="grep",
            description="Search file contents with a regular expression. Returns path:line:text matches.",
            parameters=_GREP_SCHEMA,
            execute=grep_tool,
            describe=lambda a: f"Search for: {a.get('pattern', '')}",
        ),
    ]


def register_search_tools(registry: ToolRegistry) -> None:
    for tool in search_tools():
        registry.register(tool)
