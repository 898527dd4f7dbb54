"""System prompt assembly: base prompt, tool guidelines and project context.

Project context is the first of PROJECT_CONTEXT_FILES found in the
workspace (KALDI.md, or the AGENTS.md convention), read once per session.
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

PROJECT_CONTEXT_FILES = (
    "KALDI.md",
    ".kaldi/KALDI.md",
    ".kaldi/context.md",
    "AGENTS.md",
    ".agents/AGENTS.md",
)

# Larger files are cut; the rest of the prompt still has to fit
MAX_PROJECT_CONTEXT_CHARS = 20000

BASE_SYSTEM_PROMPT = """\
You are Kaldi, an interactive coding agent working in the user's workspace.

Use the available tools to inspect and change files and to run commands
rather than asking the user to do it. Prefer small, verifiable steps: read
files before editing them, and run tests after changes when appropriate.
Be careful with destructive actions and follow the project's conventions.
Be concise in your final answers."""

TOOL_GUIDELINES = """\
## Tool Best Practices

- read_file: always read a file before editing it
- edit_file: old_string must be unique; include more context if needed
- write_file: creates parent directories; use for new files
- bash: git, package managers and other CLI operations
- glob / grep: find files by name / search file contents
- list_dir: start here when exploring an unfamiliar directory
- web_fetch: documentation and API references
- task: delegate broad searches to the explore agent, research to plan"""


def find_project_context(workspace_dir: str) -> Path | None:
    root = Path(workspace_dir)
    for name in PROJECT_CONTEXT_FILES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def load_project_context(workspace_dir: str) -> tuple[Path, str] | None:
    path = find_project_context(workspace_dir)
    if path is None:
        return None
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Could not read project context %s: %s", path, e)
        return None
    if len(content) > MAX_PROJECT_CONTEXT_CHARS:
        logger.warning("Project context %s truncated to %d chars", path, MAX_PROJECT_CONTEXT_CHARS)
        content = content[:MAX_PROJECT_CONTEXT_CHARS]
    return path, content


def build_system_prompt(
    workspace_dir: str,
    base: str | None = None,
    *,
    include_tool_guidelines: bool = True,
    include_project_context: bool = True,
) -> str:
    """Assemble the engine's system prompt.

    `base` replaces the built-in base prompt (e.g. a configured one); tool
    guidelines and the project context file are appended after it.
    """
    parts = [base or BASE_SYSTEM_PROMPT]
    if include_tool_guidelines:
        parts.append(TOOL_GUIDELINES)
    if include_project_context:
        loaded = load_project_context(workspace_dir)
        if loaded is not None:
            path, content = loaded
            logger.info("Loaded project context from %s", path)
            parts.append(
                "<project-context>\n"
                f"The following is project-specific context from {path.relative_to(workspace_dir)}:\n\n"
                f"{content.strip()}\n"
                "</project-context>"
            )
    return "\n\n".join(parts)
