"""Tests for the glob and grep search tools."""

import os

import pytest

from kaldi.tools.registry import ToolContext
from kaldi.tools.search import glob_tool, grep_tool


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    # TODO: wire config\n    pass\n")
    (tmp_path / "src" / "util.py").write_text("def helper():\n    return 1\n")
    (tmp_path / "README.md").write_text("# Project\nTODO: docs\n")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config.py").write_text("TODO = 'ignored'\n")
    (tmp_path / "blob.bin").write_bytes(b"TODO\x00\x01\x02")
    # Make app.py the newest file
    os.utime(tmp_path / "src" / "util.py", (1_000_000, 1_000_000))
    return tmp_path


@pytest.fixture
def ctx(workspace) -> ToolContext:
    return ToolContext(cwd=str(workspace))


class TestGlob:
    @pytest.mark.asyncio
    async def test_matches_newest_first(self, ctx):
        result = await glob_tool({"pattern": "**/*.py"}, ctx)
        assert result.output.splitlines() == ["src/app.py", "src/util.py"]

    @pytest.mark.asyncio
    async def test_no_matches(self, ctx):
        result = await glob_tool({"pattern": "*.rs"}, ctx)
        assert result.success
        assert result.output == "No files match *.rs"

    @pytest.mark.asyncio
    async def test_outside_workspace(self, ctx):
        result = await glob_tool({"pattern": "*", "path": ".."}, ctx)
        assert not result.success


class TestGrep:
    @pytest.mark.asyncio
    async def test_finds_matches_with_line_numbers(self, ctx):
        result = await grep_tool({"pattern": "TODO"}, ctx)
        lines = sorted(result.output.splitlines())
        assert lines == ["README.md:2:TODO: docs", "src/app.py:2:    # TODO: wire config"]

    @pytest.mark.asyncio
    async def test_include_filter(self, ctx):
        result = await grep_tool({"pattern": "TODO", "include": "*.py"}, ctx)
        assert result.output == "src/app.py:2:    # TODO: wire config"

    @pytest.mark.asyncio
    async def test_ignore_case(self, ctx):
        result = await grep_tool({"pattern": "todo", "path": "README.md", "ignore_case": True}, ctx)
        assert result.output == "README.md:2:TODO: docs"

    @pytest.mark.asyncio
    async def test_invalid_regex(self, ctx):
        result = await grep_tool({"pattern": "(unclosed"}, ctx)
        assert not result.success
        assert result.error.startswith("Invalid regex")

    @pytest.mark.asyncio
    async def test_no_matches(self, ctx):
        result = await grep_tool({"pattern": "nothing_here"}, ctx)
        assert result.output == "No matches for nothing_here"
