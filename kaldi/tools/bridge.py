"""Bridged tools -- expose tools from an MCP client session in the registry.

Any object with the `ClientSession` shape (`list_tools()` and
`call_tool(name, arguments)`) can be bridged; the transport that produced
the session is the caller's business.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from mcp.types import CallToolResult, EmbeddedResource, ImageContent, ListToolsResult, TextContent, Tool

from kaldi.tools.registry import ToolContext, ToolDefinition, ToolExecutionResult, ToolRegistry

logger = logging.getLogger(__name__)


class BridgeSession(Protocol):
    async def list_tools(self) -> ListToolsResult: ...

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult: ...


def bridged_name(server: str, tool: str) -> str:
    return f"mcp__{server}__{tool}" if server else tool


def result_to_execution(result: CallToolResult) -> ToolExecutionResult:
    """Flatten MCP content blocks to text."""
    parts: list[str] = []
    for item in result.content:
        if isinstance(item, TextContent):
            parts.append(item.text)
        elif isinstance(item, ImageContent):
            parts.append(f"[image: {item.mimeType}]")
        elif isinstance(item, EmbeddedResource):
            resource = item.resource
            text = getattr(resource, "text", None)
            parts.append(text if text is not None else f"[resource: {resource.uri}]")
        else:
            parts.append(f"[{item.type} content]")
    text = "\n".join(parts)
    if result.isError:
        return ToolExecutionResult.fail(text or "bridged tool reported an error")
    return ToolExecutionResult.ok(text)


def bridge_tool(session: BridgeSession, tool: Tool, server: str = "") -> ToolDefinition:
    read_only = bool(tool.annotations and tool.annotations.readOnlyHint)

    async def execute(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
        result = await session.call_tool(tool.name, args)
        return result_to_execution(result)

    return ToolDefinition(
        name=bridged_name(server, tool.name),
        description=tool.description or f"Bridged tool {tool.name}",
        parameters=tool.inputSchema or {"type": "object", "properties": {}},
        execute=execute,
        # Unknown side effects unless the server says otherwise
        requires_permission=not read_only,
        mutating=not read_only,
        describe=lambda a: f"Call {server or 'bridged'} tool {tool.name}",
    )


async def register_bridged_tools(registry: ToolRegistry, session: BridgeSession, server: str = "") -> list[str]:
    """List the session's tools and register them. Returns the registered names."""
    listing = await session.list_tools()
    names = []
    for tool in listing.tools:
        definition = bridge_tool(session, tool, server)
        registry.register(definition, replace=True)
        names.append(definition.name)
    logger.info("Bridged %d tools from %s", len(names), server or "session")
    return names
