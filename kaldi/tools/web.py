"""Web tools: web_fetch.

Uses its own httpx client, separate from the provider's (which carries API
credentials). Every URL, including each redirect hop, is resolved and
checked against private and loopback ranges before it is requested.
"""

from __future__ import annotations

import asyncio
import html as html_module
import ipaddress
import logging
import re
import socket
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from kaldi.config import Settings
from kaldi.tools.registry import ToolContext, ToolDefinition, ToolExecutionResult, ToolRegistry

logger = logging.getLogger(__name__)

MAX_FETCH_CHARS = 50000
MAX_REDIRECTS = 5
USER_AGENT = "kaldi/0.1 (coding agent)"

# Blocked IP ranges for SSRF protection
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),       # Loopback
    ipaddress.ip_network("10.0.0.0/8"),         # RFC1918
    ipaddress.ip_network("172.16.0.0/12"),      # RFC1918
    ipaddress.ip_network("192.168.0.0/16"),     # RFC1918
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local / cloud metadata
    ipaddress.ip_network("::1/128"),            # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),           # IPv6 unique local
    ipaddress.ip_network("fe80::/10"),          # IPv6 link-local
]

_BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0", "metadata.google.internal"}

Resolver = Callable[[str], Awaitable[list[str]]]


async def resolve_host(hostname: str) -> list[str]:
    """Resolve a hostname to its IP addresses without blocking the loop."""
    infos = await asyncio.get_running_loop().getaddrinfo(hostname, None)
    return [info[4][0] for info in infos]


async def check_url(url: str, resolve: Resolver = resolve_host) -> str | None:
    """Return an error message if `url` is unsafe to fetch, else None."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return "URL must start with http:// or https://"
    hostname = parsed.hostname
    if not hostname:
        return "Could not parse hostname from URL"
    if hostname.lower() in _BLOCKED_HOSTNAMES:
        return f"Blocked hostname: {hostname}"

    try:
        addresses = await resolve(hostname)
    except (socket.gaierror, OSError):
        return f"Could not resolve hostname: {hostname}"

    for address in addresses:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
        for network in _BLOCKED_NETWORKS:
            if ip.version == network.version and ip in network:
                return f"URL resolves to blocked IP range ({network})"
    return None


def extract_readable(html: str) -> str:
    """Extract readable text from HTML."""
    # Remove script, style, noscript, nav, header, footer tags
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>",
        "", html, flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def web_fetch_tool(
    http: httpx.AsyncClient,
    *,
    max_chars: int = MAX_FETCH_CHARS,
    timeout: float = 30.0,
    resolve: Resolver = resolve_host,
) -> ToolDefinition:
    default_max = min(max_chars, MAX_FETCH_CHARS)

    async def execute(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
        url = args["url"]
        effective_max = min(int(args.get("max_chars") or default_max), MAX_FETCH_CHARS)

        error = await check_url(url, resolve)
        if error:
            logger.info("web_fetch blocked %s: %s", url, error)
            return ToolExecutionResult.fail(f"Blocked: {error}")

        # Follow redirects by hand so every hop gets the SSRF check
        current = url
        try:
            for _ in range(MAX_REDIRECTS + 1):
                response = await http.get(
                    current,
                    headers={"User-Agent": USER_AGENT},
                    follow_redirects=False,
                    timeout=timeout,
                )
                if response.status_code not in (301, 302, 303, 307, 308):
                    break
                location = response.headers.get("location", "")
                if not location:
                    break
                current = urljoin(current, location)
                error = await check_url(current, resolve)
                if error:
                    return ToolExecutionResult.fail(f"Blocked redirect to unsafe URL: {error}")
            else:
                return ToolExecutionResult.fail(f"Too many redirects (max {MAX_REDIRECTS})")
        except httpx.TimeoutException:
            return ToolExecutionResult.fail(f"Fetch timed out for: {url}")
        except httpx.HTTPError as e:
            return ToolExecutionResult.fail(f"Could not fetch {url}: {e}")

        if response.status_code >= 400:
            return ToolExecutionResult.fail(f"HTTP {response.status_code} fetching {url}")

        content_type = response.headers.get("content-type", "")
        is_text = any(t in content_type for t in ("text/", "application/json", "application/xml", "application/xhtml"))
        if content_type and not is_text:
            return ToolExecutionResult.fail(f"Cannot extract text from binary content (content-type: {content_type})")

        text = extract_readable(response.text) if "html" in content_type else response.text
        if len(text) > effective_max:
            text = text[:effective_max] + "\n\n[... truncated]"
        return ToolExecutionResult.ok(f"Content from {url} ({len(text)} chars):\n\n{text}")

    return ToolDefinition(
        name="web_fetch",
        description="Fetch a URL and return its readable text content (HTML is converted to plain text).",
        parameters={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to fetch (http or https)"},
                "max_chars": {
                    "type": "integer",
                    "description": f"Maximum characters to return (max {MAX_FETCH_CHARS})",
                    "minimum": 1,
                    "maximum": MAX_FETCH_CHARS,
                },
            },
            "required": ["url"],
        },
        execute=execute,
        max_output_chars=MAX_FETCH_CHARS + 200,
        describe=lambda a: f"Fetch URL: {a.get('url', '')}",
    )


def register_web_tools(registry: ToolRegistry, settings: Settings, http: httpx.AsyncClient) -> None:
    registry.register(
        web_fetch_tool(http, max_chars=settings.web_fetch_max_chars, timeout=settings.web_fetch_timeout)
    )
