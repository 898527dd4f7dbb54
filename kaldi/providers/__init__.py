"""LLM provider adapters and the factory that wires them from Settings."""

from __future__ import annotations

import logging

import httpx

from kaldi.config import Settings
from kaldi.providers.anthropic import DEFAULT_BASE_URL, AnthropicClient, anthropic_headers
from kaldi.providers.base import ProviderClient, StreamAccumulator, StreamEvent, StreamEventType
from kaldi.providers.openai import DEFAULT_BASE_URLS, OpenAICompatibleClient, openai_headers

logger = logging.getLogger(__name__)

__all__ = [
    "AnthropicClient",
    "OpenAICompatibleClient",
    "ProviderClient",
    "StreamAccumulator",
    "StreamEvent",
    "StreamEventType",
    "create_provider",
]


def create_provider(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> ProviderClient:
    """Build the configured backend with its own httpx client."""
    timeout = httpx.Timeout(
        connect=settings.api_timeout_connect,
        read=settings.api_timeout_read,
        write=10.0,
        pool=10.0,
    )
    limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

    if settings.provider == "anthropic":
        headers = anthropic_headers(settings.anthropic_api_key, settings.anthropic_auth_token)
        base_url = settings.api_base_url or DEFAULT_BASE_URL
    else:
        api_key = {
            "openai": settings.openai_api_key,
            "openrouter": settings.openrouter_api_key,
        }.get(settings.provider, "")
        headers = openai_headers(api_key)
        base_url = settings.api_base_url or DEFAULT_BASE_URLS[settings.provider]

    http = httpx.AsyncClient(
        base_url=base_url,
        headers=headers,
        timeout=timeout,
        limits=limits,
        transport=transport,
    )
    logger.info("Provider %s initialized (model: %s, base_url: %s)", settings.provider, settings.model, base_url)

    if settings.provider == "anthropic":
        return AnthropicClient(http, model=settings.model, max_tokens=settings.max_tokens)
    return OpenAICompatibleClient(
        http,
        model=settings.model,
        max_tokens=settings.max_tokens,
        name=settings.provider,
    )
