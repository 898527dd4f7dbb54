"""Kaldi agent entry point.

Initializes all components and runs a minimal stdin loop:
  Settings -> Provider -> Registry -> Hooks/Permissions -> Pipeline
           -> Compaction -> Delegator -> Engine
"""

from __future__ import annotations

import asyncio
import logging
import sys

import httpx

from kaldi.config import Settings
from kaldi.core.compaction import CompactionManager
from kaldi.core.context import build_system_prompt
from kaldi.core.engine import ConversationEngine, EngineEvent, EngineEventType
from kaldi.core.errors import ProviderError
from kaldi.core.hooks import HookInterceptor
from kaldi.core.permissions import PermissionGate, PermissionRequest
from kaldi.core.pipeline import ToolExecutionPipeline
from kaldi.core.subagents import SubagentDelegator
from kaldi.providers import create_provider
from kaldi.tools.builtin import register_builtin_tools
from kaldi.tools.registry import ToolRegistry
from kaldi.tools.search import register_search_tools
from kaldi.tools.web import register_web_tools

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components, for shutdown_components().
    """
    provider = create_provider(settings)

    # Separate client for web tools: no provider credentials
    web_http = httpx.AsyncClient(timeout=settings.web_fetch_timeout)

    registry = ToolRegistry()
    register_builtin_tools(registry)
    register_search_tools(registry)
    register_web_tools(registry, settings, web_http)

    if settings.hooks_file:
        hooks = HookInterceptor.from_file(settings.hooks_file, default_timeout=settings.hook_timeout)
    else:
        hooks = HookInterceptor(default_timeout=settings.hook_timeout)

    permissions = PermissionGate(settings.permission_mode)
    pipeline = ToolExecutionPipeline(
        registry,
        permissions,
        hooks,
        timeout=settings.tool_timeout,
        default_max_output_chars=settings.default_output_chars,
        cwd=settings.workspace_dir,
        session_id=settings.session_id,
    )

    compaction = CompactionManager(
        provider,
        context_window=settings.context_window,
        threshold=settings.compaction_threshold,
        keep_recent=settings.compaction_keep_recent,
        history_size=settings.compaction_history_size,
        enabled=settings.compaction_enabled,
        summary_model=settings.summary_model,
    )

    delegator = SubagentDelegator(
        provider,
        pipeline,
        max_concurrent=settings.subagent_max_concurrent,
        default_max_turns=settings.subagent_max_turns,
        max_parallel_tools=settings.max_parallel_tools,
        timeout=settings.subagent_timeout,
    )
    delegator.register(registry)

    engine = ConversationEngine(
        provider,
        pipeline,
        system_prompt=build_system_prompt(settings.workspace_dir, settings.system_prompt or None),
        max_turns=settings.max_turns,
        max_parallel_tools=settings.max_parallel_tools,
        compaction=compaction,
        hooks=hooks,
        cwd=settings.workspace_dir,
        session_id=settings.session_id,
    )
    await engine.start_session()

    logger.info("Registered tools: %s", ", ".join(registry.names()))
    return {
        "provider": provider,
        "web_http": web_http,
        "registry": registry,
        "hooks": hooks,
        "permissions": permissions,
        "pipeline": pipeline,
        "compaction": compaction,
        "delegator": delegator,
        "engine": engine,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Kaldi...")

    engine = components.get("engine")
    if engine:
        engine.cancel()
        await engine.end_session()

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    provider = components.get("provider")
    if provider:
        await provider.aclose()

    logger.info("Kaldi shutdown complete.")


async def _prompt(text: str) -> str:
    return await asyncio.to_thread(input, text)


def _make_permission_callback(gate: PermissionGate):
    async def ask(request: PermissionRequest) -> bool:
        try:
            answer = await _prompt(f"\nAllow {request.description}? [y]es / [n]o / [a]lways: ")
        except EOFError:
            # stdin closed: nobody to ask
            return False
        answer = answer.strip().lower()
        if answer in ("a", "always"):
            gate.grant_session(request.tool, request.args)
            return True
        return answer in ("y", "yes")

    return ask


def _render(event: EngineEvent) -> None:
    if event.type == EngineEventType.TEXT_DELTA:
        sys.stdout.write(event.text)
        sys.stdout.flush()
    elif event.type == EngineEventType.TOOL_START:
        sys.stdout.write(f"\n[{event.tool_name}]\n")
    elif event.type == EngineEventType.TOOL_END and event.is_error:
        sys.stdout.write(f"[{event.tool_name} failed] {event.text[:200]}\n")
    elif event.type == EngineEventType.COMPACTION and event.compaction:
        sys.stdout.write(
            f"\n[compacted history: {event.compaction.tokens_before} -> {event.compaction.tokens_after} tokens]\n"
        )


async def run_repl(settings: Settings) -> None:
    components = await create_components(settings)
    engine: ConversationEngine = components["engine"]
    engine.set_permission_callback(_make_permission_callback(components["permissions"]))
    engine.subscribe(_render)

    try:
        while True:
            try:
                line = (await _prompt("\n> ")).strip()
            except EOFError:
                break
            if not line:
                continue
            if line in ("/exit", "/quit"):
                break
            if line == "/usage":
                usage = engine.get_usage()
                print(f"input: {usage.input_tokens}  output: {usage.output_tokens}")
                continue

            try:
                result = await engine.run_turn(line)
            except ProviderError as e:
                print(f"\nProvider error: {e}")
                continue
            if result.error:
                print(f"\n{result.error}")
            elif result.state != "idle":
                print(f"\n[{result.state}]")
            print()
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point -- load settings, configure logging, run the loop."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Kaldi (provider: %s, model: %s)", settings.provider, settings.model)
    logger.info("Workspace: %s, permission mode: %s", settings.workspace_dir, settings.permission_mode)

    try:
        asyncio.run(run_repl(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
