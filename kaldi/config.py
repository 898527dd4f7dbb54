"""Settings via pydantic-settings with KALDI_ env prefix.

Provider API keys use validation_alias so the conventional unprefixed
env vars (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...) work without renaming.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KALDI_", env_file=".env")

    log_level: str = "info"
    session_id: str = "kaldi-default"

    # Provider
    provider: Literal["anthropic", "openai", "openrouter", "ollama"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8192
    api_base_url: str = ""  # empty = provider default
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openrouter_api_key: str = Field("", validation_alias="OPENROUTER_API_KEY")

    # Conversation engine
    max_turns: int = 50
    system_prompt: str = ""
    workspace_dir: str = "."

    # Tool pipeline
    permission_mode: Literal["safe", "auto", "plan"] = "safe"
    tool_timeout: float = 120.0  # seconds
    max_parallel_tools: int = 4
    default_output_chars: int = 30000

    # Hooks
    hooks_file: str = ""  # JSON file with {"hooks": [...]}; empty = none
    hook_timeout: float = 30.0  # seconds

    # Compaction
    compaction_enabled: bool = True
    context_window: int = 200_000
    compaction_threshold: float = 0.8  # fraction of context_window
    compaction_keep_recent: int = 6  # messages kept verbatim
    compaction_history_size: int = 20
    background_model: str = ""  # summarization model; empty = same as model

    # Sub-agents
    subagent_max_concurrent: int = 3
    subagent_max_turns: int = 15
    subagent_timeout: float = 600.0  # seconds per sub-agent task

    # Web tools
    web_fetch_max_chars: int = 50000
    web_fetch_timeout: float = 30.0

    @model_validator(mode="after")
    def _validate_ranges(self) -> "Settings":
        if not 0.0 < self.compaction_threshold <= 1.0:
            raise ValueError("compaction_threshold must be in (0, 1]")
        if self.max_parallel_tools < 1:
            raise ValueError("max_parallel_tools must be >= 1")
        if self.subagent_max_concurrent < 1:
            raise ValueError("subagent_max_concurrent must be >= 1")
        if self.subagent_timeout <= 0:
            raise ValueError("subagent_timeout must be > 0")
        if self.compaction_keep_recent < 2:
            raise ValueError("compaction_keep_recent must be >= 2")
        return self

    @property
    def summary_model(self) -> str:
        return self.background_model or self.model
