"""Exception types for the agent core.

Only transport failures propagate to callers. Tool, hook and permission
failures are converted to ToolExecutionResult data by the pipeline.
"""

from __future__ import annotations


class KaldiError(Exception):
    """Base class for agent core errors."""


class ProviderError(KaldiError):
    """Network or protocol failure talking to an LLM backend."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class TurnCancelled(KaldiError):
    """Raised inside the engine when the cancel token fires mid-turn."""
