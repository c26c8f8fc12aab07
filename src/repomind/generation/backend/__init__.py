"""Engine adapters for streamed generation calls."""

from repomind.generation.backend.base import (
    DEFAULT_DISALLOWED_TOOLS,
    CancellationToken,
    CompletionEngine,
    EngineMessage,
    EngineRequest,
)
from repomind.generation.backend.cli_backend import CliStreamEngine

__all__ = [
    "DEFAULT_DISALLOWED_TOOLS",
    "CancellationToken",
    "CliStreamEngine",
    "CompletionEngine",
    "EngineMessage",
    "EngineRequest",
]
