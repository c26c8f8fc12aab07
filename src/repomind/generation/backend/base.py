"""Engine interface for streamed generation calls."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

DEFAULT_DISALLOWED_TOOLS: tuple[str, ...] = (
    "Write",
    "Edit",
    "MultiEdit",
    "NotebookEdit",
    "WebFetch",
    "WebSearch",
)


class CancellationToken:
    """Cooperative abort flag shared between the client and an engine call.

    Engines either poll :attr:`cancelled` or await :meth:`wait` alongside
    their own reads.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class EngineRequest:
    """Inputs required to execute one streamed engine call."""

    prompt: str
    system_prompt: str
    cancel_token: CancellationToken
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = DEFAULT_DISALLOWED_TOOLS
    include_partial_messages: bool = True
    max_turns: int | None = None


@dataclass(slots=True)
class EngineMessage:
    """One tagged message of the engine stream.

    ``type`` is ``stream_event`` (raw content block event in ``event``),
    ``assistant`` (complete assistant message in ``event``) or ``result``
    (terminal message with ``subtype`` and final ``result`` text).
    """

    type: str
    session_id: str = ""
    event: dict[str, Any] = field(default_factory=dict)
    subtype: str | None = None
    result: str | None = None
    parent_tool_use_id: str | None = None


class CompletionEngine(Protocol):
    """Protocol implemented by streaming engine adapters."""

    def stream(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        """Start the call and yield messages until the terminal result."""
