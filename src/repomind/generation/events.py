"""Typed progress events and the channel that carries them."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ThinkingStarted:
    session_id: str


@dataclass(frozen=True, slots=True)
class ThinkingProgress:
    delta: str
    total_length: int


@dataclass(frozen=True, slots=True)
class ToolInvoked:
    name: str
    tool_use_id: str


@dataclass(frozen=True, slots=True)
class ContentDelta:
    text: str
    total_length: int


@dataclass(frozen=True, slots=True)
class StatusChanged:
    phase: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TaskResolved:
    task_id: str
    resolution_mode: str
    chars: int


GenerationEvent = (
    ThinkingStarted | ThinkingProgress | ToolInvoked | ContentDelta | StatusChanged | TaskResolved
)

Subscriber = Callable[[GenerationEvent], None]

_CLOSED = object()


class EventChannel:
    """Fan-out channel for generation events.

    Subscribers are called synchronously on publish and must not block.
    A channel opened with ``buffered=True`` additionally queues every event
    so a consumer can drain it with ``async for event in channel.drain()``.
    """

    def __init__(self, *, buffered: bool = False) -> None:
        self._subscribers: list[Subscriber] = []
        self._queue: asyncio.Queue[object] | None = asyncio.Queue() if buffered else None
        self._closed = False

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it."""

        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: GenerationEvent) -> None:
        if self._closed:
            return
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event subscriber failed for %s", type(event).__name__)
        if self._queue is not None:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue is not None:
            self._queue.put_nowait(_CLOSED)

    async def drain(self) -> AsyncIterator[GenerationEvent]:
        if self._queue is None:
            raise RuntimeError("EventChannel was created without buffering.")
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


class ProgressListener(Protocol):
    """Hook-style progress interface; every hook must be non-blocking."""

    def on_thinking_start(self, session_id: str) -> None: ...

    def on_thinking_progress(self, delta: str, total_length: int) -> None: ...

    def on_tool_execution(self, tool_name: str, tool_use_id: str) -> None: ...

    def on_content_update(self, text: str, total_length: int) -> None: ...

    def on_status_update(self, phase: str, details: dict[str, Any]) -> None: ...


def listener_subscriber(listener: ProgressListener) -> Subscriber:
    """Adapt a hook-style listener to a channel subscriber."""

    def _dispatch(event: GenerationEvent) -> None:
        if isinstance(event, ThinkingStarted):
            listener.on_thinking_start(event.session_id)
        elif isinstance(event, ThinkingProgress):
            listener.on_thinking_progress(event.delta, event.total_length)
        elif isinstance(event, ToolInvoked):
            listener.on_tool_execution(event.name, event.tool_use_id)
        elif isinstance(event, ContentDelta):
            listener.on_content_update(event.text, event.total_length)
        elif isinstance(event, StatusChanged):
            listener.on_status_update(event.phase, dict(event.details))

    return _dispatch
