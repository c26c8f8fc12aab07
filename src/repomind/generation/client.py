"""Single cancellable engine call with event emission and salvage."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from repomind.generation.backend.base import (
    CancellationToken,
    CompletionEngine,
    EngineMessage,
    EngineRequest,
)
from repomind.generation.errors import (
    GenerationError,
    GenerationTimeoutError,
    UpstreamError,
    UpstreamErrorKind,
)
from repomind.generation.events import (
    ContentDelta,
    EventChannel,
    StatusChanged,
    ThinkingProgress,
    ThinkingStarted,
    ToolInvoked,
)
from repomind.generation.models import (
    MIN_SALVAGE_CHARS,
    CallMode,
    SessionConfig,
    StreamBuffer,
)

logger = logging.getLogger(__name__)

NOTICE_PREFIX = "[notice:"

_RESULT_KINDS: dict[str, UpstreamErrorKind] = {
    "error_max_turns": UpstreamErrorKind.TURN_LIMIT,
    "error_during_execution": UpstreamErrorKind.EXECUTION_ERROR,
    "cancelled": UpstreamErrorKind.CANCELLED,
}

_TRUNCATION_NOTICES: dict[str, str] = {
    "turn_limit": "[notice: partial result, truncated at the turn limit]",
    "execution_error": "[notice: partial result, interrupted by an execution error]",
    "cancelled": "[notice: partial result, the call was cancelled]",
    "timeout": "[notice: partial result, truncated by timeout]",
    "incomplete": "[notice: partial result, the stream closed before completion]",
}

BufferObserver = Callable[[StreamBuffer], None]


def truncation_notice(reason: str) -> str:
    return _TRUNCATION_NOTICES.get(reason, f"[notice: partial result, interrupted by {reason}]")


@dataclass(slots=True)
class CallResult:
    """Content of one finished call.

    ``content`` never includes the truncation notice.  A salvaged call keeps
    its notice apart and carries ``cause``, the error the call would have
    raised without salvage, so callers can judge the content on its own.
    """

    content: str
    notice: str | None = None
    cause: GenerationError | None = None

    @property
    def salvaged(self) -> bool:
        return self.cause is not None

    @property
    def text(self) -> str:
        if self.notice is None:
            return self.content
        return f"{self.content}\n\n{self.notice}"


class GenerationClient:
    """Issue one streamed call and fold its messages into a :class:`CallResult`.

    Every content delta grows a fresh :class:`StreamBuffer` owned by the call;
    the optional observer sees the buffer after each delta, which is where
    live demultiplexing hooks in.  The buffer is dropped when the call ends.

    The timeout cancels the call's token and the engine stops on its own.
    ``cancel_grace_seconds`` later the stream is abandoned regardless.
    """

    def __init__(
        self,
        engine: CompletionEngine,
        *,
        channel: EventChannel | None = None,
        cancel_grace_seconds: float = 5.0,
    ) -> None:
        self._engine = engine
        self._channel = channel or EventChannel()
        self.cancel_grace_seconds = cancel_grace_seconds

    async def call(  # noqa: C901
        self,
        prompt: str,
        system_prompt: str,
        config: SessionConfig,
        *,
        mode: CallMode = CallMode.NORMAL,
        buffer_observer: BufferObserver | None = None,
    ) -> CallResult:
        allow_partial = _allow_partial_for(mode, config)
        token = CancellationToken()
        request = EngineRequest(
            prompt=prompt,
            system_prompt=system_prompt,
            cancel_token=token,
            include_partial_messages=True,
            max_turns=config.max_turns,
        )
        buffer = StreamBuffer()
        state = _StreamState()
        terminal: EngineMessage | None = None
        timeout_s = config.timeout_ms / 1000

        self._channel.publish(
            StatusChanged("calling", {"mode": mode.value, "timeout_ms": config.timeout_ms}),
        )
        deadline = asyncio.get_running_loop().call_later(timeout_s, token.cancel, "timeout")
        stream = self._engine.stream(request)
        try:
            async with asyncio.timeout(timeout_s + self.cancel_grace_seconds):
                async for message in stream:
                    if message.type == "result":
                        terminal = message
                        break
                    self._handle_message(message, buffer, state, buffer_observer)
        except TimeoutError:
            token.cancel("timeout")
            logger.warning(
                "Engine ignored cancellation for %.1fs; abandoning the stream",
                self.cancel_grace_seconds,
            )
        finally:
            deadline.cancel()
            await stream.aclose()

        if terminal is None and token.cancelled:
            logger.warning(
                "Engine call timed out after %dms (mode=%s, buffered=%d)",
                config.timeout_ms,
                mode.value,
                len(buffer),
            )
            return self._salvage_or_raise(
                buffer,
                allow_partial,
                "timeout",
                GenerationTimeoutError(config.timeout_ms, len(buffer)),
            )

        if terminal is None:
            return self._salvage_or_raise(
                buffer,
                allow_partial,
                "incomplete",
                UpstreamError(UpstreamErrorKind.OTHER, "stream closed without a result"),
            )

        if terminal.subtype == "success":
            content = terminal.result if terminal.result else buffer.text
            self._channel.publish(StatusChanged("completed", {"chars": len(content)}))
            return CallResult(content)

        kind = _RESULT_KINDS.get(terminal.subtype or "", UpstreamErrorKind.OTHER)
        reason = kind.value if kind is not UpstreamErrorKind.OTHER else (terminal.subtype or "other")
        return self._salvage_or_raise(
            buffer,
            allow_partial,
            reason,
            UpstreamError(kind, terminal.result or terminal.subtype or ""),
        )

    def _handle_message(
        self,
        message: EngineMessage,
        buffer: StreamBuffer,
        state: _StreamState,
        buffer_observer: BufferObserver | None,
    ) -> None:
        if message.session_id and message.session_id != buffer.session_id:
            buffer.session_id = message.session_id
            logger.debug("Engine session id: %s", buffer.session_id)

        if message.type == "assistant":
            for item in message.event.get("content") or []:
                if isinstance(item, dict) and item.get("type") == "tool_use":
                    self._tool_invoked(state, str(item.get("name") or "unknown"), item.get("id"))
            return
        if message.type != "stream_event":
            return

        event = message.event
        event_type = event.get("type")
        block = event.get("content_block") or {}
        if event_type == "content_block_start" and block.get("type") == "text":
            state.thinking = True
            self._channel.publish(ThinkingStarted(buffer.session_id))
        elif event_type == "content_block_start" and block.get("type") == "tool_use":
            self._tool_invoked(
                state,
                str(block.get("name") or "unknown"),
                block.get("id") or message.parent_tool_use_id,
            )
        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") != "text_delta":
                return
            text = str(delta.get("text") or "")
            total = buffer.append(text)
            if state.thinking:
                self._channel.publish(ThinkingProgress(text, total))
            self._channel.publish(ContentDelta(text, total))
            if buffer_observer is not None:
                buffer_observer(buffer)
        elif event_type == "content_block_stop":
            state.thinking = False

    def _tool_invoked(self, state: _StreamState, name: str, tool_use_id: object) -> None:
        use_id = str(tool_use_id or "unknown")
        if use_id != "unknown" and use_id in state.seen_tool_ids:
            return
        state.seen_tool_ids.add(use_id)
        self._channel.publish(ToolInvoked(name, use_id))

    def _salvage_or_raise(
        self,
        buffer: StreamBuffer,
        allow_partial: bool,
        reason: str,
        error: GenerationError,
    ) -> CallResult:
        if not allow_partial or len(buffer) < MIN_SALVAGE_CHARS:
            self._channel.publish(StatusChanged("failed", {"reason": reason}))
            raise error
        logger.warning("Returning %d buffered chars as partial result (%s)", len(buffer), reason)
        self._channel.publish(StatusChanged("salvaged", {"reason": reason, "chars": len(buffer)}))
        return CallResult(buffer.text, truncation_notice(reason), error)


class _StreamState:
    __slots__ = ("seen_tool_ids", "thinking")

    def __init__(self) -> None:
        self.thinking = False
        self.seen_tool_ids: set[str] = set()


def _allow_partial_for(mode: CallMode, config: SessionConfig) -> bool:
    if mode is CallMode.SALVAGE:
        return True
    if mode is CallMode.DEGRADED:
        return False
    return config.allow_partial_results
