"""Error taxonomy for generation runs."""

from __future__ import annotations

from enum import Enum


class UpstreamErrorKind(str, Enum):
    """Terminal engine outcomes that are not a success."""

    TURN_LIMIT = "turn_limit"
    EXECUTION_ERROR = "execution_error"
    CANCELLED = "cancelled"
    OTHER = "other"


class GenerationError(RuntimeError):
    """Base class for generation failures."""


class GenerationTimeoutError(GenerationError, TimeoutError):
    """Cancellation fired before any salvageable content was buffered."""

    def __init__(self, timeout_ms: int, buffered_chars: int = 0) -> None:
        super().__init__(
            f"Engine call timed out after {timeout_ms}ms "
            f"with {buffered_chars} buffered chars",
        )
        self.timeout_ms = timeout_ms
        self.buffered_chars = buffered_chars


class UpstreamError(GenerationError):
    """Engine reached a terminal outcome without salvageable content."""

    def __init__(self, kind: UpstreamErrorKind, detail: str = "") -> None:
        message = f"Engine call ended with {kind.value}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.kind = kind
        self.detail = detail


class EngineStartError(GenerationError):
    """Engine process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class InsufficientContentError(GenerationError):
    """Call completed but produced less content than the acceptance floor."""

    def __init__(self, chars: int, required: int) -> None:
        super().__init__(f"Engine returned {chars} chars, at least {required} required")
        self.chars = chars
        self.required = required


class GenerationFailed(GenerationError):
    """Every attempt of the retry ladder was exhausted."""

    def __init__(self, last_error: BaseException | None, attempts: int) -> None:
        detail = str(last_error) if last_error is not None else "no attempt produced content"
        super().__init__(f"Generation failed after {attempts} attempt(s): {detail}")
        self.last_error = last_error
        self.attempts = attempts


class ExtractionMiss(GenerationError):
    """No extraction strategy located a task's content."""

    def __init__(self, task_id: str, strategies: tuple[str, ...]) -> None:
        super().__init__(
            f"No content found for task {task_id!r} (tried: {', '.join(strategies)})",
        )
        self.task_id = task_id
        self.strategies = strategies


class PersistenceError(GenerationError):
    """Writing a resolved task document failed."""

    def __init__(self, task_id: str, path: str, reason: str) -> None:
        super().__init__(f"Failed to write task {task_id!r} to {path}: {reason}")
        self.task_id = task_id
        self.path = path
        self.reason = reason
