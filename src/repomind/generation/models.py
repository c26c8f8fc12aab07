"""Domain models for multi-task generation sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

MIN_RESOLVED_CHARS = 100
MIN_SALVAGE_CHARS = 50
FALLBACK_DAMPING = 0.7


class ResolutionMode(str, Enum):
    """How a task's content was obtained."""

    LIVE = "live"
    FALLBACK = "fallback"
    MISSING = "missing"


class GenerationStatus(str, Enum):
    """Overall outcome of one generation run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class TaskState(str, Enum):
    """Per-task boundary scan state."""

    UNOPENED = "unopened"
    OPENED = "opened"
    RESOLVED = "resolved"
    MISSING = "missing"


class FailureClass(str, Enum):
    """Normalized failure classes used by the retry policy."""

    TURN_LIMIT = "turn_limit"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    EXECUTION_ERROR = "execution_error"
    INSUFFICIENT_CONTENT = "insufficient_content"
    ENGINE_UNAVAILABLE = "engine_unavailable"
    OTHER = "other"


class CallMode(str, Enum):
    """Flavour of a single engine call issued by the retry ladder."""

    NORMAL = "normal"
    DEGRADED = "degraded"
    SALVAGE = "salvage"


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """One analysis deliverable multiplexed inside the generation call."""

    task_id: str
    display_name: str
    prompt_fragment: str
    output_key: str
    priority: int = 100
    description: str = ""


@dataclass(slots=True)
class SessionConfig:
    """Per-run limits and recovery switches."""

    timeout_ms: int = 600_000
    max_attempts: int = 2
    base_retry_delay_ms: int = 1_000
    allow_partial_results: bool = True
    allow_degradation: bool = True
    max_turns: int | None = None

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0.")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.base_retry_delay_ms < 0:
            raise ValueError("base_retry_delay_ms must be >= 0.")
        if self.max_turns is not None and self.max_turns < 1:
            raise ValueError("max_turns must be >= 1 when set.")


@dataclass(slots=True)
class StreamBuffer:
    """Growing text of the one active call; never shared across calls."""

    session_id: str = ""
    text: str = ""

    def append(self, delta: str) -> int:
        self.text += delta
        return len(self.text)

    def __len__(self) -> int:
        return len(self.text)


@dataclass(slots=True)
class TaskOutcome:
    """Final state of one declared task."""

    task_id: str
    content: str
    confidence: float
    resolution_mode: ResolutionMode
    references: list[str] = field(default_factory=list)
    output_path: str | None = None
    fallback_strategy: str | None = None
    degraded: bool = False

    @property
    def resolved(self) -> bool:
        return self.resolution_mode is not ResolutionMode.MISSING


@dataclass(slots=True)
class GenerationOutcome:
    """Aggregated result of a generation run."""

    status: GenerationStatus
    outcomes: list[TaskOutcome]
    overall_confidence: float
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    attempts: int = 0

    @property
    def resolved_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.resolved)

    def outcome_for(self, task_id: str) -> TaskOutcome | None:
        for outcome in self.outcomes:
            if outcome.task_id == task_id:
                return outcome
        return None
