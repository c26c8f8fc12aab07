"""Deterministic call failure classification for the retry ladder."""

from __future__ import annotations

from dataclasses import dataclass

from repomind.generation.errors import (
    EngineStartError,
    GenerationTimeoutError,
    InsufficientContentError,
    UpstreamError,
    UpstreamErrorKind,
)
from repomind.generation.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

LIMIT_CLASSES = frozenset({FailureClass.TURN_LIMIT, FailureClass.TIMEOUT, FailureClass.ABORTED})

_UPSTREAM_CLASSES: dict[UpstreamErrorKind, FailureClass] = {
    UpstreamErrorKind.TURN_LIMIT: FailureClass.TURN_LIMIT,
    UpstreamErrorKind.CANCELLED: FailureClass.ABORTED,
    UpstreamErrorKind.EXECUTION_ERROR: FailureClass.EXECUTION_ERROR,
    UpstreamErrorKind.OTHER: FailureClass.OTHER,
}

_TURN_LIMIT_PATTERNS: tuple[str, ...] = (
    "max turns",
    "max_turns",
    "maximum number of turns",
)
_ABORT_PATTERNS: tuple[str, ...] = (
    "aborterror",
    "process aborted",
    "aborted by user",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)


@dataclass(slots=True)
class CallFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def is_limit(self) -> bool:
        return self.failure_class in LIMIT_CLASSES

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for status events and warnings."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_call_failure(error: BaseException) -> CallFailureClassification:
    """Map a failed call to the class that selects the policy action."""

    if isinstance(error, GenerationTimeoutError):
        return CallFailureClassification(FailureClass.TIMEOUT, "call_timeout", "timeout_error")
    if isinstance(error, UpstreamError):
        failure_class = _UPSTREAM_CLASSES[error.kind]
        if failure_class is FailureClass.OTHER:
            return _classify_message(str(error), default_rule="upstream_other")
        return CallFailureClassification(
            failure_class,
            f"upstream_{error.kind.value}",
            "upstream_kind",
        )
    if isinstance(error, InsufficientContentError):
        return CallFailureClassification(
            FailureClass.INSUFFICIENT_CONTENT,
            "content_below_floor",
            "insufficient_content",
        )
    if isinstance(error, EngineStartError):
        if error.transient:
            return CallFailureClassification(
                FailureClass.OTHER,
                "engine_start_transient",
                "engine_start",
            )
        return CallFailureClassification(
            FailureClass.ENGINE_UNAVAILABLE,
            "engine_unavailable",
            "engine_start",
        )
    if isinstance(error, TimeoutError):
        return CallFailureClassification(FailureClass.TIMEOUT, "call_timeout", "timeout_error")
    return _classify_message(str(error), default_rule="fallback_other")


def _classify_message(message: str, *, default_rule: str) -> CallFailureClassification:
    haystack = message.lower()

    pattern = _first_match(haystack, _TURN_LIMIT_PATTERNS)
    if pattern is not None:
        return CallFailureClassification(
            FailureClass.TURN_LIMIT,
            "turn_limit_message",
            "turn_limit",
            pattern,
        )

    pattern = _first_match(haystack, _ABORT_PATTERNS)
    if pattern is not None:
        return CallFailureClassification(FailureClass.ABORTED, "abort_message", "aborted", pattern)

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return CallFailureClassification(FailureClass.TIMEOUT, "timeout_message", "timeout", pattern)

    return CallFailureClassification(FailureClass.OTHER, "unclassified", default_rule)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
