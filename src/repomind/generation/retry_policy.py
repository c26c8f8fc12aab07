"""Retry ladder: retry, degrade once, salvage, fail.

The ladder is driven by an explicit policy table mapping each
:class:`FailureClass` to a :class:`PolicyAction`.  ``DEGRADE_ONCE`` issues a
single simplified, resource-relaxed call the first time a limit-class failure
shows up, followed by a salvage-only call against the original prompt when
that also fails.  Once degradation has been spent, the action falls back to a
plain retry with linear backoff.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum

from repomind.generation.client import BufferObserver, CallResult, GenerationClient
from repomind.generation.errors import GenerationFailed, InsufficientContentError
from repomind.generation.events import EventChannel, StatusChanged
from repomind.generation.failure_classifier import (
    CallFailureClassification,
    classify_call_failure,
)
from repomind.generation.models import (
    MIN_RESOLVED_CHARS,
    CallMode,
    FailureClass,
    SessionConfig,
)

logger = logging.getLogger(__name__)

DEGRADED_MARKER = "[notice: simplified analysis result]"
PARTIAL_MARKER = "[notice: analysis incomplete, this is a partial result]"

DEGRADED_TIMEOUT_FACTOR = 1.5
DEGRADED_TIMEOUT_CAP_MS = 900_000


class PolicyAction(str, Enum):
    """What the ladder does after a classified failure."""

    RETRY = "retry"
    DEGRADE_ONCE = "degrade_once"
    SALVAGE = "salvage"
    FAIL = "fail"


DEFAULT_POLICY_TABLE: Mapping[FailureClass, PolicyAction] = {
    FailureClass.TURN_LIMIT: PolicyAction.DEGRADE_ONCE,
    FailureClass.TIMEOUT: PolicyAction.DEGRADE_ONCE,
    FailureClass.ABORTED: PolicyAction.DEGRADE_ONCE,
    FailureClass.EXECUTION_ERROR: PolicyAction.RETRY,
    FailureClass.INSUFFICIENT_CONTENT: PolicyAction.RETRY,
    FailureClass.OTHER: PolicyAction.RETRY,
    FailureClass.ENGINE_UNAVAILABLE: PolicyAction.FAIL,
}

Sleep = Callable[[float], Awaitable[None]]
CallStartHook = Callable[[CallMode], None]


@dataclass(slots=True)
class DegradedRequest:
    """Simplified prompt and relaxed limits for the one-shot degraded call."""

    prompt: str
    config: SessionConfig


@dataclass(slots=True)
class LadderResult:
    """Accepted content plus how it was obtained."""

    content: str
    mode: CallMode
    calls: int
    attempts: int
    failures: list[CallFailureClassification] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.mode is not CallMode.NORMAL


def simplify_prompt(prompt: str) -> str:
    return (
        "Give a brief analysis focused only on the most important information.\n\n"
        f"{prompt}\n\n"
        "Keep every section short and avoid detailed elaboration. "
        "Keep the task boundary markers exactly as specified."
    )


def build_degraded_request(
    prompt: str,
    config: SessionConfig,
    failure: CallFailureClassification,
) -> DegradedRequest:
    """Build the simplified, resource-relaxed request for a limit-class failure."""

    timeout_ms = config.timeout_ms
    if failure.failure_class in (FailureClass.TIMEOUT, FailureClass.ABORTED):
        scaled = min(int(config.timeout_ms * DEGRADED_TIMEOUT_FACTOR), DEGRADED_TIMEOUT_CAP_MS)
        timeout_ms = max(config.timeout_ms, scaled)
    return DegradedRequest(
        prompt=simplify_prompt(prompt),
        config=replace(
            config,
            timeout_ms=timeout_ms,
            max_turns=None,
            max_attempts=1,
            allow_degradation=False,
            allow_partial_results=False,
        ),
    )


class RetryPolicy:
    """Small interpreter over the policy table."""

    def __init__(
        self,
        client: GenerationClient,
        *,
        policy_table: Mapping[FailureClass, PolicyAction] | None = None,
        sleep: Sleep = asyncio.sleep,
        channel: EventChannel | None = None,
    ) -> None:
        self._client = client
        self._table = dict(DEFAULT_POLICY_TABLE)
        if policy_table:
            self._table.update(policy_table)
        self._sleep = sleep
        self._channel = channel or EventChannel()

    def action_for(self, failure_class: FailureClass) -> PolicyAction:
        return self._table.get(failure_class, PolicyAction.RETRY)

    async def run(  # noqa: C901
        self,
        prompt: str,
        system_prompt: str,
        config: SessionConfig,
        *,
        buffer_observer: BufferObserver | None = None,
        on_call_start: CallStartHook | None = None,
    ) -> LadderResult:
        failures: list[CallFailureClassification] = []
        last_error: BaseException | None = None
        degradation_spent = False
        calls = 0

        async def _issue(call_prompt: str, call_config: SessionConfig, mode: CallMode) -> CallResult:
            nonlocal calls
            calls += 1
            if on_call_start is not None:
                on_call_start(mode)
            result = await self._client.call(
                call_prompt,
                system_prompt,
                call_config,
                mode=mode,
                buffer_observer=buffer_observer,
            )
            chars = len(result.content.strip())
            if chars < MIN_RESOLVED_CHARS:
                if result.cause is not None:
                    raise result.cause
                raise InsufficientContentError(chars, MIN_RESOLVED_CHARS)
            return result

        for attempt in range(1, config.max_attempts + 1):
            logger.info("Generation attempt %d/%d", attempt, config.max_attempts)
            self._channel.publish(
                StatusChanged("executing", {"attempt": attempt, "max_attempts": config.max_attempts}),
            )
            try:
                result = await _issue(prompt, config, CallMode.NORMAL)
            except Exception as error:  # noqa: BLE001
                last_error = error
                failure = classify_call_failure(error)
                failures.append(failure)
                action = self.action_for(failure.failure_class)
                logger.warning(
                    "Attempt %d failed: %s (class=%s, action=%s)",
                    attempt,
                    error,
                    failure.failure_class.value,
                    action.value,
                )
            else:
                if result.cause is not None:
                    failures.append(classify_call_failure(result.cause))
                    logger.warning(
                        "Attempt %d returned a partial result (%d chars): %s",
                        attempt,
                        len(result.content),
                        result.cause,
                    )
                    return LadderResult(
                        f"{result.text}\n\n{PARTIAL_MARKER}",
                        CallMode.SALVAGE,
                        calls,
                        attempt,
                        failures,
                    )
                logger.info("Generation succeeded on attempt %d (%d chars)", attempt, len(result.content))
                return LadderResult(result.content, CallMode.NORMAL, calls, attempt, failures)

            if action is PolicyAction.FAIL:
                break

            if action is PolicyAction.DEGRADE_ONCE and config.allow_degradation and not degradation_spent:
                degradation_spent = True
                degraded = build_degraded_request(prompt, config, failure)
                self._channel.publish(
                    StatusChanged(
                        "degrading",
                        {"timeout_ms": degraded.config.timeout_ms, **failure.to_details()},
                    ),
                )
                try:
                    result = await _issue(degraded.prompt, degraded.config, CallMode.DEGRADED)
                except Exception as error:  # noqa: BLE001
                    last_error = error
                    failures.append(classify_call_failure(error))
                    logger.warning("Degraded attempt failed: %s", error)
                    action = PolicyAction.SALVAGE
                else:
                    logger.info("Degraded attempt succeeded (%d chars)", len(result.content))
                    return LadderResult(
                        f"{result.text}\n\n{DEGRADED_MARKER}",
                        CallMode.DEGRADED,
                        calls,
                        attempt,
                        failures,
                    )

            if action is PolicyAction.SALVAGE and config.allow_partial_results:
                self._channel.publish(StatusChanged("salvaging", {"attempt": attempt}))
                try:
                    result = await _issue(prompt, config, CallMode.SALVAGE)
                except Exception as error:  # noqa: BLE001
                    last_error = error
                    failures.append(classify_call_failure(error))
                    logger.warning("Salvage attempt failed: %s", error)
                else:
                    logger.info("Salvage attempt recovered %d chars", len(result.content))
                    return LadderResult(
                        f"{result.text}\n\n{PARTIAL_MARKER}",
                        CallMode.SALVAGE,
                        calls,
                        attempt,
                        failures,
                    )

            if attempt < config.max_attempts:
                delay_ms = config.base_retry_delay_ms * attempt
                self._channel.publish(StatusChanged("retry_scheduled", {"delay_ms": delay_ms}))
                await self._sleep(delay_ms / 1000)

        self._channel.publish(StatusChanged("failed", {"calls": calls}))
        raise GenerationFailed(last_error, calls)
