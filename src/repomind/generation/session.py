"""One generation run: prompt, ladder, live demux, fallback, aggregate."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence

from repomind.generation.aggregator import ResultAggregator, TaskResolution
from repomind.generation.backend.base import CompletionEngine
from repomind.generation.client import GenerationClient
from repomind.generation.demux import StreamDemultiplexer
from repomind.generation.errors import GenerationFailed, PersistenceError
from repomind.generation.events import EventChannel, StatusChanged, TaskResolved
from repomind.generation.models import (
    CallMode,
    FailureClass,
    GenerationOutcome,
    ResolutionMode,
    SessionConfig,
    TaskSpec,
)
from repomind.generation.output_fallback import FALLBACK_PARSER_VERSION, recover_task_outputs
from repomind.generation.persistence import TaskPersistence
from repomind.generation.prompts import PromptBuilder
from repomind.generation.retry_policy import LadderResult, PolicyAction, RetryPolicy, Sleep

logger = logging.getLogger(__name__)


class GenerationSession:
    """State of a single run; never shared between concurrent runs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_specs: Sequence[TaskSpec],
        prompt_builder: PromptBuilder,
        config: SessionConfig,
        engine: CompletionEngine,
        persistence: TaskPersistence,
        channel: EventChannel | None = None,
        sleep: Sleep = asyncio.sleep,
        policy_table: Mapping[FailureClass, PolicyAction] | None = None,
    ) -> None:
        self.task_specs = tuple(task_specs)
        if not self.task_specs:
            raise ValueError("At least one task spec is required.")
        self.prompt_builder = prompt_builder
        self.config = config
        self.persistence = persistence
        self.channel = channel or EventChannel()
        self._policy = RetryPolicy(
            GenerationClient(engine, channel=self.channel),
            policy_table=policy_table,
            sleep=sleep,
            channel=self.channel,
        )
        self._demux = StreamDemultiplexer(self.task_specs, self._on_live_resolved)
        self._resolutions: dict[str, TaskResolution] = {}
        self._pending_writes: list[asyncio.Task[None]] = []
        self._warnings: list[str] = []
        self._current_mode = CallMode.NORMAL

    async def run(self) -> GenerationOutcome:
        built = self.prompt_builder.build(self.task_specs)
        logger.info(
            "Starting generation: tasks=%d prompt_chars=%d",
            len(self.task_specs),
            len(built.prompt),
        )
        self.channel.publish(
            StatusChanged("prompt_built", {"tasks": len(self.task_specs), "chars": len(built.prompt)}),
        )

        ladder: LadderResult | None = None
        error: str | None = None
        calls = 0
        try:
            ladder = await self._policy.run(
                built.prompt,
                built.system_prompt,
                self.config,
                buffer_observer=self._demux,
                on_call_start=self._on_call_start,
            )
            calls = ladder.calls
        except GenerationFailed as failed:
            error = str(failed)
            calls = failed.attempts
            self._warnings.append(error)
            logger.error("%s", failed)
        finally:
            await self._drain_writes()

        if ladder is not None:
            if ladder.degraded:
                self._warnings.append(
                    f"Content came from a {ladder.mode.value} call; confidence is damped.",
                )
            await self._fallback_pass(ladder)

        for spec in self._demux.unresolved():
            self._demux.mark_missing(spec.task_id)

        outcome = ResultAggregator().build(
            self.task_specs,
            self._resolutions,
            warnings=self._warnings,
            error=error,
            attempts=calls,
        )
        self.channel.publish(
            StatusChanged(
                "finished",
                {"status": outcome.status.value, "resolved": outcome.resolved_count},
            ),
        )
        return outcome

    def _on_call_start(self, mode: CallMode) -> None:
        self._current_mode = mode
        self._demux.reset_for_new_buffer()

    def _on_live_resolved(self, spec: TaskSpec, content: str) -> None:
        if self.persistence.is_resolved(spec.task_id):
            return
        self._resolutions[spec.task_id] = TaskResolution(
            task_id=spec.task_id,
            content=content,
            mode=ResolutionMode.LIVE,
            degraded=self._current_mode is not CallMode.NORMAL,
        )
        self._pending_writes.append(asyncio.ensure_future(self._persist(spec, content)))
        self.channel.publish(TaskResolved(spec.task_id, ResolutionMode.LIVE.value, len(content)))

    async def _fallback_pass(self, ladder: LadderResult) -> None:
        pending = [
            spec for spec in self._demux.unresolved() if not self.persistence.is_resolved(spec.task_id)
        ]
        if not pending:
            return
        self.channel.publish(
            StatusChanged(
                "fallback",
                {"tasks": [spec.task_id for spec in pending], "parser": FALLBACK_PARSER_VERSION},
            ),
        )
        report = recover_task_outputs(ladder.content, pending)
        for spec in pending:
            match = report.matches.get(spec.task_id)
            if match is None:
                continue
            self._demux.mark_resolved(spec.task_id)
            self._resolutions[spec.task_id] = TaskResolution(
                task_id=spec.task_id,
                content=match.content,
                mode=ResolutionMode.FALLBACK,
                degraded=ladder.degraded,
                strategy=match.strategy,
            )
            self._warnings.append(
                f"Task {spec.task_id!r} recovered after the stream closed via {match.strategy}.",
            )
            self.channel.publish(
                TaskResolved(spec.task_id, ResolutionMode.FALLBACK.value, len(match.content)),
            )
            await self._persist(spec, match.content)
        self._warnings.extend(str(miss) for miss in report.misses)

    async def _persist(self, spec: TaskSpec, content: str) -> None:
        try:
            path = await self.persistence.write(spec, content)
        except PersistenceError as error:
            logger.warning("%s", error)
            self._warnings.append(str(error))
            return
        resolution = self._resolutions.get(spec.task_id)
        if path is not None and resolution is not None:
            resolution.output_path = str(path)

    async def _drain_writes(self) -> None:
        if not self._pending_writes:
            return
        pending, self._pending_writes = self._pending_writes, []
        await asyncio.shield(asyncio.gather(*pending))


async def run_generation(  # noqa: PLR0913
    task_specs: Sequence[TaskSpec],
    prompt_builder: PromptBuilder,
    session_config: SessionConfig,
    *,
    engine: CompletionEngine,
    persistence: TaskPersistence,
    channel: EventChannel | None = None,
    sleep: Sleep = asyncio.sleep,
    policy_table: Mapping[FailureClass, PolicyAction] | None = None,
) -> GenerationOutcome:
    """Run one multi-task generation and return its aggregated outcome."""

    session = GenerationSession(
        task_specs=task_specs,
        prompt_builder=prompt_builder,
        config=session_config,
        engine=engine,
        persistence=persistence,
        channel=channel,
        sleep=sleep,
        policy_table=policy_table,
    )
    return await session.run()
