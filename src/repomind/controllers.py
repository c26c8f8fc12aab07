"""Controllers for repomind CLI commands."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from repomind.config import Settings
from repomind.generation.backend.cli_backend import CliStreamEngine
from repomind.generation.events import EventChannel, GenerationEvent, StatusChanged, TaskResolved
from repomind.generation.models import GenerationOutcome, GenerationStatus, TaskSpec
from repomind.generation.persistence import TaskPersistence
from repomind.generation.prompts import (
    DEFAULT_TASKS,
    AnalysisContext,
    PromptTemplateCache,
    UnifiedPromptBuilder,
    directory_template_loader,
    package_template_loader,
)
from repomind.generation.session import run_generation
from repomind.knowledge_index import write_knowledge_index

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GenerateCommand:
    """CLI inputs for knowledge generation."""

    repo_path: Path
    output_dir: str | None
    depth: str | None
    include_tests: bool
    include_docs: bool
    timeout_ms: int | None
    max_attempts: int | None
    task_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class TasksCommand:
    """CLI inputs for the task catalogue listing."""

    verbose: bool = False


@dataclass(slots=True)
class GenerateResult:
    """Generation report to render in CLI."""

    lines: list[str]
    success: bool


class KnowledgeCliController:
    """Coordinates knowledge command execution."""

    def __init__(self, task_specs: tuple[TaskSpec, ...] = DEFAULT_TASKS) -> None:
        self.task_specs = task_specs
        self._caches: dict[Path | None, PromptTemplateCache] = {}

    def generate(self, command: GenerateCommand) -> GenerateResult:
        settings = _settings_for(command)
        settings.validate()
        repo_path = command.repo_path.resolve()
        if not repo_path.is_dir():
            raise ValueError(f"Repository path is not a directory: {repo_path}")
        task_specs = _select_tasks(self.task_specs, command.task_ids)
        output_root = settings.output_root(repo_path)

        builder = UnifiedPromptBuilder(
            AnalysisContext(
                repo_path=repo_path,
                depth=settings.depth,
                include_tests=command.include_tests,
                include_docs=command.include_docs,
            ),
            self._cache_for(settings.templates_dir),
        )
        engine = CliStreamEngine(
            command_template=settings.engine.command_template,
            model=settings.engine.model,
            workdir=repo_path,
            graceful_shutdown_seconds=settings.engine.graceful_shutdown_seconds,
        )
        persistence = TaskPersistence(
            output_root,
            project_name=settings.project_name or repo_path.name,
        )
        channel = EventChannel()
        progress: list[str] = []
        channel.subscribe(lambda event: _record_progress(progress, event))

        outcome = asyncio.run(
            run_generation(
                task_specs,
                builder,
                settings.generation.session_config(),
                engine=engine,
                persistence=persistence,
                channel=channel,
            ),
        )
        index_path = write_knowledge_index(
            outcome,
            task_specs,
            repo_path=repo_path,
            output_root=output_root,
        )
        lines = [*progress, *_outcome_lines(outcome), f"Knowledge index: {index_path}"]
        return GenerateResult(lines=lines, success=outcome.status is not GenerationStatus.FAILED)

    def list_tasks(self, command: TasksCommand) -> list[str]:
        lines = [f"Tasks: {len(self.task_specs)}"]
        for spec in sorted(self.task_specs, key=lambda item: (item.priority, item.task_id)):
            lines.append(
                f"  {spec.task_id} priority={spec.priority} output={spec.output_key} "
                f"name={spec.display_name!r}",
            )
            if command.verbose and spec.description:
                lines.append(f"    {spec.description}")
        return lines

    def _cache_for(self, templates_dir: Path | None) -> PromptTemplateCache:
        cache = self._caches.get(templates_dir)
        if cache is None:
            loader = (
                directory_template_loader(templates_dir)
                if templates_dir is not None
                else package_template_loader
            )
            cache = PromptTemplateCache(loader)
            self._caches[templates_dir] = cache
        return cache


def _settings_for(command: GenerateCommand) -> Settings:
    settings = Settings.from_env()
    if command.output_dir is not None:
        settings.output_dir = command.output_dir
    if command.depth is not None:
        settings.depth = command.depth
    if command.timeout_ms is not None:
        settings.generation.timeout_ms = command.timeout_ms
    if command.max_attempts is not None:
        settings.generation.max_attempts = command.max_attempts
    return settings


def _select_tasks(
    task_specs: tuple[TaskSpec, ...],
    task_ids: tuple[str, ...],
) -> tuple[TaskSpec, ...]:
    if not task_ids:
        return task_specs
    known = {spec.task_id for spec in task_specs}
    unknown = [task_id for task_id in task_ids if task_id not in known]
    if unknown:
        raise ValueError(f"Unknown task id(s): {', '.join(unknown)}")
    wanted = set(task_ids)
    return tuple(spec for spec in task_specs if spec.task_id in wanted)


def _record_progress(lines: list[str], event: GenerationEvent) -> None:
    if isinstance(event, TaskResolved):
        lines.append(f"Resolved {event.task_id} via {event.resolution_mode} ({event.chars} chars)")
    elif isinstance(event, StatusChanged) and event.phase in {
        "degrading",
        "salvaging",
        "retry_scheduled",
        "failed",
    }:
        lines.append(f"Status: {event.phase} {_format_details(event.details)}".rstrip())


def _format_details(details: dict[str, object]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(details.items()))


def _outcome_lines(outcome: GenerationOutcome) -> list[str]:
    lines = [
        "Generation finished: "
        f"status={outcome.status.value} "
        f"resolved={outcome.resolved_count}/{len(outcome.outcomes)} "
        f"confidence={outcome.overall_confidence:.2f} "
        f"attempts={outcome.attempts}",
    ]
    for task in outcome.outcomes:
        lines.append(
            f"  {task.task_id} mode={task.resolution_mode.value} "
            f"confidence={task.confidence:.2f} "
            f"degraded={'yes' if task.degraded else 'no'} "
            f"path={task.output_path or '-'}",
        )
    lines.extend(f"Warning: {warning}" for warning in outcome.warnings)
    if outcome.error:
        lines.append(f"Error: {outcome.error}")
    return lines
