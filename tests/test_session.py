from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import (
    HANG,
    BODY,
    RecordingSleep,
    ScriptedEngine,
    StaticPromptBuilder,
    call_script,
    segment,
    task_spec,
)

from repomind.generation.demux import start_marker
from repomind.generation.errors import EngineStartError
from repomind.generation.events import EventChannel, TaskResolved, listener_subscriber
from repomind.generation.models import GenerationStatus, ResolutionMode, SessionConfig
from repomind.generation.persistence import TaskPersistence, read_task_document
from repomind.generation.session import GenerationSession, run_generation

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Generation Session"),
]


def _config(**overrides) -> SessionConfig:
    values = {"timeout_ms": 1_000, "max_attempts": 1, "base_retry_delay_ms": 0}
    values.update(overrides)
    return SessionConfig(**values)


async def _run(specs, engine, output_root: Path, channel=None, **config_overrides):
    persistence = TaskPersistence(output_root, project_name="demo")
    outcome = await run_generation(
        specs,
        StaticPromptBuilder(),
        _config(**config_overrides),
        engine=engine,
        persistence=persistence,
        channel=channel,
        sleep=RecordingSleep(),
    )
    return outcome, persistence


@pytest.mark.asyncio
async def test_all_tasks_resolved_live(output_root: Path) -> None:
    specs = [task_spec("overview"), task_spec("apis")]
    engine = ScriptedEngine([call_script(segment("overview") + segment("apis"))])

    outcome, persistence = await _run(specs, engine, output_root)

    assert outcome.status is GenerationStatus.SUCCESS
    assert [task.resolution_mode for task in outcome.outcomes] == [ResolutionMode.LIVE] * 2
    assert persistence.physical_writes == 2
    overview = outcome.outcome_for("overview")
    assert overview is not None
    assert overview.output_path == str(output_root / "docs" / "overview.md")
    assert read_task_document(Path(overview.output_path)) == BODY.strip()
    assert outcome.attempts == 1


@pytest.mark.asyncio
async def test_echoed_markers_before_the_segment_still_resolve_live(output_root: Path) -> None:
    text = (
        "Plan: `=== TASK_START: overview ===` then `=== TASK_END: overview ===`.\n\n"
        + segment("overview")
    )
    engine = ScriptedEngine([call_script(text)])

    outcome, persistence = await _run([task_spec("overview")], engine, output_root)

    assert outcome.status is GenerationStatus.SUCCESS
    overview = outcome.outcome_for("overview")
    assert overview is not None
    assert overview.resolution_mode is ResolutionMode.LIVE
    assert read_task_document(Path(overview.output_path or "")) == BODY.strip()
    assert persistence.physical_writes == 1


@pytest.mark.asyncio
async def test_unfinished_task_without_heading_is_missing(output_root: Path) -> None:
    specs = [task_spec("overview"), task_spec("apis")]
    text = segment("overview") + f"{start_marker('apis')}\nThe API section never finished"
    engine = ScriptedEngine([call_script(text)])

    outcome, _persistence = await _run(specs, engine, output_root)

    assert outcome.status is GenerationStatus.PARTIAL
    assert len(outcome.outcomes) == 2
    modes = {task.task_id: task.resolution_mode for task in outcome.outcomes}
    assert modes == {"overview": ResolutionMode.LIVE, "apis": ResolutionMode.MISSING}
    assert any("apis" in warning for warning in outcome.warnings)
    assert not (output_root / "docs" / "apis.md").exists()


@pytest.mark.asyncio
async def test_heading_fallback_resolves_after_stream_closes(output_root: Path) -> None:
    body = (
        "The project ingests repositories and writes one document per analysis "
        "task, keeping the command line thin and the core fully asynchronous."
    )
    specs = [task_spec("overview", "Project Overview")]
    engine = ScriptedEngine([call_script(f"# Report\n\n## Project Overview\n\n{body}\n")])

    outcome, persistence = await _run(specs, engine, output_root)

    overview = outcome.outcome_for("overview")
    assert overview is not None
    assert overview.resolution_mode is ResolutionMode.FALLBACK
    assert overview.fallback_strategy == "heading"
    assert overview.degraded
    assert persistence.physical_writes == 1
    assert read_task_document(Path(overview.output_path or "")) == body


@pytest.mark.asyncio
async def test_live_write_survives_later_timeout(output_root: Path) -> None:
    specs = [task_spec("overview"), task_spec("apis")]
    engine = ScriptedEngine(
        [
            call_script(segment("overview") + start_marker("apis"), hang=True),
            [HANG],
        ],
    )

    outcome, persistence = await _run(
        specs,
        engine,
        output_root,
        timeout_ms=100,
        allow_partial_results=False,
    )

    assert outcome.status is GenerationStatus.PARTIAL
    assert outcome.error is not None
    assert outcome.error.startswith("Generation failed after 2 attempt(s)")
    assert outcome.attempts == 2
    assert persistence.physical_writes == 1
    assert (output_root / "docs" / "overview.md").exists()


@pytest.mark.asyncio
async def test_total_failure_yields_failed_outcome(output_root: Path) -> None:
    specs = [task_spec("overview"), task_spec("apis"), task_spec("workflows")]
    engine = ScriptedEngine([[EngineStartError("claude: command not found", transient=False)]])

    outcome, persistence = await _run(specs, engine, output_root)

    assert outcome.status is GenerationStatus.FAILED
    assert len(outcome.outcomes) == 3
    assert all(task.resolution_mode is ResolutionMode.MISSING for task in outcome.outcomes)
    assert outcome.overall_confidence == 0.0
    assert "command not found" in (outcome.error or "")
    assert persistence.physical_writes == 0


@pytest.mark.asyncio
async def test_task_resolved_in_failed_call_is_not_rewritten_by_retry(output_root: Path) -> None:
    specs = [task_spec("overview"), task_spec("apis")]
    engine = ScriptedEngine(
        [
            call_script(segment("overview"), subtype="error_max_turns"),
            call_script(segment("overview") + segment("apis")),
        ],
    )

    outcome, persistence = await _run(specs, engine, output_root, allow_partial_results=False)

    assert outcome.status is GenerationStatus.SUCCESS
    assert persistence.physical_writes == 2
    overview = outcome.outcome_for("overview")
    apis = outcome.outcome_for("apis")
    assert overview is not None and apis is not None
    assert not overview.degraded
    assert apis.degraded
    assert any("degraded" in warning for warning in outcome.warnings)


@pytest.mark.asyncio
async def test_progress_listener_and_buffered_channel(output_root: Path) -> None:
    class _Listener:
        def __init__(self) -> None:
            self.started = 0
            self.content_updates = 0
            self.phases: list[str] = []

        def on_thinking_start(self, session_id: str) -> None:
            self.started += 1

        def on_thinking_progress(self, delta: str, total_length: int) -> None:
            pass

        def on_tool_execution(self, tool_name: str, tool_use_id: str) -> None:
            pass

        def on_content_update(self, text: str, total_length: int) -> None:
            self.content_updates += 1

        def on_status_update(self, phase: str, details: dict) -> None:
            self.phases.append(phase)

    listener = _Listener()
    channel = EventChannel(buffered=True)
    channel.subscribe(listener_subscriber(listener))
    engine = ScriptedEngine([call_script(segment("overview"))])

    await _run([task_spec("overview")], engine, output_root, channel=channel)
    channel.close()
    drained = [event async for event in channel.drain()]

    assert listener.started == 1
    assert listener.content_updates > 0
    assert listener.phases[0] == "prompt_built"
    assert listener.phases[-1] == "finished"
    resolved = [event for event in drained if isinstance(event, TaskResolved)]
    assert [(event.task_id, event.resolution_mode) for event in resolved] == [("overview", "live")]


@pytest.mark.asyncio
async def test_write_failure_becomes_warning(tmp_path: Path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory", "utf-8")
    engine = ScriptedEngine([call_script(segment("overview"))])

    outcome, _persistence = await _run([task_spec("overview")], engine, blocker)

    overview = outcome.outcome_for("overview")
    assert overview is not None
    assert overview.resolution_mode is ResolutionMode.LIVE
    assert overview.output_path is None
    assert any("Failed to write task 'overview'" in warning for warning in outcome.warnings)


def test_session_requires_tasks(output_root: Path) -> None:
    with pytest.raises(ValueError, match="At least one task"):
        GenerationSession(
            task_specs=[],
            prompt_builder=StaticPromptBuilder(),
            config=_config(),
            engine=ScriptedEngine([]),
            persistence=TaskPersistence(output_root, project_name="demo"),
        )
