"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

import pytest

from repomind.generation.backend.base import EngineMessage, EngineRequest
from repomind.generation.demux import end_marker, start_marker
from repomind.generation.models import TaskSpec
from repomind.generation.prompts import BuiltPrompt

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m repomind.generation.backend.echo_agent --prompt-file {{prompt_file}}"
)

HANG = object()
STALL = object()

BODY = (
    "## Summary\n\n"
    "The repository exposes a small service layer and a command line entrypoint. "
    "Modules are organised by concern and share one configuration object.\n"
)


def task_spec(task_id: str, display_name: str | None = None) -> TaskSpec:
    return TaskSpec(
        task_id=task_id,
        display_name=display_name or task_id.title(),
        prompt_fragment=f"Describe {task_id}.",
        output_key=f"docs/{task_id}.md",
    )


def segment(task_id: str, body: str = BODY) -> str:
    return f"{start_marker(task_id)}\n{body}\n{end_marker(task_id)}\n"


def text_messages(text: str, *, chunk_size: int = 40, session_id: str = "sess-1") -> list[EngineMessage]:
    messages = [
        EngineMessage(
            type="stream_event",
            session_id=session_id,
            event={"type": "content_block_start", "content_block": {"type": "text"}},
        ),
    ]
    for start in range(0, len(text), chunk_size):
        messages.append(
            EngineMessage(
                type="stream_event",
                session_id=session_id,
                event={
                    "type": "content_block_delta",
                    "delta": {"type": "text_delta", "text": text[start : start + chunk_size]},
                },
            ),
        )
    messages.append(
        EngineMessage(
            type="stream_event",
            session_id=session_id,
            event={"type": "content_block_stop"},
        ),
    )
    return messages


def result_message(subtype: str = "success", result: str | None = None) -> EngineMessage:
    return EngineMessage(type="result", session_id="sess-1", subtype=subtype, result=result)


def call_script(
    text: str,
    *,
    subtype: str | None = "success",
    result: str | None = None,
    hang: bool = False,
) -> list[object]:
    """Messages for one scripted call: deltas, then a result or a hang."""

    script: list[object] = list(text_messages(text)) if text else []
    if hang:
        script.append(HANG)
    elif subtype is not None:
        script.append(result_message(subtype, result))
    return script


class ScriptedEngine:
    """In-memory engine replaying one scripted message list per call."""

    def __init__(self, scripts: Sequence[Sequence[object]]) -> None:
        self._scripts = [list(script) for script in scripts]
        self.requests: list[EngineRequest] = []
        self.closed_calls = 0

    @property
    def calls(self) -> int:
        return len(self.requests)

    def stream(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        self.requests.append(request)
        if not self._scripts:
            raise AssertionError("ScriptedEngine ran out of scripted calls")
        return self._replay(request, self._scripts.pop(0))

    async def _replay(self, request: EngineRequest, script: list[object]) -> AsyncIterator[EngineMessage]:
        try:
            for item in script:
                if item is HANG:
                    await request.cancel_token.wait()
                    return
                if item is STALL:
                    await asyncio.sleep(3600)
                    continue
                if isinstance(item, BaseException):
                    raise item
                await asyncio.sleep(0)
                yield item  # type: ignore[misc]
        finally:
            self.closed_calls += 1


class StaticPromptBuilder:
    def __init__(self, prompt: str = "analyse the repository") -> None:
        self.prompt = prompt
        self.built_for: list[tuple[str, ...]] = []

    def build(self, task_specs: Sequence[TaskSpec]) -> BuiltPrompt:
        self.built_for.append(tuple(spec.task_id for spec in task_specs))
        return BuiltPrompt(prompt=self.prompt, system_prompt="system")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def output_root(tmp_path: Path) -> Path:
    return tmp_path / ".repomind"
