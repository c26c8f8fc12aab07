"""Live demultiplexing of the growing stream buffer into per-task segments."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from repomind.generation.models import (
    MIN_RESOLVED_CHARS,
    StreamBuffer,
    TaskSpec,
    TaskState,
)

logger = logging.getLogger(__name__)

ResolvedHandler = Callable[[TaskSpec, str], None]


def start_marker(task_id: str) -> str:
    return f"=== TASK_START: {task_id} ==="


def end_marker(task_id: str) -> str:
    return f"=== TASK_END: {task_id} ==="


@dataclass(slots=True)
class MarkerSpan:
    """Located start/end markers of one task in a text."""

    start: int
    end: int
    content: str


def find_marker_span(
    text: str,
    task_id: str,
    *,
    min_chars: int = 0,
) -> tuple[bool, MarkerSpan | None]:
    """Return (opened, span) for the exact markers of ``task_id``.

    ``opened`` reports whether any start marker exists.  Every start marker
    is tried in order and paired with the nearest end marker that follows
    it; a start marker followed by another start before that end is
    skipped.  ``span`` is the first pairing whose trimmed content reaches
    ``min_chars``; a short span earlier in the text never hides a complete
    segment after it.  An end marker preceding every start marker counts as
    not found.
    """

    opening = start_marker(task_id)
    closing = end_marker(task_id)
    start = text.find(opening)
    opened = start != -1
    while start != -1:
        content_start = start + len(opening)
        end = text.find(closing, content_start)
        if end == -1:
            break
        next_start = text.find(opening, content_start)
        if next_start != -1 and next_start < end:
            start = next_start
            continue
        content = text[content_start:end].strip()
        if len(content) >= min_chars:
            return opened, MarkerSpan(start=start, end=end, content=content)
        start = text.find(opening, end + len(closing))
    return opened, None


@dataclass(slots=True)
class TaskTracker:
    """Explicit boundary state of one task."""

    spec: TaskSpec
    state: TaskState = TaskState.UNOPENED

    def open(self) -> None:
        if self.state is TaskState.UNOPENED:
            self.state = TaskState.OPENED

    def resolve(self) -> None:
        self.state = TaskState.RESOLVED

    def miss(self) -> None:
        if self.state is not TaskState.RESOLVED:
            self.state = TaskState.MISSING


class StreamDemultiplexer:
    """Scan the cumulative buffer and emit each complete task segment once.

    The whole buffer is rescanned on every delta.  A segment shorter than the
    acceptance floor keeps its task ``OPENED`` so a later, longer buffer state
    can still resolve it.  Newly completed segments are dispatched in the
    order their end markers appear in the buffer.
    """

    def __init__(
        self,
        task_specs: Iterable[TaskSpec],
        on_resolved: ResolvedHandler,
        *,
        min_chars: int = MIN_RESOLVED_CHARS,
    ) -> None:
        self._trackers: dict[str, TaskTracker] = {}
        for spec in task_specs:
            if spec.task_id in self._trackers:
                raise ValueError(f"Duplicate task id: {spec.task_id!r}")
            self._trackers[spec.task_id] = TaskTracker(spec)
        self._on_resolved = on_resolved
        self._min_chars = min_chars

    def __call__(self, buffer: StreamBuffer) -> None:
        self.scan(buffer.text)

    def scan(self, text: str) -> list[str]:
        """Advance trackers against ``text`` and return newly resolved ids."""

        completed: list[tuple[int, TaskTracker, str]] = []
        for tracker in self._trackers.values():
            if tracker.state in (TaskState.RESOLVED, TaskState.MISSING):
                continue
            opened, span = find_marker_span(
                text,
                tracker.spec.task_id,
                min_chars=self._min_chars,
            )
            if not opened:
                continue
            if tracker.state is TaskState.UNOPENED:
                tracker.open()
                logger.debug("Task opened in stream: %s", tracker.spec.task_id)
            if span is None:
                continue
            completed.append((span.end, tracker, span.content))

        completed.sort(key=lambda item: item[0])
        resolved_ids: list[str] = []
        for _end, tracker, content in completed:
            tracker.resolve()
            resolved_ids.append(tracker.spec.task_id)
            logger.info("Task resolved live: %s (%d chars)", tracker.spec.task_id, len(content))
            self._on_resolved(tracker.spec, content)
        return resolved_ids

    def reset_for_new_buffer(self) -> None:
        """Forget progress-only openings when a fresh call starts streaming."""

        for tracker in self._trackers.values():
            if tracker.state is TaskState.OPENED:
                tracker.state = TaskState.UNOPENED

    def state_of(self, task_id: str) -> TaskState:
        return self._trackers[task_id].state

    def mark_resolved(self, task_id: str) -> None:
        self._trackers[task_id].resolve()

    def mark_missing(self, task_id: str) -> None:
        self._trackers[task_id].miss()

    def unresolved(self) -> list[TaskSpec]:
        return [
            tracker.spec
            for tracker in self._trackers.values()
            if tracker.state is not TaskState.RESOLVED
        ]
