from __future__ import annotations

import allure
import pytest
from conftest import BODY, segment, task_spec

from repomind.generation.demux import StreamDemultiplexer, end_marker, find_marker_span, start_marker
from repomind.generation.models import StreamBuffer, TaskState

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Stream Demultiplexing"),
]


class _Collector:
    def __init__(self) -> None:
        self.resolved: list[tuple[str, str]] = []

    def __call__(self, spec, content: str) -> None:
        self.resolved.append((spec.task_id, content))


def test_complete_segment_resolves_live() -> None:
    collector = _Collector()
    demux = StreamDemultiplexer([task_spec("overview")], collector)
    body = "Overview of the project. " * 6
    assert len(body) >= 140

    resolved = demux.scan(f"{start_marker('overview')} {body} {end_marker('overview')}")

    assert resolved == ["overview"]
    assert collector.resolved == [("overview", body.strip())]
    assert demux.state_of("overview") is TaskState.RESOLVED


def test_rescanning_unchanged_buffer_does_not_resolve_twice() -> None:
    collector = _Collector()
    demux = StreamDemultiplexer([task_spec("overview")], collector)
    text = segment("overview")

    demux.scan(text)
    demux.scan(text)
    demux.scan(text + "trailing text")

    assert len(collector.resolved) == 1


def test_start_marker_only_opens_task() -> None:
    demux = StreamDemultiplexer([task_spec("overview")], _Collector())

    demux(StreamBuffer(text=f"{start_marker('overview')}\npartial content"))

    assert demux.state_of("overview") is TaskState.OPENED


def test_end_marker_before_start_is_not_found() -> None:
    text = f"{end_marker('overview')}\n{BODY}\n{start_marker('overview')}\n"

    opened, span = find_marker_span(text, "overview")

    assert opened
    assert span is None


def test_short_segment_stays_open_until_longer_buffer() -> None:
    collector = _Collector()
    demux = StreamDemultiplexer([task_spec("overview")], collector)

    demux.scan(f"{start_marker('overview')}\ntoo short\n{end_marker('overview')}\n")
    assert demux.state_of("overview") is TaskState.OPENED
    assert collector.resolved == []

    demux.scan(segment("overview"))
    assert demux.state_of("overview") is TaskState.RESOLVED


ECHOED_PLAN = (
    f"Plan: `{start_marker('overview')}` then `{end_marker('overview')}`.\n\n"
)


def test_echoed_short_span_does_not_block_later_segment() -> None:
    collector = _Collector()
    demux = StreamDemultiplexer([task_spec("overview")], collector)

    demux.scan(ECHOED_PLAN)
    assert demux.state_of("overview") is TaskState.OPENED

    demux.scan(ECHOED_PLAN + segment("overview"))

    assert demux.state_of("overview") is TaskState.RESOLVED
    assert collector.resolved == [("overview", BODY.strip())]


def test_find_marker_span_skips_short_spans_and_restarted_segments() -> None:
    text = (
        f"{start_marker('overview')} short {end_marker('overview')}\n"
        f"{start_marker('overview')} abandoned draft\n"
        + segment("overview")
    )

    opened, span = find_marker_span(text, "overview", min_chars=100)

    assert opened
    assert span is not None
    assert span.content == BODY.strip()
    first = find_marker_span(text, "overview")[1]
    assert first is not None
    assert first.content == "short"


def test_segments_dispatch_in_end_marker_order() -> None:
    collector = _Collector()
    demux = StreamDemultiplexer([task_spec("apis"), task_spec("overview")], collector)

    demux.scan(segment("overview") + segment("apis"))

    assert [task_id for task_id, _content in collector.resolved] == ["overview", "apis"]


def test_reset_for_new_buffer_reopens_only_unfinished_tasks() -> None:
    demux = StreamDemultiplexer([task_spec("overview"), task_spec("apis")], _Collector())
    demux.scan(segment("overview") + f"{start_marker('apis')}\nstarted")

    demux.reset_for_new_buffer()

    assert demux.state_of("overview") is TaskState.RESOLVED
    assert demux.state_of("apis") is TaskState.UNOPENED
    assert [spec.task_id for spec in demux.unresolved()] == ["apis"]


def test_missing_tasks_are_skipped_by_later_scans() -> None:
    collector = _Collector()
    demux = StreamDemultiplexer([task_spec("overview")], collector)
    demux.mark_missing("overview")

    demux.scan(segment("overview"))

    assert collector.resolved == []
    assert demux.state_of("overview") is TaskState.MISSING


def test_duplicate_task_ids_are_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate task id"):
        StreamDemultiplexer([task_spec("overview"), task_spec("overview")], _Collector())
