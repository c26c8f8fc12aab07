from __future__ import annotations

import allure
from conftest import BODY, segment, task_spec

from repomind.generation.errors import ExtractionMiss
from repomind.generation.output_fallback import (
    FALLBACK_PARSER_VERSION,
    exact_marker,
    heading_section,
    marker_variant,
    recover_task_outputs,
)

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Extraction Fallback"),
]

PLAIN_BODY = (
    "The system is split into a thin command line layer, a service layer and a "
    "storage layer that talk through plain data classes."
)


def test_parser_version_is_stable() -> None:
    assert FALLBACK_PARSER_VERSION == "v1"


def test_exact_markers_win_first() -> None:
    report = recover_task_outputs(segment("overview"), [task_spec("overview")])

    match = report.matches["overview"]
    assert match.strategy == "exact_marker"
    assert match.content == BODY.strip()
    assert report.attempted["overview"] == ["exact_marker"]


def test_html_comment_variant_with_loose_id_spelling() -> None:
    text = f"<!-- task_start: data_models -->\n{BODY}\n<!-- TASK_END: data_models -->\n"

    report = recover_task_outputs(text, [task_spec("data-models", "Data Models")])

    match = report.matches["data-models"]
    assert match.strategy == "marker_variant"
    assert match.content == BODY.strip()
    assert report.attempted["data-models"] == ["exact_marker", "marker_variant"]


def test_xml_task_tag_variant() -> None:
    text = f'Intro\n<task id="overview">\n{BODY}\n</task>\n'

    assert marker_variant(text, task_spec("overview")) == BODY.strip()


def test_bracket_variant_requires_end_after_start() -> None:
    text = f"[TASK_END: overview]\n{BODY}\n[TASK_START: overview]\n"

    assert marker_variant(text, task_spec("overview")) is None


def test_heading_resolves_only_after_marker_strategies_fail() -> None:
    text = (
        "# Report\n\n"
        "## System Architecture\n\n"
        f"{PLAIN_BODY}\n"
        "### Layers\n\nService, storage and CLI.\n\n"
        "## Component Design\n\nNot part of the architecture section.\n"
    )

    report = recover_task_outputs(text, [task_spec("architecture", "System Architecture")])

    match = report.matches["architecture"]
    assert match.strategy == "heading"
    assert report.attempted["architecture"] == ["exact_marker", "marker_variant", "heading"]
    assert "### Layers" in match.content
    assert "Component Design" not in match.content


def test_heading_strips_task_number_labels() -> None:
    text = f"### Task 2: System Architecture\n\n{PLAIN_BODY}"

    assert heading_section(text, task_spec("architecture", "System Architecture")) == PLAIN_BODY


def test_heading_inside_code_fence_is_ignored() -> None:
    text = f"```markdown\n## System Architecture\n{PLAIN_BODY}\n```\n"

    assert heading_section(text, task_spec("architecture", "System Architecture")) is None


def test_short_marker_hit_falls_through_to_next_strategy() -> None:
    text = (
        "=== TASK_START: overview ===\nshort\n=== TASK_END: overview ===\n\n"
        f"## Overview\n\n{PLAIN_BODY}"
    )

    report = recover_task_outputs(text, [task_spec("overview", "Overview")])

    assert report.matches["overview"].strategy == "heading"


def test_exact_marker_skips_an_echoed_short_span() -> None:
    text = (
        "Plan: `=== TASK_START: overview ===` then `=== TASK_END: overview ===`.\n\n"
        + segment("overview")
    )

    assert exact_marker(text, task_spec("overview")) == BODY.strip()
    report = recover_task_outputs(text, [task_spec("overview")])
    assert report.matches["overview"].strategy == "exact_marker"


def test_marker_variant_skips_short_span_before_full_segment() -> None:
    text = (
        "[TASK_START: overview] draft [TASK_END: overview]\n"
        f"[TASK_START: overview]\n{BODY}\n[TASK_END: overview]\n"
    )

    assert marker_variant(text, task_spec("overview")) == BODY.strip()


def test_unmatched_task_is_reported_as_miss() -> None:
    report = recover_task_outputs("nothing useful here", [task_spec("workflows")])

    assert report.matches == {}
    assert len(report.misses) == 1
    miss = report.misses[0]
    assert isinstance(miss, ExtractionMiss)
    assert miss.task_id == "workflows"
    assert miss.strategies == ("exact_marker", "marker_variant", "heading")
