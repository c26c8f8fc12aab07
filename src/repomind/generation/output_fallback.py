"""Best-effort recovery of task segments once the stream has closed."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from repomind.generation.demux import find_marker_span
from repomind.generation.errors import ExtractionMiss
from repomind.generation.models import MIN_RESOLVED_CHARS, TaskSpec

logger = logging.getLogger(__name__)

FALLBACK_PARSER_VERSION = "v1"

_KEYWORD = r"TASK[\s_-]*{kind}"
_SEP = r"\s*[:=\-]?\s*"

# (name, start template, end template); ``{kw}`` and ``{id}`` are filled per task.
_DELIMITER_SYNTAXES: tuple[tuple[str, str, str], ...] = (
    ("equals", r"={{2,}}\s*{kw}{sep}{id}\s*={{2,}}", r"={{2,}}\s*{kw}{sep}{id}\s*={{2,}}"),
    ("html_comment", r"<!--\s*{kw}{sep}{id}\s*-->", r"<!--\s*{kw}{sep}{id}\s*-->"),
    ("brackets", r"\[\s*{kw}{sep}{id}\s*\]", r"\[\s*{kw}{sep}{id}\s*\]"),
    ("heading", r"^\s*#{{1,6}}\s*{kw}{sep}{id}\s*#*\s*$", r"^\s*#{{1,6}}\s*{kw}{sep}{id}\s*#*\s*$"),
    ("xml_tag", r"<task\s+id\s*=\s*[\"']?{id}[\"']?\s*>", r"</task\s*>"),
)

_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_FENCE = re.compile(r"^\s*(```|~~~)")
_TASK_LABEL = re.compile(r"^task\s*\d+\s*[:.)-]\s*", re.IGNORECASE)
_NON_WORD = re.compile(r"[^\w\s]+", re.UNICODE)
_SPACES = re.compile(r"[\s_-]+")

Strategy = Callable[..., str | None]


@dataclass(slots=True)
class FallbackMatch:
    """Content recovered for one task and the strategy that found it."""

    task_id: str
    content: str
    strategy: str


@dataclass(slots=True)
class FallbackReport:
    """Outcome of the fallback pass over all unresolved tasks."""

    matches: dict[str, FallbackMatch] = field(default_factory=dict)
    attempted: dict[str, list[str]] = field(default_factory=dict)
    misses: list[ExtractionMiss] = field(default_factory=list)


def exact_marker(text: str, spec: TaskSpec, *, min_chars: int = MIN_RESOLVED_CHARS) -> str | None:
    _opened, span = find_marker_span(text, spec.task_id, min_chars=min_chars)
    return span.content if span is not None else None


def marker_variant(
    text: str,
    spec: TaskSpec,
    *,
    min_chars: int = MIN_RESOLVED_CHARS,
) -> str | None:
    id_pattern = _id_pattern(spec.task_id)
    for _name, start_template, end_template in _DELIMITER_SYNTAXES:
        start_re = re.compile(
            start_template.format(kw=_KEYWORD.format(kind="START"), sep=_SEP, id=id_pattern),
            re.IGNORECASE | re.MULTILINE,
        )
        end_re = re.compile(
            end_template.format(kw=_KEYWORD.format(kind="END"), sep=_SEP, id=id_pattern),
            re.IGNORECASE | re.MULTILINE,
        )
        starts = list(start_re.finditer(text))
        for index, start in enumerate(starts):
            end = end_re.search(text, start.end())
            if end is None:
                break
            following = starts[index + 1] if index + 1 < len(starts) else None
            if following is not None and following.start() < end.start():
                continue
            content = text[start.end() : end.start()].strip()
            if content and len(content) >= min_chars:
                return content
    return None


def heading_section(
    text: str,
    spec: TaskSpec,
    *,
    min_chars: int = MIN_RESOLVED_CHARS,
) -> str | None:
    wanted = {_normalize_heading(spec.display_name), _normalize_heading(spec.task_id)}
    wanted.discard("")
    lines = text.splitlines()
    in_fence = False
    start_index: int | None = None
    start_level = 0
    for index, line in enumerate(lines):
        if _FENCE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        heading = _HEADING.match(line)
        if heading is None:
            continue
        level = len(heading.group(1))
        if start_index is not None and level <= start_level:
            content = "\n".join(lines[start_index + 1 : index]).strip()
            if content and len(content) >= min_chars:
                return content
            start_index = None
        if start_index is None and _normalize_heading(heading.group(2)) in wanted:
            start_index = index
            start_level = level
    if start_index is None:
        return None
    content = "\n".join(lines[start_index + 1 :]).strip()
    return content if content and len(content) >= min_chars else None


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("exact_marker", exact_marker),
    ("marker_variant", marker_variant),
    ("heading", heading_section),
)


def recover_task_outputs(
    text: str,
    task_specs: Iterable[TaskSpec],
    *,
    min_chars: int = MIN_RESOLVED_CHARS,
    strategies: tuple[tuple[str, Strategy], ...] = STRATEGIES,
) -> FallbackReport:
    """Run the staged strategies for each task; the first acceptable hit wins."""

    report = FallbackReport()
    for spec in task_specs:
        tried: list[str] = []
        for name, strategy in strategies:
            tried.append(name)
            content = strategy(text, spec, min_chars=min_chars)
            if content is None or len(content) < min_chars:
                continue
            report.matches[spec.task_id] = FallbackMatch(spec.task_id, content, name)
            logger.info("Recovered task %s via %s (%d chars)", spec.task_id, name, len(content))
            break
        else:
            miss = ExtractionMiss(spec.task_id, tuple(tried))
            report.misses.append(miss)
            logger.warning("%s", miss)
        report.attempted[spec.task_id] = tried
    return report


def _id_pattern(task_id: str) -> str:
    parts = [re.escape(part) for part in _SPACES.split(task_id.strip()) if part]
    return r"[\s_-]*".join(parts)


def _normalize_heading(value: str) -> str:
    label = _TASK_LABEL.sub("", value.strip())
    label = _NON_WORD.sub(" ", label.replace("*", "").replace("`", ""))
    return _SPACES.sub(" ", label).strip().lower()
