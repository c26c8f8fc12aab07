"""Fold per-task resolutions into one outcome with derived confidence."""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import yaml

from repomind.generation.client import NOTICE_PREFIX
from repomind.generation.models import (
    FALLBACK_DAMPING,
    GenerationOutcome,
    GenerationStatus,
    ResolutionMode,
    TaskOutcome,
    TaskSpec,
)

logger = logging.getLogger(__name__)

LENGTH_SATURATION_CHARS = 2_000
LENGTH_TAIL_SCALE_CHARS = 4_000

_FENCED_YAML = re.compile(r"```ya?ml\s*\n(.*?)\n```", re.DOTALL | re.IGNORECASE)
_FENCED_JSON = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL | re.IGNORECASE)
_SUBHEADING = re.compile(r"^#{2,6}\s+\S", re.MULTILINE)
_HEADING = re.compile(r"^#{1,6}\s+\S", re.MULTILINE)
_TABLE_RULE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$", re.MULTILINE)
_MERMAID = re.compile(r"```mermaid\b", re.IGNORECASE)


@dataclass(slots=True)
class TaskResolution:
    """Content accepted for one task and how it arrived."""

    task_id: str
    content: str
    mode: ResolutionMode
    degraded: bool = False
    strategy: str | None = None
    output_path: str | None = None


def extract_references(content: str) -> list[str]:
    """Collect ``references`` from fenced yaml or json metadata blocks."""

    for pattern, loader in ((_FENCED_YAML, _load_yaml), (_FENCED_JSON, _load_json)):
        for match in pattern.finditer(content):
            payload = loader(match.group(1))
            if not isinstance(payload, dict):
                continue
            raw = payload.get("references")
            if isinstance(raw, list):
                return _dedupe(str(item).strip() for item in raw if str(item).strip())
    return []


def is_annotated(content: str) -> bool:
    return NOTICE_PREFIX in content


def score_confidence(content: str, references: list[str], *, damped: bool) -> float:
    """Heuristic quality score in [0, 1].

    Length contributes up to 0.4 linearly until saturation and a small
    diminishing tail beyond it; structure (sub-headings, diagrams, tables)
    and references add fixed bonuses.  Degraded, partial or fallback
    resolutions are damped by a fixed factor.
    """

    length = len(content)
    confidence = min(length / LENGTH_SATURATION_CHARS, 1.0) * 0.4
    if length > LENGTH_SATURATION_CHARS:
        overflow = length - LENGTH_SATURATION_CHARS
        confidence += 0.1 * (1 - math.exp(-overflow / LENGTH_TAIL_SCALE_CHARS))
    if _HEADING.search(content) and _SUBHEADING.search(content):
        confidence += 0.2
    if _MERMAID.search(content):
        confidence += 0.1
    if "|" in content and _TABLE_RULE.search(content):
        confidence += 0.1
    if references:
        confidence += 0.1
    if damped or is_annotated(content):
        confidence *= FALLBACK_DAMPING
    return max(0.0, min(confidence, 1.0))


class ResultAggregator:
    """Build the run outcome; every declared task appears exactly once."""

    def build(
        self,
        task_specs: Iterable[TaskSpec],
        resolutions: Mapping[str, TaskResolution],
        *,
        warnings: Iterable[str] = (),
        error: str | None = None,
        attempts: int = 0,
    ) -> GenerationOutcome:
        outcomes: list[TaskOutcome] = []
        for spec in task_specs:
            resolution = resolutions.get(spec.task_id)
            if resolution is None:
                outcomes.append(
                    TaskOutcome(
                        task_id=spec.task_id,
                        content="",
                        confidence=0.0,
                        resolution_mode=ResolutionMode.MISSING,
                    ),
                )
                continue
            references = extract_references(resolution.content)
            damped = resolution.degraded or resolution.mode is ResolutionMode.FALLBACK
            outcomes.append(
                TaskOutcome(
                    task_id=spec.task_id,
                    content=resolution.content,
                    confidence=score_confidence(resolution.content, references, damped=damped),
                    resolution_mode=resolution.mode,
                    references=references,
                    output_path=resolution.output_path,
                    fallback_strategy=resolution.strategy,
                    degraded=damped,
                ),
            )

        resolved = [outcome for outcome in outcomes if outcome.resolved]
        if outcomes and len(resolved) == len(outcomes):
            status = GenerationStatus.SUCCESS
        elif resolved:
            status = GenerationStatus.PARTIAL
        else:
            status = GenerationStatus.FAILED
        overall = sum(outcome.confidence for outcome in resolved) / len(resolved) if resolved else 0.0
        logger.info(
            "Aggregated %d/%d tasks: status=%s confidence=%.2f",
            len(resolved),
            len(outcomes),
            status.value,
            overall,
        )
        return GenerationOutcome(
            status=status,
            outcomes=outcomes,
            overall_confidence=overall,
            warnings=list(warnings),
            error=error,
            attempts=attempts,
        )


def _load_yaml(raw: str) -> object:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return None


def _load_json(raw: str) -> object:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result
