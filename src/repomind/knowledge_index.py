"""Index of generated knowledge files for one repository."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from repomind.generation.models import GenerationOutcome, TaskSpec
from repomind.generation.persistence import utc_now

INDEX_FILENAME = "knowledge.yaml"
INDEX_VERSION = 1


def build_knowledge_index(
    outcome: GenerationOutcome,
    task_specs: tuple[TaskSpec, ...] | list[TaskSpec],
    *,
    repo_path: Path,
    output_root: Path,
) -> dict[str, Any]:
    """Describe which task documents exist and how they were produced."""

    specs = {spec.task_id: spec for spec in task_specs}
    generated: list[dict[str, Any]] = []
    missing: list[dict[str, Any]] = []
    for task in outcome.outcomes:
        spec = specs[task.task_id]
        if task.output_path is None:
            missing.append(
                {
                    "task_id": task.task_id,
                    "name": spec.display_name,
                    "resolution_mode": task.resolution_mode.value,
                },
            )
            continue
        path = Path(task.output_path)
        generated.append(
            {
                "task_id": task.task_id,
                "name": spec.display_name,
                "path": _relative(path, output_root),
                "resolution_mode": task.resolution_mode.value,
                "confidence": round(task.confidence, 4),
                "degraded": task.degraded,
                "fallback_strategy": task.fallback_strategy,
                "references": list(task.references),
            },
        )
    return {
        "version": INDEX_VERSION,
        "repository": str(repo_path),
        "generated_at": utc_now().isoformat(),
        "status": outcome.status.value,
        "overall_confidence": round(outcome.overall_confidence, 4),
        "attempts": outcome.attempts,
        "generated_files": generated,
        "missing_files": missing,
        "warnings": list(outcome.warnings),
    }


def write_knowledge_index(
    outcome: GenerationOutcome,
    task_specs: tuple[TaskSpec, ...] | list[TaskSpec],
    *,
    repo_path: Path,
    output_root: Path,
) -> Path:
    path = output_root / INDEX_FILENAME
    payload = build_knowledge_index(
        outcome,
        task_specs,
        repo_path=repo_path,
        output_root=output_root,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=True, allow_unicode=True), "utf-8")
    return path


def load_knowledge_index(path: Path) -> dict[str, Any]:
    """Load an index and validate its top-level object type."""

    payload = yaml.safe_load(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Knowledge index must be a YAML mapping: {path}")
    return payload


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()
