"""Prompt templates, the shared template cache and the unified prompt builder."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Protocol

from repomind.generation.demux import end_marker, start_marker
from repomind.generation.models import TaskSpec

logger = logging.getLogger(__name__)

COMMON_GUIDE_TEMPLATE = "common-analysis-guide.md"
UNIFIED_TEMPLATE = "unified-analysis-tasks.md"
TEMPLATE_SUFFIX = ".md"

SYSTEM_PROMPT = (
    "You are an expert code repository analyst who understands complex code "
    "structure and business logic. Work through the task list below and analyse "
    "the repository thoroughly. Do not modify any files."
)

DEFAULT_TASKS: tuple[TaskSpec, ...] = (
    TaskSpec(
        task_id="overview",
        display_name="Project Overview",
        prompt_fragment="overview-analysis.md",
        output_key="docs/overview.md",
        priority=1,
        description="Overall characteristics of the project for a quick understanding.",
    ),
    TaskSpec(
        task_id="architecture",
        display_name="System Architecture",
        prompt_fragment="architecture-analysis.md",
        output_key="docs/architecture.md",
        priority=2,
        description="Overall architecture and the core design patterns.",
    ),
    TaskSpec(
        task_id="components",
        display_name="Component Design",
        prompt_fragment="components-analysis.md",
        output_key="docs/components.md",
        priority=3,
        description="Component structure and design patterns.",
    ),
    TaskSpec(
        task_id="apis",
        display_name="API Interfaces",
        prompt_fragment="apis-analysis.md",
        output_key="docs/apis.md",
        priority=4,
        description="API design and interface conventions.",
    ),
    TaskSpec(
        task_id="data-models",
        display_name="Data Models",
        prompt_fragment="data-models-analysis.md",
        output_key="docs/data-models.md",
        priority=4,
        description="Data structures and model design.",
    ),
    TaskSpec(
        task_id="workflows",
        display_name="Business Workflows",
        prompt_fragment="workflows-analysis.md",
        output_key="docs/workflows.md",
        priority=5,
        description="Core business flows and processing logic.",
    ),
)

TemplateLoader = Callable[[str], str]


class PromptTemplateError(LookupError):
    """A prompt template could not be loaded."""


def package_template_loader(name: str) -> str:
    try:
        return resources.files("repomind").joinpath("templates", name).read_text("utf-8")
    except (FileNotFoundError, OSError) as error:
        raise PromptTemplateError(f"Prompt template not found: {name}") from error


def directory_template_loader(root: Path) -> TemplateLoader:
    def _load(name: str) -> str:
        path = root / name
        try:
            return path.read_text("utf-8")
        except OSError as error:
            raise PromptTemplateError(f"Prompt template not found: {path}") from error

    return _load


class PromptTemplateCache:
    """Read-through template cache shared by concurrent generation runs.

    Templates are loaded lazily on first access under a lock; afterwards the
    cache is only read, so warmed entries can be served without locking.
    """

    def __init__(self, loader: TemplateLoader = package_template_loader) -> None:
        self._loader = loader
        self._entries: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> str:
        cached = self._entries.get(name)
        if cached is not None:
            return cached
        with self._lock:
            cached = self._entries.get(name)
            if cached is None:
                cached = self._loader(name)
                self._entries[name] = cached
                logger.debug("Loaded prompt template %s (%d chars)", name, len(cached))
        return cached

    def warm(self, names: Iterable[str]) -> None:
        for name in names:
            self.get(name)


@dataclass(slots=True)
class AnalysisContext:
    """Repository facts substituted into templates."""

    repo_path: Path
    depth: str = "normal"
    include_tests: bool = True
    include_docs: bool = True

    def substitutions(self) -> dict[str, str]:
        return {
            "{{REPO_PATH}}": str(self.repo_path),
            "{{ANALYSIS_DEPTH}}": self.depth,
            "{{INCLUDE_TESTS}}": str(self.include_tests).lower(),
            "{{INCLUDE_DOCS}}": str(self.include_docs).lower(),
        }


@dataclass(slots=True)
class BuiltPrompt:
    prompt: str
    system_prompt: str


class PromptBuilder(Protocol):
    """Turns the fixed task set into one prompt for the single engine call."""

    def build(self, task_specs: Sequence[TaskSpec]) -> BuiltPrompt: ...


class UnifiedPromptBuilder:
    """Combine the common guide and every task template into one prompt."""

    def __init__(self, context: AnalysisContext, cache: PromptTemplateCache) -> None:
        self.context = context
        self.cache = cache

    def build(self, task_specs: Sequence[TaskSpec]) -> BuiltPrompt:
        guide = self._customize(self.cache.get(COMMON_GUIDE_TEMPLATE))
        sections = [
            self._task_section(index, spec, guide)
            for index, spec in enumerate(task_specs, start=1)
        ]
        unified = self._customize(self.cache.get(UNIFIED_TEMPLATE)).replace(
            "{{TASK_LIST}}",
            "".join(sections),
        )
        return BuiltPrompt(prompt=unified, system_prompt=SYSTEM_PROMPT)

    def _task_section(self, index: int, spec: TaskSpec, guide: str) -> str:
        fragment = self._fragment_for(spec)
        return (
            f"\n### Task {index}: {spec.display_name}\n"
            f"**Task ID**: {spec.task_id}\n"
            f"**Output file**: {spec.output_key}\n"
            f"**Description**: {spec.description}\n"
            f"**Output boundaries**: start with `{start_marker(spec.task_id)}` "
            f"and finish with `{end_marker(spec.task_id)}` on their own lines.\n\n"
            f"{guide}\n\n---\n\n{self._customize(fragment)}\n\n---\n"
        )

    def _fragment_for(self, spec: TaskSpec) -> str:
        if not spec.prompt_fragment.endswith(TEMPLATE_SUFFIX):
            return spec.prompt_fragment
        try:
            return self.cache.get(spec.prompt_fragment)
        except PromptTemplateError:
            logger.warning("Missing template for task %s, using its description", spec.task_id)
            return spec.description or spec.display_name

    def _customize(self, text: str) -> str:
        for placeholder, value in self.context.substitutions().items():
            text = text.replace(placeholder, value)
        return text
