"""Exactly-once persistence of resolved task documents."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from repomind.generation.errors import PersistenceError
from repomind.generation.models import TaskSpec

logger = logging.getLogger(__name__)

FOOTER_RULE = "\n\n---\n*Generated by repomind at "


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def render_task_document(
    *,
    content: str,
    display_name: str,
    project_name: str,
    generated_at: datetime,
) -> str:
    """Wrap extracted content with the fixed header and footer."""

    return (
        f"# {display_name} - {project_name}\n\n"
        f"{content}"
        f"{FOOTER_RULE}{generated_at.isoformat()}*  \n"
        f"*Task: {display_name}*\n"
    )


def strip_task_document(document: str) -> str:
    """Return the extracted content of a rendered task document."""

    header, separator, rest = document.partition("\n\n")
    if not separator or not header.startswith("# "):
        raise ValueError("Task document is missing its title header.")
    footer_at = rest.rfind(FOOTER_RULE)
    if footer_at == -1:
        raise ValueError("Task document is missing its generation footer.")
    return rest[:footer_at]


def read_task_document(path: Path) -> str:
    return strip_task_document(path.read_text("utf-8"))


class TaskPersistence:
    """Writes each task document at most once per session.

    The resolved-id gate is claimed synchronously before the write is
    awaited, so concurrent live and fallback arrivals for the same task can
    never both reach the filesystem.
    """

    def __init__(
        self,
        output_root: Path,
        *,
        project_name: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.output_root = output_root
        self.project_name = project_name
        self._clock = clock
        self._claimed: set[str] = set()
        self._written: dict[str, Path] = {}
        self.physical_writes = 0

    def path_for(self, spec: TaskSpec) -> Path:
        key = PurePosixPath(spec.output_key)
        if key.is_absolute() or ".." in key.parts or not key.parts:
            raise ValueError(f"Output key must be a relative path inside the output root: {spec.output_key!r}")
        return self.output_root.joinpath(*key.parts)

    def is_resolved(self, task_id: str) -> bool:
        return task_id in self._claimed

    @property
    def written(self) -> dict[str, Path]:
        return dict(self._written)

    async def write(self, spec: TaskSpec, content: str) -> Path | None:
        """Persist ``content`` for ``spec``; returns None when already claimed."""

        if spec.task_id in self._claimed:
            logger.debug("Skipping duplicate write for task %s", spec.task_id)
            return None
        self._claimed.add(spec.task_id)

        path = self.path_for(spec)
        document = render_task_document(
            content=content,
            display_name=spec.display_name,
            project_name=self.project_name,
            generated_at=self._clock(),
        )
        try:
            await asyncio.to_thread(_write_text, path, document)
        except OSError as error:
            raise PersistenceError(spec.task_id, str(path), str(error)) from error
        self.physical_writes += 1
        self._written[spec.task_id] = path
        logger.info("Wrote task %s to %s", spec.task_id, path)
        return path


def _write_text(path: Path, document: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(document, "utf-8")
