"""Runtime configuration for repository knowledge generation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from repomind.generation.backend.cli_backend import DEFAULT_COMMAND_TEMPLATE
from repomind.generation.models import SessionConfig

ANALYSIS_DEPTHS = ("basic", "normal", "deep")
MAX_TIMEOUT_MS = 3_600_000


@dataclass(slots=True)
class EngineSettings:
    """External completion engine settings."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    model: str = "sonnet"
    graceful_shutdown_seconds: float = 2.0


@dataclass(slots=True)
class GenerationSettings:
    """Retry ladder and session limits."""

    timeout_ms: int = 600_000
    max_attempts: int = 2
    base_retry_delay_ms: int = 1_000
    allow_partial_results: bool = True
    allow_degradation: bool = True
    max_turns: int | None = None

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            timeout_ms=self.timeout_ms,
            max_attempts=self.max_attempts,
            base_retry_delay_ms=self.base_retry_delay_ms,
            allow_partial_results=self.allow_partial_results,
            allow_degradation=self.allow_degradation,
            max_turns=self.max_turns,
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    output_dir: str = ".repomind"
    project_name: str | None = None
    depth: str = "normal"
    templates_dir: Path | None = None
    engine: EngineSettings = field(default_factory=EngineSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``REPOMIND_*`` environment variables."""

        templates_dir = os.getenv("REPOMIND_TEMPLATES_DIR", "").strip()
        max_turns = os.getenv("REPOMIND_MAX_TURNS", "").strip()
        return cls(
            output_dir=os.getenv("REPOMIND_OUTPUT_DIR", ".repomind"),
            project_name=os.getenv("REPOMIND_PROJECT_NAME") or None,
            depth=os.getenv("REPOMIND_ANALYSIS_DEPTH", "normal").strip().lower(),
            templates_dir=Path(templates_dir) if templates_dir else None,
            engine=EngineSettings(
                command_template=os.getenv("REPOMIND_ENGINE_COMMAND", DEFAULT_COMMAND_TEMPLATE),
                model=os.getenv("REPOMIND_ENGINE_MODEL", "sonnet"),
                graceful_shutdown_seconds=float(
                    os.getenv("REPOMIND_ENGINE_SHUTDOWN_SECONDS", "2.0"),
                ),
            ),
            generation=GenerationSettings(
                timeout_ms=int(os.getenv("REPOMIND_TIMEOUT_MS", "600000")),
                max_attempts=int(os.getenv("REPOMIND_MAX_ATTEMPTS", "2")),
                base_retry_delay_ms=int(os.getenv("REPOMIND_RETRY_DELAY_MS", "1000")),
                allow_partial_results=_env_bool("REPOMIND_ALLOW_PARTIAL_RESULTS", True),
                allow_degradation=_env_bool("REPOMIND_ALLOW_DEGRADATION", True),
                max_turns=int(max_turns) if max_turns else None,
            ),
        )

    def validate(self) -> None:
        """Validate settings that can be checked without starting the engine."""

        if self.depth not in ANALYSIS_DEPTHS:
            raise ValueError(
                f"REPOMIND_ANALYSIS_DEPTH must be one of {', '.join(ANALYSIS_DEPTHS)}.",
            )
        if not 0 < self.generation.timeout_ms <= MAX_TIMEOUT_MS:
            raise ValueError(f"REPOMIND_TIMEOUT_MS must be in (0, {MAX_TIMEOUT_MS}].")
        if self.generation.max_attempts < 1:
            raise ValueError("REPOMIND_MAX_ATTEMPTS must be >= 1.")
        if self.generation.base_retry_delay_ms < 0:
            raise ValueError("REPOMIND_RETRY_DELAY_MS must be >= 0.")
        if self.generation.max_turns is not None and self.generation.max_turns < 1:
            raise ValueError("REPOMIND_MAX_TURNS must be >= 1.")
        if not self.engine.command_template.strip():
            raise ValueError("REPOMIND_ENGINE_COMMAND must not be empty.")
        if self.templates_dir is not None and not self.templates_dir.is_dir():
            raise ValueError(f"REPOMIND_TEMPLATES_DIR is not a directory: {self.templates_dir}")

    def output_root(self, repo_path: Path) -> Path:
        output = Path(self.output_dir)
        return output if output.is_absolute() else repo_path / output


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
