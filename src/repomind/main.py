"""CLI entrypoint for repomind."""

import logging
from pathlib import Path

import rich_click as click

from repomind import __version__
from repomind.config import ANALYSIS_DEPTHS
from repomind.controllers import GenerateCommand, KnowledgeCliController, TasksCommand

click.rich_click.USE_MARKDOWN = True
KNOWLEDGE_CONTROLLER = KnowledgeCliController()


@click.group()
@click.version_option(version=__version__, prog_name="repomind")
def repomind() -> None:
    """Repository knowledge generation CLI."""


@repomind.command("generate")
@click.option(
    "--path",
    "repo_path",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Repository to analyse.",
)
@click.option(
    "--output",
    "output_dir",
    default=None,
    help="Output directory, relative to the repository unless absolute.",
)
@click.option("--depth", type=click.Choice(ANALYSIS_DEPTHS), default=None, help="Analysis depth.")
@click.option("--no-tests", is_flag=True, default=False, help="Skip test code in the analysis.")
@click.option("--no-docs", is_flag=True, default=False, help="Skip existing docs in the analysis.")
@click.option(
    "--timeout",
    "timeout_ms",
    type=click.IntRange(min=1),
    default=None,
    help="Per-call timeout in milliseconds.",
)
@click.option(
    "--attempts",
    "max_attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum normal attempts of the retry ladder.",
)
@click.option(
    "--task",
    "task_ids",
    multiple=True,
    help="Restrict generation to a task id. Can be repeated.",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def generate(  # noqa: PLR0913
    repo_path: Path,
    output_dir: str | None,
    depth: str | None,
    no_tests: bool,
    no_docs: bool,
    timeout_ms: int | None,
    max_attempts: int | None,
    task_ids: tuple[str, ...],
    verbose: bool,
) -> None:
    """Generate knowledge documents for a repository in one engine call."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        result = KNOWLEDGE_CONTROLLER.generate(
            GenerateCommand(
                repo_path=repo_path,
                output_dir=output_dir,
                depth=depth,
                include_tests=not no_tests,
                include_docs=not no_docs,
                timeout_ms=timeout_ms,
                max_attempts=max_attempts,
                task_ids=task_ids,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Knowledge generation failed.")


@repomind.command("tasks")
@click.option("--verbose", is_flag=True, default=False, help="Show task descriptions.")
def tasks(verbose: bool) -> None:
    """List the analysis tasks generated per run."""

    _emit_lines(KNOWLEDGE_CONTROLLER.list_tasks(TasksCommand(verbose=verbose)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    repomind()
