"""Main CLI entry point for forge."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__, db, orchestrate
from .config import settings

console = Console()


def setup_logging(level: str) -> None:
    """Route library logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                show_path=False,
                rich_tracebacks=True,
            )
        ],
        force=True,
    )


def _exit(ok: bool) -> None:
    sys.exit(0 if ok else 1)


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Override FORGE_LOG_LEVEL (DEBUG, INFO, WARNING...)")
def main(log_level: str | None) -> None:
    """Forge: prepare context packages for development tasks and learn from their outcomes."""
    setup_logging(log_level or settings.log_level)


@main.command()
@click.argument("request")
@click.option(
    "--project",
    "-p",
    "project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Project directory the request is about",
)
@click.option("--wait", is_flag=True, help="Block until an open question is answered or expires")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the accepted context package as JSON",
)
def prepare(request: str, project: Path, wait: bool, output: Path | None) -> None:
    """Classify REQUEST and assemble a quality-gated context package."""
    _exit(asyncio.run(orchestrate.prepare(request, str(project), wait=wait, output=output)))


@main.command()
@click.argument("request_id")
@click.argument("option")
@click.option("--notes", default=None, help="Free-text context for the answer")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the accepted context package as JSON",
)
def respond(request_id: str, option: str, notes: str | None, output: Path | None) -> None:
    """Answer an open question.

    OPTION: the option text or its 1-based number
    """
    _exit(asyncio.run(orchestrate.respond(request_id, option, notes=notes, output=output)))


@main.command()
@click.argument("task_id", required=False)
def status(task_id: str | None) -> None:
    """Show recent tasks, or one task with its packages and open questions."""
    _exit(asyncio.run(orchestrate.show_status(task_id)))


@main.command()
@click.argument("report", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def feedback(report: Path) -> None:
    """Record an executor's REPORT (JSON) against its context package."""
    _exit(asyncio.run(orchestrate.record_feedback(report)))


@main.command()
@click.option(
    "--project",
    "-p",
    "project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
)
def insights(project: Path) -> None:
    """Summarize execution feedback for a project into recommendations."""
    _exit(asyncio.run(orchestrate.show_insights(str(project))))


@main.command(name="init-db")
def init_db() -> None:
    """Create the database tables."""
    asyncio.run(db.init_db())
    console.print(f"[green]Database initialized:[/green] {settings.database_url}")


if __name__ == "__main__":
    main()
