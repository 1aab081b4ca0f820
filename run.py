"""Entry-point for the Course Keeper application."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console

from coursekeeper.bootstrap import Bootstrapper, Services, initialize_app
from coursekeeper.errors import CourseKeeperError, RepositoryError, ScanError
from coursekeeper.logging_utils import build_default_handlers, configure_logging
from coursekeeper.services.library import CourseLibrary
from coursekeeper.ui.overview import CourseOverview, format_seconds
from coursekeeper.web import create_app


LOGGER = logging.getLogger("coursekeeper.cli")


cli = typer.Typer(add_completion=False, help="Course Keeper management commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_default_handlers(storage_root))


def _load_services() -> Services:
    config = initialize_app()
    _prepare_logging(config.storage_root)
    return Bootstrapper(config).build_services()


def _validate_part_id(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise typer.BadParameter("Part id cannot be empty")
    return cleaned


def _course_root_argument(help_text: str = "Course root directory"):
    return typer.Argument(
        ...,
        exists=True,
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help=help_text,
    )


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="COURSEKEEPER_ROOT_PATH",
    ),
) -> None:
    """Run the HTTP API used by player front-ends."""

    services = _load_services()
    app = create_app(
        services.library,
        services.persister,
        config=services.config,
        root_path=(root_path or "").rstrip("/"),
        timestamps=services.timestamps,
    )
    server_config = uvicorn.Config(app, host=host, port=port, log_config=None)
    server = uvicorn.Server(server_config)
    app.state.server = server
    server.run()


@cli.command()
def scan(
    root: Path = _course_root_argument(),
    probe: Optional[bool] = typer.Option(
        None,
        "--probe/--no-probe",
        help="Read durations with ffprobe (defaults to the configured value)",
    ),
) -> None:
    """Scan ROOT and merge the result into its stored progress."""

    services = _load_services()
    try:
        outcome = services.library.sync(root, probe_durations=probe)
    except (ScanError, RepositoryError) as error:
        LOGGER.error("Scan of %s failed: %s", root, error)
        typer.echo(f"Scan failed: {error}")
        raise typer.Exit(code=1) from error
    finally:
        services.persister.close()

    course = outcome.course
    typer.echo(f"Course: {course.title} ({course.root_path})")
    typer.echo(f"  Action: {outcome.action}")
    typer.echo(f"  Chapters: {len(course.chapters)}  Parts: {course.part_count}")
    typer.echo(f"  Status: {course.status.value}")
    typer.echo(f"  Note: {outcome.note}")
    if outcome.merge is not None:
        merge = outcome.merge
        typer.echo(f"  Matched: {merge.matched_count}/{merge.total_new_parts} ({merge.matched_percent:.0%})")
        for part in merge.unmatched_existing:
            typer.echo(f"    lost progress: {part.path}")
        for part in merge.unmatched_new:
            typer.echo(f"    new file: {part.path}")
    if outcome.backup_path is not None:
        typer.echo(f"  Backup: {outcome.backup_path}")


@cli.command()
def status(root: Path = _course_root_argument()) -> None:
    """Show chapters, parts and progress stored for ROOT."""

    services = _load_services()
    course = services.library.load(root)
    if course is None:
        typer.echo(f"No stored course at {root}; run 'scan' first.")
        raise typer.Exit(code=1)
    CourseOverview(course, console=Console()).run()


@cli.command("save-position")
def save_position(
    root: Path = _course_root_argument(),
    part_id: str = typer.Argument(..., callback=_validate_part_id, help="Identifier of the part"),
    seconds: int = typer.Argument(..., min=0, help="Playback position in seconds"),
) -> None:
    """Store SECONDS as the position of PART_ID and make it the resume point."""

    services = _load_services()
    try:
        saved = services.persister.save_position_by_part_id(root, part_id, seconds)
    except RepositoryError as error:
        typer.echo(f"Saving failed: {error}")
        raise typer.Exit(code=1) from error
    if not saved:
        typer.echo(f"No stored course at {root}")
        raise typer.Exit(code=1)
    typer.echo(f"Saved {format_seconds(seconds)} for part {part_id}")


@cli.command("mark-watched")
def mark_watched(
    root: Path = _course_root_argument(),
    part_id: str = typer.Argument(..., callback=_validate_part_id, help="Identifier of the part"),
) -> None:
    """Flag PART_ID as fully watched."""

    services = _load_services()
    try:
        saved = services.persister.mark_watched(root, part_id)
    except RepositoryError as error:
        typer.echo(f"Saving failed: {error}")
        raise typer.Exit(code=1) from error
    if not saved:
        typer.echo(f"Part {part_id} not found in {root}")
        raise typer.Exit(code=1)
    typer.echo(f"Marked part {part_id} as watched")


@cli.command("clear-resume")
def clear_resume(root: Path = _course_root_argument()) -> None:
    """Forget where playback of ROOT should resume."""

    services = _load_services()
    if not services.persister.clear_resume(root):
        typer.echo(f"No stored course at {root}")
        raise typer.Exit(code=1)
    typer.echo("Resume marker cleared")


@cli.command()
def resume(root: Path = _course_root_argument()) -> None:
    """Print the file playback of ROOT should start from."""

    services = _load_services()
    course = services.library.load(root)
    if course is None:
        typer.echo(f"No stored course at {root}; run 'scan' first.")
        raise typer.Exit(code=1)
    target = CourseLibrary.resume_target(course)
    if target is None:
        typer.echo("Course has no playable parts")
        raise typer.Exit(code=1)
    position = 0
    if course.resume is not None and course.resume.part_id == target.id:
        position = course.resume.position_seconds
    typer.echo(f"{target.path}\t{position}")


@cli.command()
def backup(
    root: Path = _course_root_argument(),
    reason: Optional[str] = typer.Option(None, help="Label stored in the backup name"),
) -> None:
    """Snapshot the stored metadata of ROOT."""

    services = _load_services()
    try:
        target = services.repository.backup(root, reason)
    except CourseKeeperError as error:
        typer.echo(f"Backup failed: {error}")
        raise typer.Exit(code=1) from error
    if target is None:
        typer.echo(f"No stored course at {root}")
        raise typer.Exit(code=1)
    typer.echo(f"Backup written to {target}")


@cli.command()
def bookmark(
    root: Path = _course_root_argument(),
    video: str = typer.Argument(..., help="Video path, absolute or relative to ROOT"),
    seconds: int = typer.Argument(..., min=0, help="Position of the bookmark in seconds"),
    description: str = typer.Argument(..., help="What happens at this point"),
) -> None:
    """Add a timecode bookmark to VIDEO."""

    services = _load_services()
    try:
        added = services.timestamps.append(root, video, seconds, description)
    except ValueError as error:
        raise typer.BadParameter(str(error)) from error
    except RepositoryError as error:
        typer.echo(f"Saving failed: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(f"Bookmarked {format_seconds(added.position_seconds)} - {added.description}")


@cli.command()
def bookmarks(
    root: Path = _course_root_argument(),
    video: Optional[str] = typer.Option(None, help="Only list bookmarks of this video"),
) -> None:
    """List the timecode bookmarks stored for ROOT."""

    services = _load_services()
    try:
        if video:
            grouped = {video: services.timestamps.for_video(root, video)}
        else:
            grouped = services.timestamps.load(root)
    except ValueError as error:
        raise typer.BadParameter(str(error)) from error
    except RepositoryError as error:
        typer.echo(f"Reading failed: {error}")
        raise typer.Exit(code=1) from error
    if not any(grouped.values()):
        typer.echo("No bookmarks stored")
        return
    for name, entries in grouped.items():
        typer.echo(name)
        for entry in entries:
            typer.echo(f"  {format_seconds(entry.position_seconds)}  {entry.description}")


if __name__ == "__main__":
    cli()
