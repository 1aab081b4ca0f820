"""A Rich-powered console overview of one course and its progress."""

from __future__ import annotations

from typing import Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..models import Chapter, Course, CourseStatus, Part
from ..services.library import CourseLibrary


STATUS_STYLES = {
    CourseStatus.IN_PROGRESS: "cyan",
    CourseStatus.CHANGED: "yellow",
    CourseStatus.COMPLETED: "green",
}


def format_seconds(value: Optional[int]) -> str:
    if value is None:
        return "--:--"
    minutes, seconds = divmod(max(int(value), 0), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


class CourseOverview:
    """Render the chapter tree next to a progress summary."""

    def __init__(self, course: Course, *, console: Optional[Console] = None) -> None:
        self._course = course
        self._console = console or Console()

    def run(self) -> None:
        course = self._course
        console = self._console
        console.rule(f"[bold magenta]{course.title or course.root_path}")

        if not course.chapters:
            console.print(
                Panel(
                    "No playable files were found in this course.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        tree_panel = Panel(
            self._build_tree(),
            title="Chapters",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([tree_panel, self._build_stats_panel()], expand=True))

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    def _build_tree(self) -> Tree:
        tree = Tree(f"[bold cyan]{self._course.root_path}", guide_style="cyan")
        resume_id = self._course.resume.part_id if self._course.resume else None
        for chapter in self._course.chapters:
            chapter_node = tree.add(self._build_chapter_label(chapter))
            for part in chapter.parts:
                chapter_node.add(self._build_part_label(part, is_resume=part.id == resume_id))
        return tree

    @staticmethod
    def _build_chapter_label(chapter: Chapter) -> Text:
        watched = sum(1 for part in chapter.parts if part.watched)
        label = Text(chapter.title, style="bold")
        label.append(f"  {watched}/{len(chapter.parts)}", style="dim")
        return label

    @staticmethod
    def _build_part_label(part: Part, *, is_resume: bool) -> Text:
        marker = "✔ " if part.watched else "· "
        label = Text(marker, style="green" if part.watched else "dim")
        label.append(part.title or part.file_name, style="white")
        label.append(
            f"  {format_seconds(part.last_position_seconds)} / {format_seconds(part.duration_seconds)}",
            style="dim",
        )
        if is_resume:
            label.append("  ▶ resume", style="bold magenta")
        label.append(f"\n{part.id}", style="dim")
        return label

    def _build_stats_panel(self) -> Panel:
        course = self._course
        parts = list(course.iter_parts())
        watched = sum(1 for part in parts if part.watched)

        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Status", Text(course.status.value, style=STATUS_STYLES[course.status]))
        metrics.add_row("Chapters", str(len(course.chapters)))
        metrics.add_row("Parts", str(len(parts)))
        metrics.add_row("Watched", f"{watched}/{len(parts)}")

        time_table = Table.grid(expand=True, padding=(0, 1))
        time_table.add_column(style="dim")
        time_table.add_column(justify="right", style="bold")
        time_table.add_row("Watched time", format_seconds(course.watched_seconds))
        time_table.add_row("Total time", format_seconds(course.total_duration_seconds))
        target = CourseLibrary.resume_target(course)
        if target is not None:
            position = course.resume.position_seconds if course.resume and course.resume.part_id == target.id else 0
            time_table.add_row("Resume", f"{target.title or target.file_name} @ {format_seconds(position)}")

        body = Group(metrics, Rule(style="magenta"), time_table)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = ["CourseOverview", "format_seconds"]
