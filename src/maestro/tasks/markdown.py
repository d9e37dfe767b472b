"""Checkbox plan documents: render, parse and patch in place."""

from __future__ import annotations

import re
from dataclasses import dataclass

from maestro.tasks.model import Task, TaskStatus

CHECKBOX_RE = re.compile(r"^([-*]\s+)\[([ xX])\](\s+)(.+?)\s*$")
HEADING_RE = re.compile(r"^#\s+(.+?)\s*$")

# Trailing "(path.ext)" or "(a.py, b/c.ts)" on a checkbox title.
_FILE_SCOPE_RE = re.compile(r"\(([^()]+)\)\s*$")
_FILE_LIKE_RE = re.compile(r"^[\w./\\-]*[\w-]\.[A-Za-z0-9]+$")


@dataclass
class CheckboxItem:
    ordinal: int
    line_no: int
    title: str
    checked: bool


def extract_file_scope(title: str) -> list[str]:
    """Return the file paths named in a trailing parenthesized token, if any."""
    match = _FILE_SCOPE_RE.search(title)
    if not match:
        return []
    parts = [p.strip() for p in match.group(1).split(",")]
    if not parts or not all(_FILE_LIKE_RE.match(p) for p in parts):
        return []
    return parts


def iter_checkboxes(text: str) -> list[CheckboxItem]:
    items: list[CheckboxItem] = []
    for line_no, line in enumerate(text.splitlines()):
        match = CHECKBOX_RE.match(line)
        if match:
            items.append(
                CheckboxItem(
                    ordinal=len(items),
                    line_no=line_no,
                    title=match.group(4),
                    checked=match.group(2).lower() == "x",
                )
            )
    return items


def document_title(text: str) -> str:
    for line in text.splitlines():
        match = HEADING_RE.match(line)
        if match:
            return match.group(1)
    return ""


def render_plan(name: str, tasks: list[Task]) -> str:
    lines = [f"# {name}", "", "## Tasks", ""]
    for task in tasks:
        box = "[x]" if task.status == TaskStatus.COMPLETED else "[ ]"
        lines.append(f"- {box} {task.title}")
        if task.description:
            lines.append(f"  - {task.description}")
    return "\n".join(lines) + "\n"


def parse_tasks(text: str, id_prefix: str = "task", *, track_id: str = "") -> list[Task]:
    """Parse checkbox items into tasks with ids ``<prefix>-<n>`` by document order."""
    tasks: list[Task] = []
    for item in iter_checkboxes(text):
        task = Task(
            id=f"{id_prefix}-{item.ordinal}",
            title=item.title,
            status=TaskStatus.COMPLETED if item.checked else TaskStatus.PENDING,
            file_scope=extract_file_scope(item.title),
            track_id=track_id,
        )
        if item.checked:
            task.completed_at = task.updated_at
        tasks.append(task)
    return tasks


def _task_ordinal(task_id: str) -> int | None:
    _, _, tail = task_id.rpartition("-")
    return int(tail) if tail.isdigit() else None


def patch_statuses(text: str, tasks: list[Task]) -> str:
    """Flip checkbox markers so they agree with each task's status.

    A task's checkbox is located by its ordinal when the title at that
    position matches, otherwise by the first checkbox with the same title.
    Reapplying the same statuses yields the same text.
    """
    lines = text.splitlines(keepends=True)
    items = iter_checkboxes(text)
    for task in tasks:
        target = None
        ordinal = _task_ordinal(task.id)
        if ordinal is not None and ordinal < len(items) and items[ordinal].title == task.title:
            target = items[ordinal]
        else:
            target = next((i for i in items if i.title == task.title), None)
        if target is None:
            continue

        want_checked = task.status == TaskStatus.COMPLETED
        if target.checked == want_checked:
            continue

        line = lines[target.line_no]
        marker = "[x]" if want_checked else "[ ]"
        lines[target.line_no] = CHECKBOX_RE.sub(
            lambda m: f"{m.group(1)}{marker}{m.group(3)}{m.group(4)}",
            line.rstrip("\r\n"),
            count=1,
        ) + line[len(line.rstrip("\r\n")):]
        target.checked = want_checked
    return "".join(lines)
