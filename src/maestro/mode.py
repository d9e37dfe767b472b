"""Execution-mode detection: parse plan text into epics and classify it.

A plan is classified as one of:

* ``autonomous`` when an autonomous marker appears anywhere in the text,
* ``parallel`` when two or more epics have ready tasks and the ready tasks'
  file scopes do not collide,
* ``sequential`` otherwise.

Classification never depends on the order of epics in the document.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Iterable

from maestro.tasks.markdown import CHECKBOX_RE, extract_file_scope
from maestro.tasks.model import ExecutionMode

AUTONOMOUS_MARKERS: tuple[str, ...] = (
    "<!-- autonomous -->",
    "<!-- continuous -->",
    "autonomous mode",
)

EPIC_RE = re.compile(r"^##\s+(?:Epic:\s*)?(.+?)\s*$", re.IGNORECASE)

READY = "ready"
COMPLETED = "completed"

MODE_SKILLS: dict[ExecutionMode, list[str]] = {
    ExecutionMode.SEQUENTIAL: ["tdd", "tracking"],
    ExecutionMode.PARALLEL: ["tdd", "agent-mail", "tracking"],
    ExecutionMode.AUTONOMOUS: ["tdd", "agent-mail", "tracking"],
}

MODE_DESCRIPTIONS: dict[ExecutionMode, str] = {
    ExecutionMode.SEQUENTIAL: "One task at a time with the RED -> GREEN -> REFACTOR cycle",
    ExecutionMode.PARALLEL: "One worker per epic, coordinated through a shared mailbox",
    ExecutionMode.AUTONOMOUS: "Repeat parallel rounds until every task is complete",
}


class ScopeStrictness(str, Enum):
    """How file scopes are compared when checking for conflicts."""

    EXACT = "exact"
    # A directory scope also conflicts with every path beneath it.
    PREFIX = "prefix"


@dataclass
class ParsedTask:
    id: str
    title: str
    status: str
    priority: int
    file_scope: list[str] = field(default_factory=list)
    epic_id: str = ""
    epic_title: str = ""


@dataclass
class ParsedEpic:
    id: str
    title: str
    tasks: list[ParsedTask] = field(default_factory=list)

    def ready_tasks(self) -> list[ParsedTask]:
        return [t for t in self.tasks if t.status == READY]


@dataclass
class ParsedPlan:
    name: str
    path: str
    epics: list[ParsedEpic] = field(default_factory=list)
    tasks: list[ParsedTask] = field(default_factory=list)
    autonomous: bool = False


@dataclass
class ModeResult:
    mode: ExecutionMode
    reason: str
    epic_count: int
    ready_bead_count: int
    parallel_groups: list[list[str]] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "reason": self.reason,
            "epicCount": self.epic_count,
            "readyBeadCount": self.ready_bead_count,
            "parallelGroups": [list(g) for g in self.parallel_groups],
            "skills": list(self.skills),
        }


def has_autonomous_marker(text: str) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in AUTONOMOUS_MARKERS)


def parse_plan(text: str, path: str = "") -> ParsedPlan:
    """Parse plan text into epics (``## [Epic:] Title``) and checkbox tasks.

    Tasks before the first epic heading belong to no epic.
    """
    epics: list[ParsedEpic] = []
    tasks: list[ParsedTask] = []
    current: ParsedEpic | None = None

    for line in text.splitlines():
        epic_match = EPIC_RE.match(line)
        if epic_match:
            current = ParsedEpic(id=f"epic-{len(epics) + 1}", title=epic_match.group(1))
            epics.append(current)
            continue

        task_match = CHECKBOX_RE.match(line)
        if not task_match:
            continue
        title = task_match.group(4)
        task = ParsedTask(
            id=f"bead-{len(tasks) + 1}",
            title=title,
            status=COMPLETED if task_match.group(2).lower() == "x" else READY,
            priority=len(tasks) + 1,
            file_scope=extract_file_scope(title),
            epic_id=current.id if current else "",
            epic_title=current.title if current else "",
        )
        tasks.append(task)
        if current is not None:
            current.tasks.append(task)

    name = PurePosixPath(path.replace("\\", "/")).stem if path else "unknown"
    return ParsedPlan(
        name=name or "unknown",
        path=path,
        epics=epics,
        tasks=tasks,
        autonomous=has_autonomous_marker(text),
    )


def _normalize(path: str) -> str:
    norm = path.strip().replace("\\", "/")
    while norm.startswith("./"):
        norm = norm[2:]
    return norm.rstrip("/")


def _ancestors(path: str) -> list[str]:
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


def scopes_disjoint(
    scopes: Iterable[str],
    strictness: ScopeStrictness = ScopeStrictness.EXACT,
) -> bool:
    """Return ``False`` on the first scope that collides with an earlier one.

    EXACT compares strings only. PREFIX additionally treats a path and any of
    its ancestor directories as colliding. Both are single passes over set
    membership, so the answer does not depend on input order.
    """
    seen: set[str] = set()
    seen_dirs: set[str] = set()
    for raw in scopes:
        if strictness == ScopeStrictness.EXACT:
            if raw in seen:
                return False
            seen.add(raw)
            continue

        scope = _normalize(raw)
        if not scope:
            continue
        if scope in seen or scope in seen_dirs:
            return False
        ancestors = _ancestors(scope)
        if any(a in seen for a in ancestors):
            return False
        seen.add(scope)
        seen_dirs.update(ancestors)
    return True


def detect_mode(
    plan: ParsedPlan,
    strictness: ScopeStrictness = ScopeStrictness.EXACT,
) -> ModeResult:
    ready_count = sum(1 for t in plan.tasks if t.status == READY)
    epic_count = len(plan.epics)

    if plan.autonomous:
        return ModeResult(
            mode=ExecutionMode.AUTONOMOUS,
            reason="Autonomous flag detected in plan",
            epic_count=epic_count,
            ready_bead_count=ready_count,
            parallel_groups=[[t.id for t in e.tasks] for e in plan.epics],
            skills=list(MODE_SKILLS[ExecutionMode.AUTONOMOUS]),
        )

    active = [e for e in plan.epics if e.ready_tasks()]
    if len(active) >= 2:
        ready_scopes = (s for e in active for t in e.ready_tasks() for s in t.file_scope)
        if scopes_disjoint(ready_scopes, strictness):
            return ModeResult(
                mode=ExecutionMode.PARALLEL,
                reason=f"{len(active)} epics with non-overlapping file scopes",
                epic_count=epic_count,
                ready_bead_count=ready_count,
                parallel_groups=[[t.id for t in e.ready_tasks()] for e in active],
                skills=list(MODE_SKILLS[ExecutionMode.PARALLEL]),
            )

    return ModeResult(
        mode=ExecutionMode.SEQUENTIAL,
        reason="Sequential execution - single epic or overlapping file scopes",
        epic_count=epic_count,
        ready_bead_count=ready_count,
        parallel_groups=[],
        skills=list(MODE_SKILLS[ExecutionMode.SEQUENTIAL]),
    )


def classify_text(
    text: str,
    path: str = "",
    strictness: ScopeStrictness = ScopeStrictness.EXACT,
) -> ModeResult:
    return detect_mode(parse_plan(text, path), strictness)


def bead_summary(plan: ParsedPlan) -> str:
    ready = sum(1 for t in plan.tasks if t.status == READY)
    done = sum(1 for t in plan.tasks if t.status == COMPLETED)
    lines = [
        f"Beads: {done}/{len(plan.tasks)} complete, {ready} ready",
        f"Epics: {len(plan.epics)}",
    ]
    lines.extend(f"  - {e.title}: {len(e.ready_tasks())} ready" for e in plan.epics)
    return "\n".join(lines)


def render_context(result: ModeResult, plan: ParsedPlan) -> str:
    """Plain-text block describing the classification, for context injection."""
    return "\n".join(
        [
            "<maestro-context>",
            f"MODE: {result.mode.value}",
            f"MODE_DESCRIPTION: {MODE_DESCRIPTIONS[result.mode]}",
            f"SKILLS: {', '.join(result.skills)}",
            f"REASON: {result.reason}",
            "",
            bead_summary(plan),
            "</maestro-context>",
        ]
    )
