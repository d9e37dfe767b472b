"""Plan, Track, Task and related records shared by every backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TypeVar


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TrackPhase(str, Enum):
    DESIGN = "design"
    PLANNING = "planning"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    AUTONOMOUS = "autonomous"


@dataclass
class Task:
    id: str
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: list[str] = field(default_factory=list)
    # Inverse of ``dependencies``; derived, never consulted for readiness.
    dependents: list[str] = field(default_factory=list)
    file_scope: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    completed_at: str = ""
    track_id: str = ""


@dataclass
class NewTask:
    """Task fields a caller supplies when creating a plan."""

    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: list[str] = field(default_factory=list)
    file_scope: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    def build(self, task_id: str, *, track_id: str = "") -> Task:
        now = utc_now()
        return Task(
            id=task_id,
            title=self.title,
            description=self.description,
            status=self.status,
            priority=self.priority,
            dependencies=list(self.dependencies),
            file_scope=list(self.file_scope),
            labels=list(self.labels),
            created_at=now,
            updated_at=now,
            completed_at=now if self.status == TaskStatus.COMPLETED else "",
            track_id=track_id,
        )


def is_ready(task: Task, tasks_by_id: dict[str, Task]) -> bool:
    """A task is ready iff it is pending and every dependency is completed.

    An unknown dependency id counts as not completed.
    """
    if task.status != TaskStatus.PENDING:
        return False
    for dep_id in task.dependencies:
        dep = tasks_by_id.get(dep_id)
        if dep is None or dep.status != TaskStatus.COMPLETED:
            return False
    return True


def link_dependents(tasks: list[Task]) -> None:
    """Rebuild every task's ``dependents`` list from the dependency edges."""
    by_id = {t.id: t for t in tasks}
    for t in tasks:
        t.dependents = []
    for t in tasks:
        for dep_id in t.dependencies:
            dep = by_id.get(dep_id)
            if dep is not None and t.id not in dep.dependents:
                dep.dependents.append(t.id)


@dataclass
class Track:
    id: str
    name: str = ""
    description: str = ""
    task_ids: list[str] = field(default_factory=list)
    phase: TrackPhase = TrackPhase.DESIGN
    is_ready: bool = False
    assigned_agent: str = ""
    file_reservations: list[str] = field(default_factory=list)

    @property
    def eligible(self) -> bool:
        """Eligible for parallel dispatch."""
        return self.phase == TrackPhase.READY and self.is_ready


@dataclass
class Progress:
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    blocked: int = 0
    is_complete: bool = True
    percentage: int = 100

    @classmethod
    def from_tasks(cls, tasks: list[Task]) -> "Progress":
        total = len(tasks)
        completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
        return cls(
            total=total,
            completed=completed,
            in_progress=sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
            blocked=sum(1 for t in tasks if t.status == TaskStatus.BLOCKED),
            is_complete=completed == total,
            percentage=round(completed / total * 100) if total else 100,
        )


@dataclass
class Plan:
    id: str
    name: str
    file_path: Path | None = None
    tasks: list[Task] = field(default_factory=list)
    tracks: list[Track] = field(default_factory=list)
    progress: Progress = field(default_factory=Progress)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    session_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_task(self, task_id: str) -> Task | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def refresh_progress(self) -> Progress:
        self.progress = Progress.from_tasks(self.tasks)
        self.updated_at = utc_now()
        return self.progress

    def add_session(self, session_id: str) -> None:
        if session_id and session_id not in self.session_ids:
            self.session_ids.append(session_id)


@dataclass(frozen=True)
class Capabilities:
    """Feature flags a backend declares. Used for detection, never dispatch."""

    tdd: bool = False
    parallel_execution: bool = False
    design_phases: bool = False
    session_handoff: bool = False
    external_tracking: bool = False
    internal_tracking: bool = False
    autonomous_execution: bool = False
    skill_routing: bool = False


# ── Session & handoff ────────────────────────────────────────────────


@dataclass
class ActivePlanRef:
    plan_id: str
    current_task_id: str = ""
    current_track_id: str = ""


@dataclass
class SessionState:
    session_id: str
    active_plan: ActivePlanRef | None = None
    decisions: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        active = None
        if self.active_plan is not None:
            active = {
                "plan_id": self.active_plan.plan_id,
                "current_task_id": self.active_plan.current_task_id,
                "current_track_id": self.active_plan.current_track_id,
            }
        return {
            "session_id": self.session_id,
            "active_plan": active,
            "context": {
                "decisions": list(self.decisions),
                "blockers": list(self.blockers),
                "next_steps": list(self.next_steps),
            },
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionState":
        active_raw = data.get("active_plan")
        active = None
        if isinstance(active_raw, dict) and active_raw.get("plan_id"):
            active = ActivePlanRef(
                plan_id=str(active_raw["plan_id"]),
                current_task_id=str(active_raw.get("current_task_id") or ""),
                current_track_id=str(active_raw.get("current_track_id") or ""),
            )
        context = data.get("context") or {}
        return cls(
            session_id=str(data["session_id"]),
            active_plan=active,
            decisions=list(context.get("decisions") or []),
            blockers=list(context.get("blockers") or []),
            next_steps=list(context.get("next_steps") or []),
            timestamp=str(data.get("timestamp") or utc_now()),
        )


@dataclass
class HandoffPayload:
    previous_state: SessionState
    summary: str = ""
    recommended_action: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_state": self.previous_state.to_dict(),
            "summary": self.summary,
            "recommended_action": self.recommended_action,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HandoffPayload":
        """Decode a payload; raises ``KeyError``/``TypeError`` on malformed input."""
        return cls(
            previous_state=SessionState.from_dict(data["previous_state"]),
            summary=str(data.get("summary") or ""),
            recommended_action=str(data.get("recommended_action") or ""),
        )


# ── Design phases ────────────────────────────────────────────────────

DESIGN_PHASE_NAMES: dict[int, str] = {
    1: "DISCOVER",
    2: "DEFINE",
    3: "DEVELOP",
    4: "VERIFY",
    5: "DECOMPOSE",
    6: "VALIDATE",
    7: "ASSIGN",
    8: "READY",
    9: "EXECUTE",
    10: "FINISH",
}

FIRST_DESIGN_PHASE = 1
FINAL_DESIGN_PHASE = 10


def design_mode_for(complexity_score: int | None) -> str:
    """SPEED below 4, ASK for 4-6, FULL above 6 (or when unscored)."""
    if complexity_score is None:
        return "full"
    if complexity_score < 4:
        return "speed"
    if complexity_score <= 6:
        return "ask"
    return "full"


def track_phase_for_design_phase(phase: int) -> TrackPhase:
    if phase <= 4:
        return TrackPhase.DESIGN
    if phase <= 7:
        return TrackPhase.PLANNING
    if phase == 8:
        return TrackPhase.READY
    if phase == 9:
        return TrackPhase.EXECUTING
    return TrackPhase.COMPLETED


@dataclass
class DesignSessionState:
    current_phase: int = FIRST_DESIGN_PHASE
    complexity_score: int | None = None
    mode: str = "full"
    design_doc_path: Path | None = None
    research_findings: list[str] = field(default_factory=list)
    verification_approved: bool | None = None
    verification_concerns: list[str] = field(default_factory=list)


# ── Requests, context and results ────────────────────────────────────


@dataclass
class CreatePlanRequest:
    name: str
    source_document: str = ""
    initial_tasks: list[NewTask] = field(default_factory=list)
    skip_design: bool = False


@dataclass
class ExecutePlanRequest:
    plan_id: str
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    track_id: str = ""
    skills: list[str] = field(default_factory=list)
    max_iterations: int = 0


@dataclass
class UpdateTaskRequest:
    task_id: str
    status: TaskStatus | None = None
    note: str = ""
    # Used as the new status when ``status`` is not given.
    completion_reason: TaskStatus | None = None
    add_files: list[str] = field(default_factory=list)

    def resolved_status(self) -> TaskStatus | None:
        return self.status or self.completion_reason


@dataclass
class WorkflowContext:
    session_id: str
    project_root: Path
    active_plan: Plan | None = None
    current_track: Track | None = None
    available_skills: list[str] = field(default_factory=list)
    config: Any = None


T = TypeVar("T")


@dataclass
class WorkflowResult(Generic[T]):
    """Uniform result of every backend operation."""

    success: bool
    data: T | None = None
    error: str = ""
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls, data: T | None = None, warnings: list[str] | None = None) -> "WorkflowResult[T]":
        return cls(success=True, data=data, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: str, warnings: list[str] | None = None) -> "WorkflowResult[T]":
        return cls(success=False, error=error, warnings=list(warnings or []))
