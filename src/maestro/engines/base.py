"""Base class for workflow backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from maestro import log
from maestro.config import VERSION
from maestro.events import (
    EventBus,
    EventHandler,
    PlanUpdated,
    Subscription,
    TaskCompleted,
    TaskUpdated,
    WorkflowEvent,
    default_bus,
)
from maestro.io_utils import read_text, write_text
from maestro.tasks.markdown import patch_statuses
from maestro.tasks.model import (
    Capabilities,
    CreatePlanRequest,
    DesignSessionState,
    ExecutePlanRequest,
    HandoffPayload,
    Plan,
    Progress,
    SessionState,
    Task,
    TaskStatus,
    Track,
    UpdateTaskRequest,
    WorkflowContext,
    WorkflowResult,
    utc_now,
)


class WorkflowEngine(ABC):
    """Abstract workflow backend.

    Expected failures (no active plan, unknown task, unreadable state) come
    back as ``WorkflowResult(success=False)``, ``None`` or ``[]``. Only caller
    bugs raise.
    """

    name: str = "base"
    version: str = VERSION
    capabilities: Capabilities = Capabilities()

    def __init__(self, bus: EventBus | None = None) -> None:
        self.bus = bus if bus is not None else default_bus
        self.project_root = Path.cwd()
        self._subscriptions: list[Subscription] = []

    # ── lifecycle ────────────────────────────────────────────────

    @abstractmethod
    def initialize(self, ctx: WorkflowContext) -> WorkflowResult[None]:
        ...

    @abstractmethod
    def shutdown(self) -> None:
        ...

    # ── plans & tasks ────────────────────────────────────────────

    @abstractmethod
    def create_plan(self, req: CreatePlanRequest, ctx: WorkflowContext) -> WorkflowResult[Plan]:
        ...

    @abstractmethod
    def get_active_plan(self, ctx: WorkflowContext) -> Plan | None:
        ...

    @abstractmethod
    def get_plan_progress(self, plan_id: str) -> Progress | None:
        ...

    @abstractmethod
    def get_ready_tasks(self, plan_id: str) -> list[Task]:
        ...

    @abstractmethod
    def update_task(self, req: UpdateTaskRequest) -> WorkflowResult[Task]:
        ...

    # ── tracks & execution ───────────────────────────────────────

    @abstractmethod
    def get_tracks(self, plan_id: str) -> list[Track]:
        ...

    @abstractmethod
    def get_ready_tracks(self, plan_id: str) -> list[Track]:
        ...

    @abstractmethod
    def execute(self, req: ExecutePlanRequest, ctx: WorkflowContext) -> WorkflowResult[None]:
        ...

    @abstractmethod
    def can_execute_parallel(self, plan_id: str) -> bool:
        ...

    # ── sessions ─────────────────────────────────────────────────

    @abstractmethod
    def get_session_state(self, session_id: str) -> SessionState | None:
        ...

    @abstractmethod
    def create_handoff(
        self,
        ctx: WorkflowContext,
        *,
        decisions: Sequence[str] = (),
        blockers: Sequence[str] = (),
        next_steps: Sequence[str] = (),
    ) -> WorkflowResult[HandoffPayload]:
        ...

    @abstractmethod
    def restore_from_handoff(
        self, payload: HandoffPayload, ctx: WorkflowContext
    ) -> WorkflowResult[None]:
        ...

    # ── design phases (optional) ─────────────────────────────────

    def start_design_session(
        self, ctx: WorkflowContext, *, complexity_score: int | None = None
    ) -> WorkflowResult[DesignSessionState]:
        return WorkflowResult.fail(f"{self.name} backend does not support design phases")

    def advance_design_phase(
        self, current_phase: int | None = None
    ) -> WorkflowResult[DesignSessionState]:
        return WorkflowResult.fail(f"{self.name} backend does not support design phases")

    def get_design_session_state(self) -> DesignSessionState | None:
        return None

    # ── events ───────────────────────────────────────────────────

    def on(self, handler: EventHandler) -> Subscription:
        """Subscribe *handler* to this engine's bus until :meth:`shutdown`."""
        sub = self.bus.on(handler)
        self._subscriptions.append(sub)
        return sub

    def emit(self, event: WorkflowEvent) -> None:
        self.bus.emit(event)

    def _release_subscriptions(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions.clear()

    # ── shared helpers ───────────────────────────────────────────

    def _apply_task_update(self, plan: Plan, req: UpdateTaskRequest) -> WorkflowResult[Task]:
        """Apply *req* to a task of a document-backed *plan* and publish it.

        The plan document is patched before the in-memory task changes, so a
        write failure leaves both untouched.
        """
        task = plan.get_task(req.task_id)
        if task is None:
            return WorkflowResult.fail(f"Task {req.task_id} not found")

        previous = task.status
        status = req.resolved_status()
        updated = replace(
            task,
            notes=list(task.notes),
            file_scope=list(task.file_scope),
            updated_at=utc_now(),
        )
        if status is not None:
            updated.status = status
            updated.completed_at = (
                updated.updated_at if status == TaskStatus.COMPLETED else ""
            )
        if req.note:
            updated.notes.append(req.note)
        for path in req.add_files:
            if path and path not in updated.file_scope:
                updated.file_scope.append(path)

        if plan.file_path is not None and updated.status != previous:
            try:
                text = read_text(plan.file_path)
                patched = patch_statuses(text, [updated])
                if patched != text:
                    write_text(plan.file_path, patched)
            except OSError as exc:
                return WorkflowResult.fail(f"Could not update {plan.file_path}: {exc}")

        plan.tasks[plan.tasks.index(task)] = updated
        plan.refresh_progress()
        log.debug(f"[{self.name}] {updated.id}: {previous.value} -> {updated.status.value}")

        self.emit(TaskUpdated(task=updated, previous_status=previous))
        if updated.status == TaskStatus.COMPLETED and previous != TaskStatus.COMPLETED:
            self.emit(TaskCompleted(task=updated))
        self.emit(PlanUpdated(plan=plan))
        return WorkflowResult.ok(updated)
