"""Simple backend: one checkbox document per plan, state via a StateStore."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Sequence

from maestro import log
from maestro.config import STATE_DIR
from maestro.engines.base import WorkflowEngine
from maestro.events import (
    EventBus,
    ExecutionStarted,
    HandoffCreated,
    PlanCreated,
    TaskCreated,
)
from maestro.io_utils import read_text, write_text
from maestro.storage import FileStateStore, PlanState, StateStore
from maestro.tasks.markdown import document_title, parse_tasks, render_plan
from maestro.tasks.model import (
    ActivePlanRef,
    Capabilities,
    CreatePlanRequest,
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
    is_ready,
    link_dependents,
    utc_now,
)

PLANS_DIR = "plans"


def slugify(name: str) -> str:
    slug = re.sub(r"\s+", "-", name.strip().lower())
    return re.sub(r"[^a-z0-9-]", "", slug)


class SimpleBackend(WorkflowEngine):
    """Flat task list in ``<root>/.maestro/plans/<slug>.md``.

    Task ids are ``task-<n>`` by checkbox order, so they survive a reload of
    the document. One plan is active per project root; ``plan_id`` arguments
    are accepted for contract compatibility and otherwise ignored.
    """

    name = "simple"
    capabilities = Capabilities(
        parallel_execution=True,
        session_handoff=True,
        internal_tracking=True,
    )

    def __init__(
        self,
        store: StateStore | None = None,
        bus: EventBus | None = None,
        *,
        state_dir: str = STATE_DIR,
    ) -> None:
        super().__init__(bus)
        self.state_dir = state_dir
        self.store = store if store is not None else FileStateStore(state_dir)
        self._active: Plan | None = None

    @property
    def plans_dir(self) -> Path:
        return self.project_root / self.state_dir / PLANS_DIR

    # ── lifecycle ────────────────────────────────────────────────

    def initialize(self, ctx: WorkflowContext) -> WorkflowResult[None]:
        self.project_root = Path(ctx.project_root)
        self._active = None
        try:
            self.store.append_session_id(self.project_root, ctx.session_id)
        except OSError as exc:
            return WorkflowResult.fail(f"Could not record session {ctx.session_id}: {exc}")
        return WorkflowResult.ok()

    def shutdown(self) -> None:
        self._active = None
        self._release_subscriptions()

    # ── plans & tasks ────────────────────────────────────────────

    def create_plan(self, req: CreatePlanRequest, ctx: WorkflowContext) -> WorkflowResult[Plan]:
        slug = slugify(req.name) or "plan"
        path = self.plans_dir / f"{slug}.md"
        tasks = [t.build(f"task-{i}") for i, t in enumerate(req.initial_tasks)]
        link_dependents(tasks)

        try:
            write_text(path, render_plan(req.name, tasks))
            self.store.write_plan_state(
                self.project_root,
                PlanState(
                    active_document_path=str(path),
                    name=req.name,
                    session_ids=[ctx.session_id] if ctx.session_id else [],
                ),
            )
        except OSError as exc:
            return WorkflowResult.fail(f"Could not write plan {path}: {exc}")

        plan = Plan(id=f"plan-{slug}", name=req.name, file_path=path, tasks=tasks)
        plan.add_session(ctx.session_id)
        plan.refresh_progress()
        self._active = plan
        log.debug(f"[{self.name}] created {plan.id} with {len(tasks)} task(s) at {path}")

        self.emit(PlanCreated(plan=plan))
        for task in tasks:
            self.emit(TaskCreated(task=task))
        return WorkflowResult.ok(plan)

    def _read_state(self) -> PlanState | None:
        try:
            return self.store.read_plan_state(self.project_root)
        except OSError as exc:
            log.debug(f"[{self.name}] plan state unreadable: {exc}")
            return None

    def _load_active(self) -> Plan | None:
        state = self._read_state()
        if state is None or not state.active_document_path:
            return None

        path = Path(state.active_document_path)
        if not path.is_absolute():
            path = self.project_root / path
        try:
            text = read_text(path)
        except (OSError, UnicodeDecodeError) as exc:
            log.debug(f"[{self.name}] active plan document unreadable: {path} ({exc})")
            return None

        plan = Plan(
            id=f"plan-{path.stem}",
            name=state.name or document_title(text) or path.stem,
            file_path=path,
            tasks=parse_tasks(text),
            created_at=state.started_at or utc_now(),
            session_ids=list(state.session_ids),
        )
        plan.refresh_progress()
        return plan

    def get_active_plan(self, ctx: WorkflowContext) -> Plan | None:
        if self._active is None:
            self._active = self._load_active()
        return self._active

    def _current(self) -> Plan | None:
        return self.get_active_plan(WorkflowContext(session_id="", project_root=self.project_root))

    def get_plan_progress(self, plan_id: str) -> Progress | None:
        plan = self._current()
        return plan.refresh_progress() if plan else None

    def get_ready_tasks(self, plan_id: str) -> list[Task]:
        plan = self._current()
        if plan is None:
            return []
        by_id = {t.id: t for t in plan.tasks}
        return [t for t in plan.tasks if is_ready(t, by_id)]

    def update_task(self, req: UpdateTaskRequest) -> WorkflowResult[Task]:
        plan = self._current()
        if plan is None:
            return WorkflowResult.fail("No active plan")
        return self._apply_task_update(plan, req)

    # ── tracks & execution ───────────────────────────────────────

    def get_tracks(self, plan_id: str) -> list[Track]:
        plan = self._current()
        return list(plan.tracks) if plan else []

    def get_ready_tracks(self, plan_id: str) -> list[Track]:
        return [t for t in self.get_tracks(plan_id) if t.eligible]

    def execute(self, req: ExecutePlanRequest, ctx: WorkflowContext) -> WorkflowResult[None]:
        plan = self.get_active_plan(ctx)
        if plan is None:
            return WorkflowResult.fail("No active plan")

        track_ids = (req.track_id,) if req.track_id else tuple(t.id for t in plan.tracks)
        self.emit(ExecutionStarted(mode=req.mode, track_ids=track_ids))
        return WorkflowResult.ok(
            warnings=["Simple backend delegates execution to background agents"]
        )

    def can_execute_parallel(self, plan_id: str) -> bool:
        return len(self.get_ready_tracks(plan_id)) >= 2

    # ── sessions ─────────────────────────────────────────────────

    def get_session_state(self, session_id: str) -> SessionState | None:
        state = self._read_state()
        if state is None or session_id not in state.session_ids:
            return None

        plan = self._current()
        if plan is None:
            return SessionState(session_id=session_id)
        current = next((t.id for t in plan.tasks if t.status == TaskStatus.IN_PROGRESS), "")
        return SessionState(
            session_id=session_id,
            active_plan=ActivePlanRef(plan_id=plan.id, current_task_id=current),
        )

    def create_handoff(
        self,
        ctx: WorkflowContext,
        *,
        decisions: Sequence[str] = (),
        blockers: Sequence[str] = (),
        next_steps: Sequence[str] = (),
    ) -> WorkflowResult[HandoffPayload]:
        state = self.get_session_state(ctx.session_id)
        if state is None:
            return WorkflowResult.fail("No session state to hand off")
        state.decisions = list(decisions)
        state.blockers = list(blockers)
        state.next_steps = list(next_steps)

        plan = self.get_active_plan(ctx)
        if plan is None:
            summary = "No active plan"
            action = ""
        else:
            progress = plan.refresh_progress()
            summary = (
                f"Active plan: {plan.name} "
                f"({progress.completed}/{progress.total} tasks completed)"
            )
            action = "" if progress.is_complete else f'Continue working on plan "{plan.name}"'

        payload = HandoffPayload(previous_state=state, summary=summary, recommended_action=action)
        self.emit(HandoffCreated(payload=payload))
        return WorkflowResult.ok(payload)

    def restore_from_handoff(
        self, payload: HandoffPayload, ctx: WorkflowContext
    ) -> WorkflowResult[None]:
        if payload.previous_state.active_plan is None:
            return WorkflowResult.ok()
        try:
            self.store.append_session_id(self.project_root, ctx.session_id)
        except OSError as exc:
            return WorkflowResult.fail(f"Could not record session {ctx.session_id}: {exc}")
        if self._active is not None:
            self._active.add_session(ctx.session_id)
        return WorkflowResult.ok()
