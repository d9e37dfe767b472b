"""Composing engine: one simple and one phased backend behind one contract."""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path
from typing import Callable, Iterable, Mapping, Sequence, TypeVar

from maestro import log
from maestro.config import STATE_DIR, EngineConfig
from maestro.engines.base import WorkflowEngine
from maestro.engines.phased import PhasedBackend
from maestro.engines.simple import SimpleBackend
from maestro.events import EventBus
from maestro.mode import ScopeStrictness
from maestro.storage import StateStore
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
    Track,
    UpdateTaskRequest,
    WorkflowContext,
    WorkflowResult,
)

T = TypeVar("T")


def merge_capabilities(
    a: Capabilities,
    b: Capabilities,
    overrides: Mapping[str, bool] | None = None,
) -> Capabilities:
    """Union of two capability sets, then *overrides* applied on top.

    Raises ``ValueError`` for an override naming no capability.
    """
    merged = {f.name: getattr(a, f.name) or getattr(b, f.name) for f in fields(Capabilities)}
    for key, value in (overrides or {}).items():
        if key not in merged:
            raise ValueError(f"Unknown capability: {key}")
        merged[key] = value
    return Capabilities(**merged)


def first_success(
    providers: Iterable[Callable[[], T | None]],
    accept: Callable[[T], bool] | None = None,
) -> T | None:
    """Call *providers* in order; return the first accepted value.

    By default a value is accepted when it is not ``None``. Returns ``None``
    when no provider yields an accepted value.
    """
    for provider in providers:
        value = provider()
        if value is None:
            continue
        if accept is None or accept(value):
            return value
    return None


class ComposingEngine(WorkflowEngine):
    """Route each operation to the backend the configuration selects.

    * plan creation goes to the phased backend unless the request skips design
      or design phases are disabled,
    * ``execute`` tries the preferred backend, then the other one,
    * reads of the active plan and session state go through the ordered
      provider list ``[phased, simple]``,
    * plan, task and track queries go to the phased backend unless external
      tracking is disabled.
    """

    name = "composite"

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        store: StateStore | None = None,
        bus: EventBus | None = None,
        strictness: ScopeStrictness = ScopeStrictness.EXACT,
        state_dir: str = STATE_DIR,
    ) -> None:
        super().__init__(bus)
        self.config = config or EngineConfig()
        self.simple = SimpleBackend(store, self.bus, state_dir=state_dir)
        self.phased = PhasedBackend(self.simple, self.bus, strictness=strictness)

        overrides: dict[str, bool] = {}
        if not self.config.use_phased_design:
            overrides["design_phases"] = False
        if not self.config.use_phased_tracking:
            overrides["external_tracking"] = False
        self.capabilities = merge_capabilities(
            self.phased.capabilities, self.simple.capabilities, overrides
        )

        self.providers: list[WorkflowEngine] = [self.phased, self.simple]

    @property
    def tracker(self) -> WorkflowEngine:
        return self.phased if self.config.use_phased_tracking else self.simple

    def _execution_order(self) -> list[WorkflowEngine]:
        if self.config.preferred_backend == self.simple.name:
            return [self.simple, self.phased]
        return [self.phased, self.simple]

    # ── lifecycle ────────────────────────────────────────────────

    def initialize(self, ctx: WorkflowContext) -> WorkflowResult[None]:
        self.project_root = Path(ctx.project_root)
        results = {engine.name: engine.initialize(ctx) for engine in self.providers}
        failures = [f"{name}: {r.error}" for name, r in results.items() if not r.success]
        if len(failures) == len(results):
            return WorkflowResult.fail("All backends failed to initialize: " + "; ".join(failures))
        warnings = [w for r in results.values() for w in r.warnings] + failures
        return WorkflowResult.ok(warnings=warnings)

    def shutdown(self) -> None:
        for engine in self.providers:
            engine.shutdown()
        self._release_subscriptions()

    # ── plans & tasks ────────────────────────────────────────────

    def create_plan(self, req: CreatePlanRequest, ctx: WorkflowContext) -> WorkflowResult[Plan]:
        if self.config.use_phased_design and not req.skip_design:
            return self.phased.create_plan(req, ctx)
        return self.simple.create_plan(req, ctx)

    def get_active_plan(self, ctx: WorkflowContext) -> Plan | None:
        return first_success(
            (lambda engine=engine: engine.get_active_plan(ctx)) for engine in self.providers
        )

    def get_plan_progress(self, plan_id: str) -> Progress | None:
        return self.tracker.get_plan_progress(plan_id)

    def get_ready_tasks(self, plan_id: str) -> list[Task]:
        return self.tracker.get_ready_tasks(plan_id)

    def update_task(self, req: UpdateTaskRequest) -> WorkflowResult[Task]:
        return self.tracker.update_task(req)

    # ── tracks & execution ───────────────────────────────────────

    def get_tracks(self, plan_id: str) -> list[Track]:
        return self.tracker.get_tracks(plan_id)

    def get_ready_tracks(self, plan_id: str) -> list[Track]:
        return self.tracker.get_ready_tracks(plan_id)

    def execute(self, req: ExecutePlanRequest, ctx: WorkflowContext) -> WorkflowResult[None]:
        errors: list[str] = []
        for engine in self._execution_order():
            result = engine.execute(req, ctx)
            if result.success:
                if errors:
                    result.warnings = [f"Fell back to {engine.name} backend ({'; '.join(errors)})"] + result.warnings
                return result
            log.debug(f"[{self.name}] {engine.name} execute failed: {result.error}")
            errors.append(f"{engine.name}: {result.error}")
        return WorkflowResult.fail("All backends failed to execute: " + "; ".join(errors))

    def can_execute_parallel(self, plan_id: str) -> bool:
        return self.tracker.can_execute_parallel(plan_id)

    # ── sessions ─────────────────────────────────────────────────

    def get_session_state(self, session_id: str) -> SessionState | None:
        return first_success(
            (lambda engine=engine: engine.get_session_state(session_id))
            for engine in self.providers
        )

    def create_handoff(
        self,
        ctx: WorkflowContext,
        *,
        decisions: Sequence[str] = (),
        blockers: Sequence[str] = (),
        next_steps: Sequence[str] = (),
    ) -> WorkflowResult[HandoffPayload]:
        return self.tracker.create_handoff(
            ctx, decisions=decisions, blockers=blockers, next_steps=next_steps
        )

    def restore_from_handoff(
        self, payload: HandoffPayload, ctx: WorkflowContext
    ) -> WorkflowResult[None]:
        return self.tracker.restore_from_handoff(payload, ctx)

    # ── design phases ────────────────────────────────────────────

    def start_design_session(
        self, ctx: WorkflowContext, *, complexity_score: int | None = None
    ) -> WorkflowResult[DesignSessionState]:
        if not self.config.use_phased_design:
            return WorkflowResult.fail("Design phases are disabled")
        return self.phased.start_design_session(ctx, complexity_score=complexity_score)

    def advance_design_phase(
        self, current_phase: int | None = None
    ) -> WorkflowResult[DesignSessionState]:
        if not self.config.use_phased_design:
            return WorkflowResult.fail("Design phases are disabled")
        return self.phased.advance_design_phase(current_phase)

    def get_design_session_state(self) -> DesignSessionState | None:
        if not self.config.use_phased_design:
            return None
        return self.phased.get_design_session_state()
