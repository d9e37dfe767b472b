"""Phased backend: design phases and multi-track plans under ``conductor/``.

Layout per project root::

    conductor/
      tracks/<track-id>/design.md       free-text design document
      tracks/<track-id>/plan.md         checkbox task list
      tracks/<track-id>/metadata.json   phase, readiness, per-task file scopes
      handoffs/<session-id>.json        serialized HandoffPayload

Plans, tasks and sessions that do not belong to a track are delegated to the
fallback (simple) backend.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Sequence

from maestro import log
from maestro.config import CONDUCTOR_DIR
from maestro.engines.base import WorkflowEngine
from maestro.engines.simple import SimpleBackend, slugify
from maestro.events import (
    DesignPhaseChanged,
    EventBus,
    ExecutionStarted,
    HandoffCreated,
    PlanCreated,
    TaskCreated,
    TrackCompleted,
    TrackExecuting,
    TrackReady,
)
from maestro.io_utils import read_json, read_text, write_json, write_text
from maestro.mode import ScopeStrictness, scopes_disjoint
from maestro.storage import StateStore
from maestro.tasks.markdown import parse_tasks, render_plan
from maestro.tasks.model import (
    FINAL_DESIGN_PHASE,
    FIRST_DESIGN_PHASE,
    ActivePlanRef,
    Capabilities,
    CreatePlanRequest,
    DesignSessionState,
    ExecutePlanRequest,
    ExecutionMode,
    HandoffPayload,
    Plan,
    Progress,
    SessionState,
    Task,
    TaskStatus,
    Track,
    TrackPhase,
    UpdateTaskRequest,
    WorkflowContext,
    WorkflowResult,
    design_mode_for,
    is_ready,
    link_dependents,
    track_phase_for_design_phase,
    utc_now,
)

TRACKS_DIR = "tracks"
HANDOFFS_DIR = "handoffs"
PLAN_ID_PREFIX = "plan-"
TASK_ID_INFIX = "-task-"

DESIGN_TEMPLATE = """# {name}

## Problem Statement

_What problem are we solving?_

## Goals

- _Goal 1_
- _Goal 2_

## Non-Goals

- _What are we NOT doing?_

## Proposed Solution

_High-level approach_

## Open Questions

- _What do we need to figure out?_
"""

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_B36[rem])
    return "".join(reversed(digits))


def _is_handoff_name(session_id: str) -> bool:
    """A session id usable as a file name directly under the handoffs directory."""
    return bool(session_id) and session_id not in (".", "..") and not any(c in session_id for c in "/\\")


def _handoff_summary(plan: Plan | None, design: DesignSessionState | None) -> str:
    parts = []
    if plan is not None:
        parts.append(f"Plan: {plan.name} ({plan.progress.completed}/{plan.progress.total} tasks)")
    if design is not None:
        parts.append(f"Design phase: {design.current_phase}/{FINAL_DESIGN_PHASE} ({design.mode} mode)")
    return " | ".join(parts) if parts else "No active work"


def _recommended_action(plan: Plan | None, design: DesignSessionState | None) -> str:
    if design is not None and design.current_phase < 8:
        return f"Continue design session at phase {design.current_phase}"
    if plan is not None and not plan.progress.is_complete:
        ready = [t for t in plan.tracks if t.phase == TrackPhase.READY]
        if len(ready) >= 2:
            return "Dispatch the ready tracks in parallel"
        return "Continue implementation"
    return ""


class PhasedBackend(WorkflowEngine):
    """Track-based backend with a ten-phase design session.

    ``get_active_plan`` consults, in order: the in-process cache, the track
    named by the most recent handoff file, then the fallback backend.
    """

    name = "phased"
    capabilities = Capabilities(
        tdd=True,
        parallel_execution=True,
        design_phases=True,
        session_handoff=True,
        external_tracking=True,
        internal_tracking=True,
        autonomous_execution=False,
        skill_routing=True,
    )

    def __init__(
        self,
        fallback: SimpleBackend | None = None,
        bus: EventBus | None = None,
        *,
        store: StateStore | None = None,
        strictness: ScopeStrictness = ScopeStrictness.EXACT,
        conductor_dir: str = CONDUCTOR_DIR,
    ) -> None:
        super().__init__(bus)
        self._owns_fallback = fallback is None
        self.fallback = fallback if fallback is not None else SimpleBackend(store, self.bus)
        self.strictness = strictness
        self.conductor_dir = conductor_dir
        self._active: Plan | None = None
        self._design: DesignSessionState | None = None

    # ── paths ────────────────────────────────────────────────────

    @property
    def tracks_dir(self) -> Path:
        return self.project_root / self.conductor_dir / TRACKS_DIR

    @property
    def handoffs_dir(self) -> Path:
        return self.project_root / self.conductor_dir / HANDOFFS_DIR

    def track_dir(self, track_id: str) -> Path:
        return self.tracks_dir / track_id

    # ── lifecycle ────────────────────────────────────────────────

    def initialize(self, ctx: WorkflowContext) -> WorkflowResult[None]:
        self.project_root = Path(ctx.project_root)
        self._active = None
        warnings: list[str] = []
        if self._owns_fallback:
            result = self.fallback.initialize(ctx)
            if not result.success:
                warnings.append(result.error)
        try:
            self.tracks_dir.mkdir(parents=True, exist_ok=True)
            self.handoffs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return WorkflowResult.fail(f"Could not create {self.conductor_dir}/: {exc}", warnings)
        return WorkflowResult.ok(warnings=warnings)

    def shutdown(self) -> None:
        if self._owns_fallback:
            self.fallback.shutdown()
        self._active = None
        self._design = None
        self._release_subscriptions()

    # ── track metadata ───────────────────────────────────────────

    def _new_track_id(self, name: str) -> str:
        slug = slugify(name) or "track"
        stamp = int(time.time() * 1000)
        track_id = f"{slug}-{to_base36(stamp)}"
        while self.track_dir(track_id).exists():
            stamp += 1
            track_id = f"{slug}-{to_base36(stamp)}"
        return track_id

    def _read_metadata(self, track_id: str) -> dict[str, Any] | None:
        try:
            data = read_json(self.track_dir(track_id) / "metadata.json")
        except OSError as exc:
            log.debug(f"[{self.name}] metadata unreadable for {track_id}: {exc}")
            return None
        if not isinstance(data, dict) or not data.get("id"):
            return None
        task_ids = data.get("task_ids") or []
        scopes = data.get("file_scopes") or {}
        if not isinstance(task_ids, list) or not isinstance(scopes, dict):
            log.debug(f"[{self.name}] malformed metadata for {track_id}")
            return None
        if not all(isinstance(paths, list) for paths in scopes.values()):
            log.debug(f"[{self.name}] malformed file_scopes for {track_id}")
            return None
        return data

    def _write_metadata(self, track: Track, tasks: list[Task], created_at: str) -> None:
        write_json(
            self.track_dir(track.id) / "metadata.json",
            {
                "id": track.id,
                "name": track.name,
                "phase": track.phase.value,
                "is_ready": track.is_ready,
                "task_ids": list(track.task_ids),
                "file_scopes": {t.id: list(t.file_scope) for t in tasks if t.file_scope},
                "created_at": created_at,
                "updated_at": utc_now(),
            },
        )

    @staticmethod
    def _track_from_metadata(meta: dict[str, Any]) -> Track | None:
        try:
            phase = TrackPhase(meta.get("phase", TrackPhase.DESIGN.value))
        except ValueError:
            return None
        scopes = meta.get("file_scopes") or {}
        reservations: list[str] = []
        for paths in scopes.values():
            for path in map(str, paths):
                if path not in reservations:
                    reservations.append(path)
        return Track(
            id=str(meta["id"]),
            name=str(meta.get("name") or meta["id"]),
            task_ids=[str(t) for t in meta.get("task_ids") or []],
            phase=phase,
            is_ready=bool(meta.get("is_ready", phase == TrackPhase.READY)),
            file_reservations=reservations,
        )

    def _load_plan(self, track_id: str) -> Plan | None:
        meta = self._read_metadata(track_id)
        track = self._track_from_metadata(meta) if meta else None
        if meta is None or track is None:
            return None

        track_dir = self.track_dir(track_id)
        plan_path = track_dir / "plan.md"
        try:
            text = read_text(plan_path)
        except FileNotFoundError:
            text = ""
        except (OSError, UnicodeDecodeError) as exc:
            log.debug(f"[{self.name}] plan unreadable for {track_id}: {exc}")
            return None

        tasks = parse_tasks(text, f"{track_id}-task", track_id=track_id)
        scopes = meta.get("file_scopes") or {}
        for task in tasks:
            if task.id in scopes:
                task.file_scope = [str(p) for p in scopes[task.id]]
        if not track.task_ids:
            track.task_ids = [t.id for t in tasks]

        plan = Plan(
            id=f"{PLAN_ID_PREFIX}{track_id}",
            name=track.name,
            file_path=plan_path if plan_path.exists() else None,
            tasks=tasks,
            tracks=[track],
            created_at=str(meta.get("created_at") or utc_now()),
            metadata=self._plan_metadata(track_dir),
        )
        plan.refresh_progress()
        return plan

    @staticmethod
    def _plan_metadata(track_dir: Path) -> dict[str, Any]:
        return {
            "conductor_dir": str(track_dir),
            "design_path": str(track_dir / "design.md"),
            "plan_path": str(track_dir / "plan.md"),
        }

    def _plan_for(self, plan_id: str) -> Plan | None:
        """The phased plan named by *plan_id* (or the cached one when blank)."""
        if self._active is not None and (not plan_id or plan_id == self._active.id):
            return self._active
        if plan_id.startswith(PLAN_ID_PREFIX):
            return self._load_plan(plan_id[len(PLAN_ID_PREFIX):])
        return None

    def _plan_for_task(self, task_id: str) -> Plan | None:
        if self._active is not None and self._active.get_task(task_id) is not None:
            return self._active
        track_id, sep, _ = task_id.rpartition(TASK_ID_INFIX)
        if not sep:
            return None
        plan = self._load_plan(track_id)
        if plan is not None and plan.get_task(task_id) is not None:
            return plan
        return None

    # ── plans & tasks ────────────────────────────────────────────

    def create_plan(self, req: CreatePlanRequest, ctx: WorkflowContext) -> WorkflowResult[Plan]:
        track_id = self._new_track_id(req.name)
        track_dir = self.track_dir(track_id)
        tasks = [
            t.build(f"{track_id}{TASK_ID_INFIX}{i}", track_id=track_id)
            for i, t in enumerate(req.initial_tasks)
        ]
        link_dependents(tasks)

        track = Track(
            id=track_id,
            name=req.name,
            task_ids=[t.id for t in tasks],
            phase=TrackPhase.PLANNING if req.skip_design else TrackPhase.DESIGN,
        )
        track.file_reservations = [p for t in tasks for p in t.file_scope]
        now = utc_now()

        try:
            write_text(track_dir / "design.md", req.source_document or DESIGN_TEMPLATE.format(name=req.name))
            write_text(track_dir / "plan.md", render_plan(req.name, tasks))
            self._write_metadata(track, tasks, created_at=now)
        except OSError as exc:
            return WorkflowResult.fail(f"Could not write track {track_id}: {exc}")

        plan = Plan(
            id=f"{PLAN_ID_PREFIX}{track_id}",
            name=req.name,
            file_path=track_dir / "plan.md",
            tasks=tasks,
            tracks=[track],
            created_at=now,
            metadata=self._plan_metadata(track_dir),
        )
        plan.add_session(ctx.session_id)
        plan.refresh_progress()
        self._active = plan
        log.debug(f"[{self.name}] created track {track_id} ({track.phase.value})")

        self.emit(PlanCreated(plan=plan))
        for task in tasks:
            self.emit(TaskCreated(task=task))
        return WorkflowResult.ok(plan)

    def _latest_handoff_track(self) -> str:
        """Track id recorded by the newest well-formed handoff, or ``""``."""
        try:
            files = sorted(
                self.handoffs_dir.glob("*.json"),
                key=lambda p: p.stat().st_mtime,
                reverse=True,
            )
        except OSError:
            return ""
        for path in files:
            payload = self._read_handoff(path)
            if payload is None:
                continue
            ref = payload.previous_state.active_plan
            return ref.current_track_id if ref else ""
        return ""

    def _read_handoff(self, path: Path) -> HandoffPayload | None:
        try:
            data = read_json(path)
        except OSError:
            return None
        if not isinstance(data, dict):
            return None
        try:
            return HandoffPayload.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            log.debug(f"[{self.name}] ignoring malformed handoff {path.name}: {exc}")
            return None

    def get_active_plan(self, ctx: WorkflowContext) -> Plan | None:
        if self._active is not None:
            return self._active

        track_id = self._latest_handoff_track()
        if track_id:
            plan = self._load_plan(track_id)
            if plan is not None:
                plan.add_session(ctx.session_id)
                self._active = plan
                return plan

        return self.fallback.get_active_plan(ctx)

    def get_plan_progress(self, plan_id: str) -> Progress | None:
        plan = self._plan_for(plan_id)
        if plan is None:
            return self.fallback.get_plan_progress(plan_id)
        return plan.refresh_progress()

    def get_ready_tasks(self, plan_id: str) -> list[Task]:
        plan = self._plan_for(plan_id)
        if plan is None:
            return self.fallback.get_ready_tasks(plan_id)
        by_id = {t.id: t for t in plan.tasks}
        return [t for t in plan.tasks if is_ready(t, by_id)]

    def update_task(self, req: UpdateTaskRequest) -> WorkflowResult[Task]:
        plan = self._plan_for_task(req.task_id)
        if plan is None:
            return self.fallback.update_task(req)

        result = self._apply_task_update(plan, req)
        if result.success and req.add_files:
            track = plan.tracks[0]
            track.file_reservations = list(dict.fromkeys(p for t in plan.tasks for p in t.file_scope))
            meta = self._read_metadata(track.id) or {}
            try:
                self._write_metadata(track, plan.tasks, created_at=str(meta.get("created_at") or plan.created_at))
            except OSError as exc:
                result.warnings.append(f"Could not record file scope for {req.task_id}: {exc}")
        return result

    # ── tracks ───────────────────────────────────────────────────

    def get_tracks(self, plan_id: str) -> list[Track]:
        """Every well-formed track under ``conductor/tracks``, by id."""
        try:
            track_ids = sorted(p.name for p in self.tracks_dir.iterdir() if p.is_dir())
        except OSError:
            return []
        tracks = []
        for track_id in track_ids:
            meta = self._read_metadata(track_id)
            track = self._track_from_metadata(meta) if meta else None
            if track is not None:
                tracks.append(track)
        return tracks

    def get_ready_tracks(self, plan_id: str) -> list[Track]:
        return [t for t in self.get_tracks(plan_id) if t.eligible]

    def set_track_phase(self, track_id: str, phase: TrackPhase, *, agent: str = "") -> WorkflowResult[Track]:
        meta = self._read_metadata(track_id)
        track = self._track_from_metadata(meta) if meta else None
        if meta is None or track is None:
            return WorkflowResult.fail(f"Track {track_id} not found")

        track.phase = phase
        track.is_ready = phase == TrackPhase.READY
        track.assigned_agent = agent
        meta.update(phase=phase.value, is_ready=track.is_ready, updated_at=utc_now())
        try:
            write_json(self.track_dir(track_id) / "metadata.json", meta)
        except OSError as exc:
            return WorkflowResult.fail(f"Could not update track {track_id}: {exc}")

        if self._active is not None:
            self._active.tracks = [track if t.id == track_id else t for t in self._active.tracks]
        log.debug(f"[{self.name}] track {track_id} -> {phase.value}")

        match phase:
            case TrackPhase.READY:
                self.emit(TrackReady(track=track))
            case TrackPhase.EXECUTING:
                self.emit(TrackExecuting(track=track, agent=agent))
            case TrackPhase.COMPLETED:
                self.emit(TrackCompleted(track=track))
        return WorkflowResult.ok(track)

    # ── execution ────────────────────────────────────────────────

    def execute(self, req: ExecutePlanRequest, ctx: WorkflowContext) -> WorkflowResult[None]:
        if req.track_id:
            track_ids = [req.track_id]
        else:
            track_ids = [t.id for t in self.get_ready_tracks(req.plan_id)]

        if req.mode == ExecutionMode.PARALLEL and len(track_ids) >= 2:
            self.emit(ExecutionStarted(mode=req.mode, track_ids=tuple(track_ids)))
            return WorkflowResult.ok(
                warnings=[
                    f"{len(track_ids)} tracks are eligible for parallel execution. "
                    "Dispatch them through the parallel-coordination pathway "
                    "(one worker per track, coordinated by agent-mail)."
                ]
            )
        return self.fallback.execute(req, ctx)

    def can_execute_parallel(self, plan_id: str) -> bool:
        ready = self.get_ready_tracks(plan_id)
        if len(ready) < 2:
            return False
        scopes = (path for track in ready for path in dict.fromkeys(track.file_reservations))
        return scopes_disjoint(scopes, self.strictness)

    # ── sessions ─────────────────────────────────────────────────

    def get_session_state(self, session_id: str) -> SessionState | None:
        if _is_handoff_name(session_id):
            payload = self._read_handoff(self.handoffs_dir / f"{session_id}.json")
            if payload is not None:
                return payload.previous_state
        return self.fallback.get_session_state(session_id)

    def create_handoff(
        self,
        ctx: WorkflowContext,
        *,
        decisions: Sequence[str] = (),
        blockers: Sequence[str] = (),
        next_steps: Sequence[str] = (),
    ) -> WorkflowResult[HandoffPayload]:
        if not _is_handoff_name(ctx.session_id):
            return WorkflowResult.fail(f"Invalid session id for handoff: {ctx.session_id!r}")
        plan = self.get_active_plan(ctx)
        design = self._design

        steps = list(next_steps)
        if design is not None and not steps:
            steps.append(f"Continue design phase {design.current_phase}")

        active = None
        if plan is not None:
            plan.refresh_progress()
            active = ActivePlanRef(
                plan_id=plan.id,
                current_task_id=next(
                    (t.id for t in plan.tasks if t.status == TaskStatus.IN_PROGRESS), ""
                ),
                current_track_id=plan.tracks[0].id if plan.tracks else "",
            )

        payload = HandoffPayload(
            previous_state=SessionState(
                session_id=ctx.session_id,
                active_plan=active,
                decisions=list(decisions),
                blockers=list(blockers),
                next_steps=steps,
            ),
            summary=_handoff_summary(plan, design),
            recommended_action=_recommended_action(plan, design),
        )

        path = self.handoffs_dir / f"{ctx.session_id}.json"
        try:
            write_json(path, payload.to_dict())
        except OSError as exc:
            return WorkflowResult.fail(f"Could not write handoff {path}: {exc}")

        self.emit(HandoffCreated(payload=payload))
        return WorkflowResult.ok(payload)

    def restore_from_handoff(
        self, payload: HandoffPayload, ctx: WorkflowContext
    ) -> WorkflowResult[None]:
        ref = payload.previous_state.active_plan
        if ref is not None and ref.current_track_id:
            plan = self._load_plan(ref.current_track_id)
            if plan is not None:
                plan.add_session(ctx.session_id)
                self._active = plan
        result = self.fallback.restore_from_handoff(payload, ctx)
        warnings = list(result.warnings)
        if not result.success:
            warnings.append(result.error)
        return WorkflowResult.ok(warnings=warnings)

    # ── design phases ────────────────────────────────────────────

    def _sync_track_phase(self, design_phase: int) -> None:
        if self._active is None or not self._active.tracks:
            return
        track = self._active.tracks[0]
        target = track_phase_for_design_phase(design_phase)
        if track.phase != target:
            self.set_track_phase(track.id, target)

    def start_design_session(
        self, ctx: WorkflowContext, *, complexity_score: int | None = None
    ) -> WorkflowResult[DesignSessionState]:
        plan = self.get_active_plan(ctx)
        design_doc = None
        if plan is not None and plan.metadata.get("design_path"):
            design_doc = Path(plan.metadata["design_path"])

        self._design = DesignSessionState(
            current_phase=FIRST_DESIGN_PHASE,
            complexity_score=complexity_score,
            mode=design_mode_for(complexity_score),
            design_doc_path=design_doc,
        )
        self.emit(DesignPhaseChanged(phase=FIRST_DESIGN_PHASE))
        self._sync_track_phase(FIRST_DESIGN_PHASE)
        return WorkflowResult.ok(self._design)

    def advance_design_phase(
        self, current_phase: int | None = None
    ) -> WorkflowResult[DesignSessionState]:
        if self._design is None:
            return WorkflowResult.fail("No active design session")

        base = self._design.current_phase if current_phase is None else current_phase
        next_phase = base + 1
        if next_phase > FINAL_DESIGN_PHASE:
            return WorkflowResult.fail("Already at final design phase")

        previous = self._design.current_phase
        self._design.current_phase = next_phase
        self.emit(DesignPhaseChanged(phase=next_phase, previous_phase=previous))
        self._sync_track_phase(next_phase)
        return WorkflowResult.ok(self._design)

    def get_design_session_state(self) -> DesignSessionState | None:
        return self._design
