"""Tests for maestro.engines.phased: tracks, handoffs and design sessions."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from maestro.engines.phased import PhasedBackend, to_base36
from maestro.events import (
    DesignPhaseChanged,
    ExecutionStarted,
    HandoffCreated,
    PlanCreated,
    TaskCreated,
    TrackCompleted,
    TrackExecuting,
    TrackReady,
)
from maestro.mode import ScopeStrictness
from maestro.tasks.model import (
    CreatePlanRequest,
    ExecutePlanRequest,
    ExecutionMode,
    NewTask,
    TaskStatus,
    TrackPhase,
    UpdateTaskRequest,
    WorkflowContext,
)


@pytest.fixture
def backend(store, bus, ctx):
    engine = PhasedBackend(bus=bus, store=store)
    assert engine.initialize(ctx).success
    yield engine
    engine.shutdown()


def _fresh(store, bus, ctx, **kwargs) -> PhasedBackend:
    engine = PhasedBackend(bus=bus, store=store, **kwargs)
    engine.initialize(ctx)
    return engine


def _plan(backend, ctx, name="Auth", scopes=("src/auth.ts",), **kwargs):
    req = CreatePlanRequest(
        name=name,
        initial_tasks=[NewTask(f"{name} task", file_scope=list(scopes))],
        **kwargs,
    )
    return backend.create_plan(req, ctx).data


def _set_mtime(path, seconds):
    os.utime(path, (seconds, seconds))


def test_to_base36():
    assert to_base36(0) == "0"
    assert to_base36(35) == "z"
    assert to_base36(36) == "10"


class TestCreatePlan:

    def test_track_files(self, backend, ctx, project_root):
        plan = _plan(backend, ctx)
        track_id = plan.tracks[0].id
        track_dir = project_root / "conductor" / "tracks" / track_id
        assert track_id.startswith("auth-")
        assert plan.id == f"plan-{track_id}"
        assert (track_dir / "design.md").read_text().startswith("# Auth")
        assert "- [ ] Auth task" in (track_dir / "plan.md").read_text()

        meta = json.loads((track_dir / "metadata.json").read_text())
        assert meta["phase"] == "design"
        assert meta["is_ready"] is False
        assert meta["task_ids"] == [f"{track_id}-task-0"]
        assert meta["file_scopes"] == {f"{track_id}-task-0": ["src/auth.ts"]}
        assert plan.metadata["plan_path"] == str(track_dir / "plan.md")

    def test_skip_design_starts_in_planning(self, backend, ctx):
        plan = _plan(backend, ctx, skip_design=True)
        assert plan.tracks[0].phase == TrackPhase.PLANNING

    def test_source_document_becomes_design(self, backend, ctx):
        plan = _plan(backend, ctx, source_document="# Auth\n\nUse sessions.\n")
        assert "Use sessions." in Path(plan.metadata["design_path"]).read_text()

    def test_events(self, backend, ctx, recorded):
        _plan(backend, ctx)
        assert [type(e) for e in recorded] == [PlanCreated, TaskCreated]

    def test_distinct_track_ids(self, backend, ctx):
        first = _plan(backend, ctx)
        second = _plan(backend, ctx)
        assert first.tracks[0].id != second.tracks[0].id


class TestTasks:

    def test_update_patches_track_plan(self, backend, ctx):
        plan = _plan(backend, ctx)
        task_id = plan.tasks[0].id
        result = backend.update_task(UpdateTaskRequest(task_id, status=TaskStatus.COMPLETED))
        assert result.success
        assert "- [x] Auth task" in plan.file_path.read_text()
        assert backend.get_plan_progress(plan.id).is_complete

    def test_added_files_survive_reload(self, backend, store, bus, ctx):
        plan = _plan(backend, ctx)
        task_id = plan.tasks[0].id
        backend.update_task(UpdateTaskRequest(task_id, add_files=["src/session.ts"]))

        fresh = _fresh(store, bus, ctx)
        assert fresh.get_ready_tasks(plan.id)[0].file_scope == ["src/auth.ts", "src/session.ts"]
        assert fresh.get_tracks("")[0].file_reservations == ["src/auth.ts", "src/session.ts"]

    def test_update_by_id_without_cache(self, backend, store, bus, ctx):
        plan = _plan(backend, ctx)
        fresh = _fresh(store, bus, ctx)
        result = fresh.update_task(UpdateTaskRequest(plan.tasks[0].id, status=TaskStatus.IN_PROGRESS))
        assert result.success

    def test_non_track_task_goes_to_fallback(self, backend):
        result = backend.update_task(UpdateTaskRequest("task-0"))
        assert result.error == "No active plan"

    def test_ready_tasks(self, backend, ctx):
        plan = _plan(backend, ctx)
        assert [t.id for t in backend.get_ready_tasks(plan.id)] == [plan.tasks[0].id]
        assert [t.id for t in backend.get_ready_tasks("")] == [plan.tasks[0].id]


class TestTracks:

    def test_set_phase_emits_events(self, backend, ctx, recorded):
        plan = _plan(backend, ctx)
        track_id = plan.tracks[0].id
        recorded.clear()

        assert backend.set_track_phase(track_id, TrackPhase.READY).data.eligible
        backend.set_track_phase(track_id, TrackPhase.EXECUTING, agent="worker-1")
        backend.set_track_phase(track_id, TrackPhase.COMPLETED)

        assert [type(e) for e in recorded] == [TrackReady, TrackExecuting, TrackCompleted]
        assert recorded[1].agent == "worker-1"
        assert plan.tracks[0].phase == TrackPhase.COMPLETED

    def test_set_phase_unknown_track(self, backend):
        assert backend.set_track_phase("ghost", TrackPhase.READY).error == "Track ghost not found"

    @pytest.mark.parametrize(
        "metadata",
        [
            '{"id": "broken", "phase": "someday"}',
            '{"id": "broken", "phase": "ready", "task_ids": 5}',
            '{"id": "broken", "phase": "ready", "file_scopes": ["a.ts"]}',
            '{"id": "broken", "phase": "ready", "file_scopes": {"t": 3}}',
        ],
    )
    def test_malformed_track_is_skipped(self, backend, ctx, project_root, metadata):
        plan = _plan(backend, ctx)
        backend.set_track_phase(plan.tracks[0].id, TrackPhase.READY)
        broken = project_root / "conductor" / "tracks" / "broken"
        broken.mkdir()
        (broken / "metadata.json").write_text(metadata)
        assert [t.name for t in backend.get_tracks("")] == ["Auth"]
        assert [t.name for t in backend.get_ready_tracks("")] == ["Auth"]
        assert not backend.can_execute_parallel("")
        assert backend.set_track_phase("broken", TrackPhase.EXECUTING).error == "Track broken not found"

    def test_parallel_requires_two_disjoint_ready_tracks(self, backend, ctx):
        a = _plan(backend, ctx, "Auth", ["src/auth.ts"])
        b = _plan(backend, ctx, "Billing", ["src/billing.ts"])
        assert not backend.can_execute_parallel("")

        backend.set_track_phase(a.tracks[0].id, TrackPhase.READY)
        assert not backend.can_execute_parallel("")
        backend.set_track_phase(b.tracks[0].id, TrackPhase.READY)
        assert backend.can_execute_parallel("")

    def test_overlapping_reservations_block_parallel(self, backend, ctx):
        for name in ("Auth", "Billing"):
            plan = _plan(backend, ctx, name, ["src/shared.ts"])
            backend.set_track_phase(plan.tracks[0].id, TrackPhase.READY)
        assert not backend.can_execute_parallel("")

    def test_prefix_strictness_catches_nested_reservations(self, store, bus, ctx):
        backend = _fresh(store, bus, ctx, strictness=ScopeStrictness.PREFIX)
        a = _plan(backend, ctx, "Auth", ["src/auth"])
        b = _plan(backend, ctx, "Login", ["src/auth/login.ts"])
        for plan in (a, b):
            backend.set_track_phase(plan.tracks[0].id, TrackPhase.READY)
        assert not backend.can_execute_parallel("")


class TestExecute:

    def test_parallel_dispatch(self, backend, ctx, recorded):
        ids = []
        for name, scope in (("Auth", "a.ts"), ("Billing", "b.ts")):
            plan = _plan(backend, ctx, name, [scope])
            backend.set_track_phase(plan.tracks[0].id, TrackPhase.READY)
            ids.append(plan.tracks[0].id)
        recorded.clear()

        result = backend.execute(ExecutePlanRequest("", mode=ExecutionMode.PARALLEL), ctx)
        assert result.success
        assert "parallel-coordination pathway" in result.warnings[0]
        assert recorded == [
            ExecutionStarted(mode=ExecutionMode.PARALLEL, track_ids=tuple(sorted(ids)))
        ]

    def test_single_track_falls_through(self, backend, ctx):
        plan = _plan(backend, ctx)
        result = backend.execute(
            ExecutePlanRequest(plan.id, mode=ExecutionMode.PARALLEL, track_id=plan.tracks[0].id), ctx
        )
        assert not result.success
        assert result.error == "No active plan"


class TestHandoff:

    def test_handoff_file_and_session_state(self, backend, ctx, project_root, recorded):
        plan = _plan(backend, ctx)
        recorded.clear()
        payload = backend.create_handoff(ctx, decisions=["JWT"]).data

        path = project_root / "conductor" / "handoffs" / "ses-1.json"
        data = json.loads(path.read_text())
        assert data["previous_state"]["active_plan"]["current_track_id"] == plan.tracks[0].id
        assert payload.summary == "Plan: Auth (0/1 tasks)"
        assert payload.recommended_action == "Continue implementation"
        assert recorded == [HandoffCreated(payload=payload)]

        state = backend.get_session_state("ses-1")
        assert state.decisions == ["JWT"]
        assert backend.get_session_state("nobody") is None

    def test_latest_handoff_wins(self, backend, store, bus, ctx, project_root):
        first = _plan(backend, ctx, "Auth")
        backend.create_handoff(WorkflowContext("s-a", project_root))
        second = _plan(backend, ctx, "Billing")
        backend.create_handoff(WorkflowContext("s-b", project_root))

        handoffs = project_root / "conductor" / "handoffs"
        _set_mtime(handoffs / "s-a.json", 1_000)
        _set_mtime(handoffs / "s-b.json", 2_000)
        assert _fresh(store, bus, ctx).get_active_plan(ctx).id == second.id

        _set_mtime(handoffs / "s-a.json", 3_000)
        assert _fresh(store, bus, ctx).get_active_plan(ctx).id == first.id

    def test_malformed_handoff_is_ignored(self, backend, store, bus, ctx, project_root):
        plan = _plan(backend, ctx)
        backend.create_handoff(ctx)
        handoffs = project_root / "conductor" / "handoffs"
        (handoffs / "junk.json").write_text("{not json")
        (handoffs / "partial.json").write_text('{"summary": "no state"}')
        _set_mtime(handoffs / "ses-1.json", 1_000)
        _set_mtime(handoffs / "junk.json", 2_000)
        _set_mtime(handoffs / "partial.json", 3_000)
        assert _fresh(store, bus, ctx).get_active_plan(ctx).id == plan.id

    @pytest.mark.parametrize("session_id", ["", "..", "../escape", "a/b", "a\\b"])
    def test_unsafe_session_id_is_rejected(self, backend, ctx, project_root, session_id):
        _plan(backend, ctx)
        result = backend.create_handoff(WorkflowContext(session_id, project_root))
        assert not result.success
        assert result.error.startswith("Invalid session id for handoff")
        handoffs = project_root / "conductor" / "handoffs"
        assert not handoffs.exists() or not any(handoffs.iterdir())
        assert not (project_root / "conductor" / "escape.json").exists()

    def test_no_handoffs_falls_back(self, backend, ctx):
        assert backend.get_active_plan(ctx) is None

    def test_restore_loads_track(self, backend, store, bus, ctx, project_root):
        plan = _plan(backend, ctx)
        payload = backend.create_handoff(ctx).data
        fresh = PhasedBackend(bus=bus, store=store)
        nxt = WorkflowContext("ses-2", project_root)
        fresh.initialize(nxt)
        assert fresh.restore_from_handoff(payload, nxt).success
        restored = fresh.get_active_plan(nxt)
        assert restored.id == plan.id
        assert "ses-2" in restored.session_ids


class TestDesignSession:

    def test_start(self, backend, ctx, recorded):
        plan = _plan(backend, ctx)
        recorded.clear()
        state = backend.start_design_session(ctx, complexity_score=2).data
        assert state.current_phase == 1
        assert state.mode == "speed"
        assert str(state.design_doc_path) == plan.metadata["design_path"]
        assert recorded == [DesignPhaseChanged(phase=1)]

    def test_advance_moves_track_phase(self, backend, ctx, recorded):
        plan = _plan(backend, ctx)
        backend.start_design_session(ctx)
        for _ in range(4):
            backend.advance_design_phase()
        assert backend.get_design_session_state().current_phase == 5
        assert plan.tracks[0].phase == TrackPhase.PLANNING

        recorded.clear()
        backend.advance_design_phase(7)
        assert backend.get_design_session_state().current_phase == 8
        assert recorded[0] == DesignPhaseChanged(phase=8, previous_phase=5)
        assert isinstance(recorded[1], TrackReady)
        assert backend.get_ready_tracks("")[0].id == plan.tracks[0].id

    def test_final_phase(self, backend, ctx):
        backend.start_design_session(ctx)
        assert backend.advance_design_phase(9).success
        result = backend.advance_design_phase()
        assert result.error == "Already at final design phase"

    def test_advance_without_session(self, backend):
        assert backend.advance_design_phase().error == "No active design session"

    def test_handoff_mentions_design(self, backend, ctx):
        _plan(backend, ctx)
        backend.start_design_session(ctx)
        payload = backend.create_handoff(ctx).data
        assert payload.summary == "Plan: Auth (0/1 tasks) | Design phase: 1/10 (full mode)"
        assert payload.recommended_action == "Continue design session at phase 1"
        assert payload.previous_state.next_steps == ["Continue design phase 1"]
