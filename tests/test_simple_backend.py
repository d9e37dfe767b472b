"""Tests for maestro.engines.simple: the checkbox-document backend."""

from __future__ import annotations

import pytest

from maestro.engines.simple import SimpleBackend, slugify
from maestro.events import (
    ExecutionStarted,
    HandoffCreated,
    PlanCreated,
    PlanUpdated,
    TaskCompleted,
    TaskCreated,
    TaskUpdated,
)
from maestro.storage import FileStateStore
from maestro.tasks.model import (
    CreatePlanRequest,
    ExecutePlanRequest,
    ExecutionMode,
    NewTask,
    TaskStatus,
    UpdateTaskRequest,
    WorkflowContext,
)


@pytest.fixture
def backend(store, bus, ctx):
    engine = SimpleBackend(store, bus)
    assert engine.initialize(ctx).success
    yield engine
    engine.shutdown()


def _request(name: str = "Login Flow") -> CreatePlanRequest:
    return CreatePlanRequest(
        name=name,
        initial_tasks=[
            NewTask("Write failing test (src/auth.test.ts)"),
            NewTask("Implement login (src/auth.ts)", dependencies=["task-0"]),
            NewTask("Sketch API", status=TaskStatus.COMPLETED),
        ],
    )


def test_slugify():
    assert slugify("  Login Flow v2! ") == "login-flow-v2"
    assert slugify("!!!") == ""


class TestCreatePlan:

    def test_writes_document_and_state(self, backend, store, ctx, project_root):
        plan = backend.create_plan(_request(), ctx).data
        assert plan.id == "plan-login-flow"
        assert plan.file_path == project_root / ".maestro" / "plans" / "login-flow.md"
        assert "- [ ] Write failing test (src/auth.test.ts)" in plan.file_path.read_text()

        state = store.read_plan_state(project_root)
        assert state.name == "Login Flow"
        assert state.session_ids == ["ses-1"]

    def test_ids_and_dependents(self, backend, ctx):
        plan = backend.create_plan(_request(), ctx).data
        assert [t.id for t in plan.tasks] == ["task-0", "task-1", "task-2"]
        assert plan.tasks[0].dependents == ["task-1"]
        assert plan.progress.completed == 1

    def test_events(self, backend, ctx, recorded):
        backend.create_plan(_request(), ctx)
        assert isinstance(recorded[0], PlanCreated)
        assert [type(e) for e in recorded[1:]] == [TaskCreated] * 3

    def test_empty_plan_is_complete(self, backend, ctx):
        plan = backend.create_plan(CreatePlanRequest(name="Empty"), ctx).data
        assert plan.progress.is_complete
        assert plan.progress.percentage == 100


class TestQueries:

    def test_ready_tasks_respect_dependencies(self, backend, ctx):
        backend.create_plan(_request(), ctx)
        assert [t.id for t in backend.get_ready_tasks("any")] == ["task-0"]

    def test_no_plan(self, backend, ctx):
        assert backend.get_active_plan(ctx) is None
        assert backend.get_plan_progress("x") is None
        assert backend.get_ready_tasks("x") == []
        assert backend.get_tracks("x") == []
        assert not backend.can_execute_parallel("x")

    def test_reload_from_disk(self, backend, store, bus, ctx):
        backend.create_plan(_request(), ctx)
        fresh = SimpleBackend(store, bus)
        fresh.initialize(WorkflowContext(session_id="ses-2", project_root=ctx.project_root))
        plan = fresh.get_active_plan(ctx)
        assert plan.id == "plan-login-flow"
        assert [t.status for t in plan.tasks] == [
            TaskStatus.PENDING,
            TaskStatus.PENDING,
            TaskStatus.COMPLETED,
        ]
        assert plan.session_ids == ["ses-1", "ses-2"]
        # Dependencies live only in memory; the document does not carry them.
        assert [t.id for t in fresh.get_ready_tasks("x")] == ["task-0", "task-1"]

    def test_missing_document_means_no_plan(self, backend, store, bus, ctx):
        plan = backend.create_plan(_request(), ctx).data
        plan.file_path.unlink()
        fresh = SimpleBackend(store, bus)
        fresh.initialize(ctx)
        assert fresh.get_active_plan(ctx) is None

    def test_corrupt_state_file_means_no_plan(self, bus, ctx, project_root):
        state = project_root / ".maestro" / "state.json"
        state.parent.mkdir(parents=True)
        state.write_text('{"active_plan": "p.md", "plan_name": "p", "tdd": "red"}')
        backend = SimpleBackend(FileStateStore(), bus)
        backend.initialize(ctx)
        assert backend.get_active_plan(ctx) is None
        assert backend.get_session_state(ctx.session_id) is None


class TestUpdateTask:

    def test_complete_patches_document(self, backend, ctx, recorded):
        plan = backend.create_plan(_request(), ctx).data
        recorded.clear()
        result = backend.update_task(UpdateTaskRequest("task-0", status=TaskStatus.COMPLETED))
        assert result.success
        assert result.data.completed_at
        assert "- [x] Write failing test" in plan.file_path.read_text()
        assert [type(e) for e in recorded] == [TaskUpdated, TaskCompleted, PlanUpdated]
        assert recorded[0].previous_status == TaskStatus.PENDING
        assert [t.id for t in backend.get_ready_tasks("x")] == ["task-1"]

    def test_completion_reason_used_when_status_missing(self, backend, ctx):
        backend.create_plan(_request(), ctx)
        result = backend.update_task(
            UpdateTaskRequest("task-0", completion_reason=TaskStatus.SKIPPED)
        )
        assert result.data.status == TaskStatus.SKIPPED

    def test_note_and_files(self, backend, ctx, recorded):
        backend.create_plan(_request(), ctx)
        recorded.clear()
        result = backend.update_task(
            UpdateTaskRequest("task-0", note="halfway", add_files=["src/auth.test.ts", "src/x.ts"])
        )
        assert result.data.notes == ["halfway"]
        assert result.data.file_scope == ["src/auth.test.ts", "src/x.ts"]
        assert not any(isinstance(e, TaskCompleted) for e in recorded)

    def test_reopening_does_not_emit_completed(self, backend, ctx, recorded):
        plan = backend.create_plan(_request(), ctx).data
        recorded.clear()
        backend.update_task(UpdateTaskRequest("task-2", status=TaskStatus.PENDING))
        assert not any(isinstance(e, TaskCompleted) for e in recorded)
        assert "- [ ] Sketch API" in plan.file_path.read_text()

    def test_unknown_task(self, backend, ctx):
        backend.create_plan(_request(), ctx)
        result = backend.update_task(UpdateTaskRequest("task-9", status=TaskStatus.COMPLETED))
        assert not result.success
        assert result.error == "Task task-9 not found"

    def test_without_plan(self, backend):
        result = backend.update_task(UpdateTaskRequest("task-0"))
        assert result.error == "No active plan"


class TestExecution:

    def test_execute_delegates(self, backend, ctx, recorded):
        backend.create_plan(_request(), ctx)
        recorded.clear()
        result = backend.execute(ExecutePlanRequest("plan-login-flow"), ctx)
        assert result.success
        assert "background agents" in result.warnings[0]
        assert recorded == [ExecutionStarted(mode=ExecutionMode.SEQUENTIAL)]

    def test_execute_without_plan(self, backend, ctx):
        assert not backend.execute(ExecutePlanRequest("x"), ctx).success

    def test_no_design_support(self, backend, ctx):
        result = backend.start_design_session(ctx)
        assert not result.success
        assert "does not support design phases" in result.error
        assert backend.get_design_session_state() is None


class TestSessions:

    def test_session_state_names_current_task(self, backend, ctx):
        backend.create_plan(_request(), ctx)
        backend.update_task(UpdateTaskRequest("task-0", status=TaskStatus.IN_PROGRESS))
        state = backend.get_session_state("ses-1")
        assert state.active_plan.plan_id == "plan-login-flow"
        assert state.active_plan.current_task_id == "task-0"

    def test_unknown_session(self, backend, ctx):
        backend.create_plan(_request(), ctx)
        assert backend.get_session_state("other") is None

    def test_handoff(self, backend, ctx, recorded):
        backend.create_plan(_request(), ctx)
        recorded.clear()
        result = backend.create_handoff(ctx, decisions=["use JWT"], next_steps=["wire UI"])
        payload = result.data
        assert payload.summary == "Active plan: Login Flow (1/3 tasks completed)"
        assert payload.recommended_action == 'Continue working on plan "Login Flow"'
        assert payload.previous_state.decisions == ["use JWT"]
        assert recorded == [HandoffCreated(payload=payload)]

    def test_handoff_without_state(self, backend, ctx):
        result = backend.create_handoff(ctx)
        assert result.error == "No session state to hand off"

    def test_restore_records_new_session(self, backend, store, ctx):
        backend.create_plan(_request(), ctx)
        payload = backend.create_handoff(ctx).data
        nxt = WorkflowContext(session_id="ses-2", project_root=ctx.project_root)
        assert backend.restore_from_handoff(payload, nxt).success
        assert "ses-2" in store.read_plan_state(ctx.project_root).session_ids
        assert backend.get_session_state("ses-2") is not None
