"""Shared fixtures for maestro tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use maestro.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from maestro import log
from maestro.events import EventBus
from maestro.storage import MemoryStateStore
from maestro.tasks.model import Task, TaskStatus, WorkflowContext


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for tests that spawn real processes."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep MAESTRO_* overrides from the developer's shell out of tests."""
    for name in ("MAESTRO_ENFORCE_TDD", "MAESTRO_PREFERRED_BACKEND", "MAESTRO_SCOPE_STRICTNESS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _quiet_log() -> None:
    """Reset the verbose switch that `-v` flips for the whole process."""
    log.set_verbose(False)


def _make_task(
    id: str,
    title: str = "",
    status: TaskStatus = TaskStatus.PENDING,
    dependencies: list[str] | None = None,
    file_scope: list[str] | None = None,
) -> Task:
    return Task(
        id=id,
        title=title or f"Task {id}",
        status=status,
        dependencies=dependencies or [],
        file_scope=file_scope or [],
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def bus() -> EventBus:
    """A private event bus, so tests never share subscribers."""
    return EventBus()


@pytest.fixture
def recorded(bus: EventBus) -> list:
    """Every event emitted on ``bus``, in order."""
    events: list = []
    bus.on(events.append)
    return events


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def ctx(project_root: Path) -> WorkflowContext:
    return WorkflowContext(session_id="ses-1", project_root=project_root)
