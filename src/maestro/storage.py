"""Plan-state storage keyed by project root, and an event-driven state sync."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from maestro import log
from maestro.config import STATE_DIR
from maestro.events import (
    EventBus,
    PlanUpdated,
    Subscription,
    TaskCompleted,
    TddPhaseChanged,
    WorkflowEvent,
)
from maestro.io_utils import read_json, write_json
from maestro.tasks.model import utc_now

STATE_FILE = "state.json"


@dataclass
class PlanState:
    active_document_path: str
    name: str
    started_at: str = field(default_factory=utc_now)
    session_ids: list[str] = field(default_factory=list)
    updated_at: str = field(default_factory=utc_now)
    tdd_phase: str = ""
    tests_passing: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_plan": self.active_document_path,
            "plan_name": self.name,
            "started_at": self.started_at,
            "session_ids": list(self.session_ids),
            "updated_at": self.updated_at,
            "tdd": {"phase": self.tdd_phase, "tests_passing": self.tests_passing},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanState":
        """Decode a stored record. Raises ``KeyError``/``TypeError`` when malformed."""
        session_ids = data.get("session_ids") or []
        if not isinstance(session_ids, list):
            raise TypeError("session_ids must be a list")
        tdd = data.get("tdd") or {}
        if not isinstance(tdd, dict):
            raise TypeError("tdd must be a mapping")
        passing = tdd.get("tests_passing")
        return cls(
            active_document_path=str(data["active_plan"]),
            name=str(data["plan_name"]),
            started_at=str(data.get("started_at") or ""),
            session_ids=[str(s) for s in session_ids],
            updated_at=str(data.get("updated_at") or ""),
            tdd_phase=str(tdd.get("phase") or ""),
            tests_passing=passing if isinstance(passing, bool) else None,
        )


class StateStore(ABC):
    """Storage collaborator for plan state.

    Implementations must treat a missing, empty or malformed backing record
    as absent and never raise for it.
    """

    @abstractmethod
    def read_plan_state(self, root: Path) -> PlanState | None:
        ...

    @abstractmethod
    def write_plan_state(self, root: Path, state: PlanState) -> None:
        """Persist *state*, refreshing ``updated_at``."""
        ...

    def append_session_id(self, root: Path, session_id: str) -> PlanState | None:
        """Record *session_id* on the stored state, if any. Idempotent."""
        state = self.read_plan_state(root)
        if state is None or not session_id:
            return state
        if session_id not in state.session_ids:
            state.session_ids.append(session_id)
            self.write_plan_state(root, state)
        return state

    def clear_plan_state(self, root: Path) -> None:
        """Forget the stored record for *root*. No-op by default."""


class FileStateStore(StateStore):
    """JSON document at ``<root>/<state_dir>/state.json``, rewritten whole."""

    def __init__(self, state_dir: str = STATE_DIR) -> None:
        self.state_dir = state_dir

    def path_for(self, root: Path) -> Path:
        return Path(root) / self.state_dir / STATE_FILE

    def read_plan_state(self, root: Path) -> PlanState | None:
        path = self.path_for(root)
        data = read_json(path)
        if not isinstance(data, dict):
            return None
        try:
            return PlanState.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            log.debug(f"Ignoring malformed plan state at {path}: {exc}")
            return None

    def write_plan_state(self, root: Path, state: PlanState) -> None:
        record = replace(state, updated_at=utc_now())
        write_json(self.path_for(root), record.to_dict())

    def clear_plan_state(self, root: Path) -> None:
        self.path_for(root).unlink(missing_ok=True)


class MemoryStateStore(StateStore):
    """In-process store used by tests and ephemeral engines."""

    def __init__(self) -> None:
        self._records: dict[Path, dict[str, Any]] = {}

    def read_plan_state(self, root: Path) -> PlanState | None:
        data = self._records.get(Path(root).resolve())
        return PlanState.from_dict(data) if data is not None else None

    def write_plan_state(self, root: Path, state: PlanState) -> None:
        record = replace(state, updated_at=utc_now())
        self._records[Path(root).resolve()] = record.to_dict()

    def clear_plan_state(self, root: Path) -> None:
        self._records.pop(Path(root).resolve(), None)


class StateSync:
    """Persist workflow events that change durable state.

    TDD phase changes are written onto the stored plan state (creating an
    empty record when none exists); task completions and plan updates refresh
    ``updated_at``.
    """

    def __init__(self, store: StateStore, root: Path, bus: EventBus) -> None:
        self.store = store
        self.root = Path(root)
        self.bus = bus
        self._subscription: Subscription | None = None

    def attach(self) -> "StateSync":
        if self._subscription is None:
            self._subscription = self.bus.on(self.handle)
        return self

    def detach(self) -> None:
        if self._subscription is not None:
            self.bus.off(self._subscription)
            self._subscription = None

    def handle(self, event: WorkflowEvent) -> None:
        if isinstance(event, TddPhaseChanged):
            state = self.store.read_plan_state(self.root) or PlanState(
                active_document_path="", name=""
            )
            state.tdd_phase = event.phase
            state.tests_passing = event.tests_passing
            if event.session_id and event.session_id not in state.session_ids:
                state.session_ids.append(event.session_id)
            self.store.write_plan_state(self.root, state)
        elif isinstance(event, (TaskCompleted, PlanUpdated)):
            state = self.store.read_plan_state(self.root)
            if state is not None:
                self.store.write_plan_state(self.root, state)
