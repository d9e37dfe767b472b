"""TDD phase gate: RED -> GREEN -> REFACTOR per session.

The gate never aborts an action. A violation yields a blocking-style
:class:`GateVerdict` whose messages the caller injects into the next
interaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Union

from maestro import log
from maestro.config import TddConfig
from maestro.events import EventBus, TddPhaseChanged
from maestro.markers import (
    is_test_command,
    is_test_file,
    looks_like_test_failure,
    looks_like_test_success,
)
from maestro.tasks.model import utc_now

HOOK_NAME = "tdd-enforcement"

WRITE_TOOLS = ("write", "edit", "multiedit")
SHELL_TOOLS = ("bash", "shell")


class TddPhase(str, Enum):
    RED = "red"
    GREEN = "green"
    REFACTOR = "refactor"


GATE_MESSAGES: dict[str, str] = {
    "red": (
        "TDD gate (RED): write a failing test first, run it and confirm it fails "
        "for the right reason before implementing."
    ),
    "green": (
        "TDD gate (GREEN): write the minimal code that makes the failing test pass, "
        "then run the test."
    ),
    "refactor": (
        "TDD gate (REFACTOR): improve the code without adding behavior and run the "
        "tests after each change."
    ),
    "blocked_no_test": (
        "TDD BLOCKED: implementation written without a failing test. Write a test, "
        "run it and confirm it fails, then implement."
    ),
    "blocked_refactor_failing": (
        "TDD BLOCKED: tests are failing during REFACTOR. Undo the last change and "
        "get back to green before continuing."
    ),
    "full_suite": "TDD gate (REFACTOR): run the full test suite after this change.",
}


@dataclass
class TddSession:
    """Gate state for one session, created on session start."""

    session_id: str
    phase: TddPhase = TddPhase.RED
    has_failing_test: bool = False
    tests_passing: bool = True
    last_test_run: str = ""


@dataclass(frozen=True)
class FileWrite:
    path: str


@dataclass(frozen=True)
class TestRun:
    command: str


Action = Union[FileWrite, TestRun]


@dataclass
class GateVerdict:
    messages: list[str] = field(default_factory=list)
    blocking: bool = False

    def add(self, message: str, *, blocking: bool = False) -> None:
        self.messages.append(message)
        self.blocking = self.blocking or blocking

    @property
    def text(self) -> str:
        return "\n\n".join(self.messages)

    def __bool__(self) -> bool:
        return bool(self.messages)


def classify_action(tool: str, args: dict[str, Any]) -> Action | None:
    """Map a raw tool call to a gate action, or ``None`` if TDD-irrelevant."""
    name = (tool or "").lower()
    if name in WRITE_TOOLS:
        path = str(args.get("filePath") or args.get("path") or args.get("file") or "")
        return FileWrite(path) if path else None
    if name in SHELL_TOOLS:
        command = str(args.get("command") or "")
        return TestRun(command) if is_test_command(command) else None
    return None


class TddGate:
    """Apply the RED -> GREEN -> REFACTOR rules to a :class:`TddSession`."""

    def __init__(self, config: TddConfig | None = None, bus: EventBus | None = None) -> None:
        self.config = config or TddConfig(enforce=True)
        self.bus = bus

    def _set_phase(self, session: TddSession, phase: TddPhase) -> None:
        previous = session.phase
        if previous == phase:
            return
        session.phase = phase
        log.debug(f"[{HOOK_NAME}] {session.session_id}: {previous.value} -> {phase.value}")
        if self.bus is not None:
            self.bus.emit(
                TddPhaseChanged(
                    session_id=session.session_id,
                    phase=phase.value,
                    previous_phase=previous.value,
                    tests_passing=session.tests_passing,
                )
            )

    def before_action(self, session: TddSession, action: Action) -> GateVerdict:
        verdict = GateVerdict()
        if not isinstance(action, FileWrite):
            return verdict

        if (
            session.phase == TddPhase.REFACTOR
            and not session.tests_passing
            and self.config.require_passing_test
        ):
            log.debug(f"[{HOOK_NAME}] refactoring with failing tests ({session.session_id})")
            verdict.add(GATE_MESSAGES["blocked_refactor_failing"], blocking=True)

        if is_test_file(action.path):
            if session.phase == TddPhase.REFACTOR and self.config.restart_cycle_on_new_test:
                self._set_phase(session, TddPhase.RED)
            if session.phase == TddPhase.RED:
                verdict.add(GATE_MESSAGES["red"])
            return verdict

        if session.phase == TddPhase.REFACTOR:
            if self.config.run_full_suite_after_refactor:
                verdict.add(GATE_MESSAGES["full_suite"])
            return verdict

        if not session.has_failing_test and self.config.require_failing_test:
            log.debug(
                f"[{HOOK_NAME}] implementation without failing test: "
                f"{action.path} ({session.session_id})"
            )
            verdict.add(GATE_MESSAGES["blocked_no_test"], blocking=True)
        elif session.phase == TddPhase.GREEN:
            verdict.add(GATE_MESSAGES["green"])
        return verdict

    def after_action(self, session: TddSession, action: Action, output: str) -> GateVerdict:
        verdict = GateVerdict()
        if not isinstance(action, TestRun):
            return verdict

        session.last_test_run = utc_now()
        if looks_like_test_failure(output):
            session.has_failing_test = True
            session.tests_passing = False
            if session.phase == TddPhase.RED:
                self._set_phase(session, TddPhase.GREEN)
                verdict.add(GATE_MESSAGES["green"])
            elif session.phase == TddPhase.REFACTOR and self.config.require_passing_test:
                verdict.add(GATE_MESSAGES["blocked_refactor_failing"], blocking=True)
        elif looks_like_test_success(output):
            session.tests_passing = True
            session.has_failing_test = False
            if session.phase == TddPhase.GREEN:
                self._set_phase(session, TddPhase.REFACTOR)
                verdict.add(GATE_MESSAGES["refactor"])
        return verdict

    @staticmethod
    def status_block(session: TddSession) -> str:
        failing = "yes (ready to implement)" if session.has_failing_test else "no (write a test first)"
        return (
            f"TDD phase: {session.phase.value.upper()}\n"
            f"Failing test recorded: {failing}"
        )


class TddHooks:
    """Tool-execution hooks backed by explicit per-session gate state."""

    def __init__(self, gate: TddGate) -> None:
        self.gate = gate
        self._sessions: dict[str, TddSession] = {}

    def start_session(self, session_id: str) -> TddSession:
        session = TddSession(session_id=session_id)
        self._sessions[session_id] = session
        return session

    def end_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def session(self, session_id: str) -> TddSession:
        return self._sessions.get(session_id) or self.start_session(session_id)

    def before(self, session_id: str, tool: str, args: dict[str, Any]) -> GateVerdict:
        action = classify_action(tool, args)
        if action is None:
            return GateVerdict()
        return self.gate.before_action(self.session(session_id), action)

    def after(self, session_id: str, tool: str, args: dict[str, Any], output: str) -> GateVerdict:
        action = classify_action(tool, args)
        if action is None:
            return GateVerdict()
        return self.gate.after_action(self.session(session_id), action, output)

    def prompt(self, session_id: str) -> str:
        return TddGate.status_block(self.session(session_id))


def create_tdd_hooks(
    config: TddConfig | None,
    bus: EventBus | None = None,
) -> dict[str, Callable[..., Any]]:
    """Compile the gate into hook callables; empty when enforcement is off."""
    if config is None or not config.enforce:
        return {}

    log.debug(
        f"[{HOOK_NAME}] enabled (failing-test={config.require_failing_test}, "
        f"passing-test={config.require_passing_test}, "
        f"full-suite={config.run_full_suite_after_refactor})"
    )
    hooks = TddHooks(TddGate(config, bus))
    return {
        "tool.execute.before": hooks.before,
        "tool.execute.after": hooks.after,
        "agent.prompt.before": hooks.prompt,
        "session.start": hooks.start_session,
        "session.end": hooks.end_session,
    }
