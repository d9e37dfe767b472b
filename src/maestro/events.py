"""Workflow events and a synchronous in-process event bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, ClassVar, Union

from maestro import log
from maestro.tasks.model import (
    ExecutionMode,
    HandoffPayload,
    Plan,
    Task,
    TaskStatus,
    Track,
)


# ── Event payloads ───────────────────────────────────────────────────


@dataclass(frozen=True)
class PlanCreated:
    type: ClassVar[str] = "plan:created"
    plan: Plan


@dataclass(frozen=True)
class PlanUpdated:
    type: ClassVar[str] = "plan:updated"
    plan: Plan


@dataclass(frozen=True)
class TaskCreated:
    type: ClassVar[str] = "task:created"
    task: Task


@dataclass(frozen=True)
class TaskUpdated:
    type: ClassVar[str] = "task:updated"
    task: Task
    previous_status: TaskStatus


@dataclass(frozen=True)
class TaskCompleted:
    type: ClassVar[str] = "task:completed"
    task: Task


@dataclass(frozen=True)
class TrackReady:
    type: ClassVar[str] = "track:ready"
    track: Track


@dataclass(frozen=True)
class TrackExecuting:
    type: ClassVar[str] = "track:executing"
    track: Track
    agent: str = ""


@dataclass(frozen=True)
class TrackCompleted:
    type: ClassVar[str] = "track:completed"
    track: Track


@dataclass(frozen=True)
class DesignPhaseChanged:
    type: ClassVar[str] = "design:phase-changed"
    phase: int
    previous_phase: int | None = None


@dataclass(frozen=True)
class ExecutionStarted:
    type: ClassVar[str] = "execution:started"
    mode: ExecutionMode
    track_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ExecutionCompleted:
    type: ClassVar[str] = "execution:completed"
    success: bool
    summary: str = ""


@dataclass(frozen=True)
class HandoffCreated:
    type: ClassVar[str] = "handoff:created"
    payload: HandoffPayload


@dataclass(frozen=True)
class TddPhaseChanged:
    type: ClassVar[str] = "tdd:phase-changed"
    session_id: str
    phase: str
    previous_phase: str
    tests_passing: bool


WorkflowEvent = Union[
    PlanCreated,
    PlanUpdated,
    TaskCreated,
    TaskUpdated,
    TaskCompleted,
    TrackReady,
    TrackExecuting,
    TrackCompleted,
    DesignPhaseChanged,
    ExecutionStarted,
    ExecutionCompleted,
    HandoffCreated,
    TddPhaseChanged,
]

EventHandler = Callable[[WorkflowEvent], None]


# ── Bus ──────────────────────────────────────────────────────────────


class Subscription:
    """Handle returned by :meth:`EventBus.on` / :meth:`EventBus.once`.

    Pass it to :meth:`EventBus.off` (or call :meth:`cancel`) to unsubscribe.
    """

    __slots__ = ("handler", "once", "_bus")

    def __init__(self, bus: "EventBus", handler: EventHandler, once: bool) -> None:
        self._bus = bus
        self.handler = handler
        self.once = once

    def cancel(self) -> None:
        self._bus.off(self)

    @property
    def active(self) -> bool:
        return self in self._bus._subscriptions

    def __repr__(self) -> str:
        name = getattr(self.handler, "__qualname__", repr(self.handler))
        return f"Subscription({name}, once={self.once})"


class EventBus:
    """Synchronous publish/subscribe channel.

    ``emit`` delivers to the subscriptions registered when the call starts,
    in registration order, in the calling thread. A subscription removed by an
    earlier handler during the same emit is skipped. A handler that raises is
    logged and skipped; delivery continues with the next handler.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def on(self, handler: EventHandler) -> Subscription:
        sub = Subscription(self, handler, once=False)
        self._subscriptions.append(sub)
        return sub

    def once(self, handler: EventHandler) -> Subscription:
        sub = Subscription(self, handler, once=True)
        self._subscriptions.append(sub)
        return sub

    def off(self, target: Subscription | EventHandler) -> None:
        """Remove a subscription, or every subscription of a plain handler."""
        if isinstance(target, Subscription):
            if target in self._subscriptions:
                self._subscriptions.remove(target)
            return
        self._subscriptions = [s for s in self._subscriptions if s.handler != target]

    def emit(self, event: WorkflowEvent) -> None:
        for sub in list(self._subscriptions):
            if sub not in self._subscriptions:
                continue
            if sub.once:
                self._subscriptions.remove(sub)
            try:
                sub.handler(event)
            except Exception as exc:
                log.warn(f"Event handler {sub!r} failed on {event.type}: {exc}")
                log.exception()

    def clear(self) -> None:
        self._subscriptions.clear()

    @property
    def handler_count(self) -> int:
        return len(self._subscriptions)


default_bus = EventBus()
