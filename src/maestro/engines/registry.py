"""Backend registry: get a workflow backend by name."""

from __future__ import annotations

from maestro.config import Config
from maestro.engines.base import WorkflowEngine
from maestro.engines.composite import ComposingEngine
from maestro.engines.phased import PhasedBackend
from maestro.engines.simple import SimpleBackend
from maestro.events import EventBus
from maestro.mode import ScopeStrictness
from maestro.storage import FileStateStore, StateStore

ENGINE_NAMES = ("simple", "phased", "composite")

_engine: WorkflowEngine | None = None


def get_backend(
    name: str,
    *,
    store: StateStore | None = None,
    bus: EventBus | None = None,
    strictness: ScopeStrictness = ScopeStrictness.EXACT,
) -> WorkflowEngine:
    """Return a fresh backend for *name*."""
    match name:
        case "simple":
            return SimpleBackend(store, bus)
        case "phased":
            return PhasedBackend(bus=bus, store=store, strictness=strictness)
        case "composite":
            return ComposingEngine(store=store, bus=bus, strictness=strictness)
        case _:
            raise ValueError(f"Unknown backend: {name}")


def get_workflow_engine(config: Config | None = None) -> WorkflowEngine:
    """Process-wide composing engine, built from *config* on first use."""
    global _engine
    if _engine is None:
        cfg = config or Config()
        _engine = ComposingEngine(
            cfg.engine,
            store=FileStateStore(cfg.state_dir),
            strictness=cfg.scope_strictness,
            state_dir=cfg.state_dir,
        )
    return _engine


def reset_workflow_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.shutdown()
    _engine = None
