"""Configuration defaults, env vars, and runtime options for maestro."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from maestro.mode import ScopeStrictness


VERSION = "1.0.0"

STATE_DIR = ".maestro"
CONDUCTOR_DIR = "conductor"

DEFAULT_INSTALL_TIMEOUT = 60

BACKEND_NAMES = ("simple", "phased")

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    return None


@dataclass
class TddConfig:
    """TDD gate switches. Every gate defaults on once enforcement is on."""

    enforce: bool = False
    require_failing_test: bool = True
    require_passing_test: bool = True
    run_full_suite_after_refactor: bool = True
    # A test-file write during REFACTOR starts a new RED cycle.
    restart_cycle_on_new_test: bool = False


@dataclass
class EngineConfig:
    """Routing switches for the composing engine."""

    use_phased_design: bool = True
    use_phased_tracking: bool = True
    preferred_backend: str = "phased"

    def __post_init__(self) -> None:
        if self.preferred_backend not in BACKEND_NAMES:
            raise ValueError(
                f"Unknown preferred backend: {self.preferred_backend} "
                f"(expected one of {', '.join(BACKEND_NAMES)})"
            )


@dataclass
class Config:
    """Runtime configuration for engines, the TDD gate and the CLI."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    tdd: TddConfig = field(default_factory=TddConfig)
    scope_strictness: ScopeStrictness = ScopeStrictness.EXACT

    install_timeout: int = DEFAULT_INSTALL_TIMEOUT
    state_dir: str = STATE_DIR
    verbose: bool = False

    def __post_init__(self) -> None:
        enforce = _env_flag("MAESTRO_ENFORCE_TDD")
        if enforce is not None:
            self.tdd.enforce = enforce

        preferred = os.environ.get("MAESTRO_PREFERRED_BACKEND", "").strip().lower()
        if preferred:
            self.engine = EngineConfig(
                use_phased_design=self.engine.use_phased_design,
                use_phased_tracking=self.engine.use_phased_tracking,
                preferred_backend=preferred,
            )

        strictness = os.environ.get("MAESTRO_SCOPE_STRICTNESS", "").strip().lower()
        if strictness:
            self.scope_strictness = ScopeStrictness(strictness)
        elif isinstance(self.scope_strictness, str):
            self.scope_strictness = ScopeStrictness(self.scope_strictness)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "Config":
        """Build a config from an already-parsed mapping.

        Accepts the nested sections ``engine`` and ``tdd`` plus the top-level
        scalar options. Unknown keys raise ``ValueError``.
        """
        top_level = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - top_level)
        if unknown:
            raise ValueError(f"Unknown config key(s): {', '.join(unknown)}")

        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key == "engine":
                kwargs[key] = EngineConfig(**_checked(EngineConfig, value, "engine"))
            elif key == "tdd":
                kwargs[key] = TddConfig(**_checked(TddConfig, value, "tdd"))
            elif key == "scope_strictness":
                kwargs[key] = ScopeStrictness(value)
            else:
                kwargs[key] = value
        return cls(**kwargs)


def _checked(kind: type, value: Any, section: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{section}' must be a mapping")
    allowed = {f.name for f in fields(kind)}
    unknown = sorted(set(value) - allowed)
    if unknown:
        raise ValueError(f"Unknown key(s) in '{section}': {', '.join(unknown)}")
    return value


def resolve_project_root(start: Path | None = None) -> Path:
    """Return the nearest ancestor holding a state or conductor dir, else *start*."""
    origin = (start or Path.cwd()).resolve()
    for candidate in (origin, *origin.parents):
        if (candidate / STATE_DIR).is_dir() or (candidate / CONDUCTOR_DIR).is_dir():
            return candidate
    return origin
