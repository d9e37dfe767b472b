"""maestro: plan tracking, execution-mode detection and TDD gating for agent workflows."""

__version__ = "1.0.0"
