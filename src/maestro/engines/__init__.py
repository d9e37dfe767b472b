"""Workflow backends: the contract, two adapters and the composing engine."""
