"""Reefline - pipeline instance lifecycle orchestrator."""

__version__ = "0.1.0"
