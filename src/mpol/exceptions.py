from __future__ import annotations

__all__ = ["ConfigurationError", "StateError", "ConvergenceWarning"]


class ConfigurationError(ValueError):
    """Inconsistent or unphysical input detected while configuring the engine."""


class StateError(RuntimeError):
    """Query made before an evaluation produced the requested state."""


class ConvergenceWarning(UserWarning):
    """Induced dipoles did not reach the requested tolerance."""
