"""
Error kinds raised by the pipeline orchestrator.

Every error carries a stable machine-readable ``code`` and the HTTP status
the boundary layer answers with, so the API can render them uniformly
without exposing internals.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""

    code = "ORCHESTRATOR_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        details: dict | None = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFound(OrchestratorError):
    """A pipeline configuration or instance does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class InvalidTransition(OrchestratorError):
    """The action is not allowed from the instance's current status."""

    code = "INVALID_TRANSITION"
    status_code = 409


class UnsupportedAction(OrchestratorError):
    """The action token is not one of start, archive or cancel."""

    code = "UNSUPPORTED_ACTION"
    status_code = 405


class UpstreamUnavailable(OrchestratorError):
    """The CI or source-control provider rejected the call or could not be reached."""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        **kwargs,
    ) -> None:
        self.upstream_status = upstream_status
        super().__init__(message, **kwargs)


class AlreadyExists(OrchestratorError):
    """A pipeline configuration with the same slug exists in the project."""

    code = "ALREADY_EXISTS"
    status_code = 409


class NumberingUnavailable(OrchestratorError):
    """No instance number could be claimed within the retry budget."""

    code = "NUMBERING_UNAVAILABLE"
    status_code = 503


class ConfigInUse(OrchestratorError):
    """A pipeline configuration still owns instances."""

    code = "CONFIG_HAS_INSTANCES"
    status_code = 409


class InvalidSecret(OrchestratorError):
    """The presented callback secret does not match the instance."""

    code = "INVALID_SECRET"
    status_code = 401


class NumberingConflict(Exception):
    """
    Two claims computed the same number.

    Internal to the numberer: it is retried and never leaves it.
    """

    def __init__(self, config_id: object, number: int) -> None:
        self.config_id = config_id
        self.number = number
        super().__init__(f"Number {number} already taken for config {config_id}")
