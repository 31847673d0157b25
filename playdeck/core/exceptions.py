"""Domain exceptions raised by the orchestration engine."""
from typing import Any, Optional


class PlaydeckError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(PlaydeckError):
    """A form or run request is not runnable (missing target, playbook, vault)."""


class ValidationError(PlaydeckError):
    """Submitted variables or schedule settings do not satisfy their schema."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}", details={"field": field, "reason": reason})
        self.field = field
        self.reason = reason


class AuthorizationError(PlaydeckError):
    """Webhook token mismatch or insufficient role for a mutating action."""


class SSHConnectionError(PlaydeckError):
    """SSH host unreachable or authentication rejected."""


class ExecutionError(PlaydeckError):
    """The playbook (or its pre-command) exited non-zero."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message, details={"exit_code": exit_code})
        self.exit_code = exit_code


class DecryptionError(PlaydeckError):
    """Wrong vault password or corrupt vault payload."""


class ConcurrencyError(PlaydeckError):
    """A server lock could not be acquired within the wait bound."""


class NotFoundError(PlaydeckError):
    """A referenced record does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            f"{resource} not found: {identifier}",
            details={"resource": resource, "identifier": identifier},
        )


class InvalidTransitionError(PlaydeckError):
    """A run status change that the state machine does not allow."""
