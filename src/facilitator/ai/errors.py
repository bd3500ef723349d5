"""Error taxonomy for conversational turns.

Every error carries a machine-readable code and serializes to a dict
so it can be attached to diagnostics or forwarded to a transport layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes attached to facilitator errors."""

    TURN_CANCELLED = "turn_cancelled"
    DIRECTIVE_PARSE_FAILED = "directive_parse_failed"
    PROVIDER_ERROR = "provider_error"
    SOFT_LIMIT_REACHED = "soft_limit_reached"
    INVALID_STATE = "invalid_state"
    INTERNAL_ERROR = "internal_error"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class FacilitatorError(Exception):
    """Base exception for all facilitator errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    # Whether the condition should be reported to the caller as a failure
    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


# -----------------------------------------------------------------------------
# Turn Errors
# -----------------------------------------------------------------------------

@dataclass
class TurnCancelled(FacilitatorError):
    """Raised when a turn observes its cancellation token.

    Cancellation is cooperative and is not logged as a failure.
    """

    error_code: str = field(default=ErrorCode.TURN_CANCELLED)
    message: str = field(default="Operation aborted")
    details: dict[str, Any] = field(default_factory=dict)

    reason: str | None = field(default=None)

    severity: ClassVar[str] = "info"

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.reason is not None:
            result["reason"] = self.reason
        return result


@dataclass
class DirectiveParseError(FacilitatorError):
    """Raised when a marked directive block does not contain valid directives."""

    error_code: str = field(default=ErrorCode.DIRECTIVE_PARSE_FAILED)
    message: str = field(default="Open questions block could not be parsed")
    details: dict[str, Any] = field(default_factory=dict)

    payload: str = field(default="")

    severity: ClassVar[str] = "warning"


@dataclass
class ProviderError(FacilitatorError):
    """The agent reported a failure while executing the request."""

    error_code: str = field(default=ErrorCode.PROVIDER_ERROR)
    message: str = field(default="An error occurred during processing: Unknown error")
    details: dict[str, Any] = field(default_factory=dict)

    errors: tuple[str, ...] = field(default=())

    @classmethod
    def from_errors(cls, errors: tuple[str, ...] | list[str]) -> "ProviderError":
        """Build the user-facing error message from the agent's error list."""
        joined = ", ".join(str(item) for item in errors) or "Unknown error"
        return cls(
            message=f"An error occurred during processing: {joined}",
            errors=tuple(errors),
        )


@dataclass
class SoftLimitReached(FacilitatorError):
    """The agent stopped because it hit its action limit.

    This is a completion with an advisory notice, never a failure.
    """

    error_code: str = field(default=ErrorCode.SOFT_LIMIT_REACHED)
    message: str = field(default="Agent reached its action limit")
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "info"


@dataclass
class InvalidTurnTransition(FacilitatorError):
    """Raised when a turn state transition is attempted from a terminal state."""

    error_code: str = field(default=ErrorCode.INVALID_STATE)
    message: str = field(default="Turn is already finished")
    details: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ErrorCode",
    "FacilitatorError",
    "TurnCancelled",
    "DirectiveParseError",
    "ProviderError",
    "SoftLimitReached",
    "InvalidTurnTransition",
]
