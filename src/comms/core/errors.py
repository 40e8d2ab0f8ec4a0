"""Error taxonomy for the communication core.

Every failure the core surfaces to a caller is a :class:`CommsError` with a
stable :class:`ErrorCode`. Constraint violations are recoverable (the same
request may succeed later); validation and eligibility errors are not until
the caller changes its input or waits out a cooldown.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    INVALID_REQUEST = "INVALID_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    UNSUPPORTED_CHANNEL = "UNSUPPORTED_CHANNEL"
    MISSING_VARIABLE = "MISSING_VARIABLE"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    QUIET_HOURS = "QUIET_HOURS"
    FREQUENCY_LIMIT = "FREQUENCY_LIMIT"
    CHANNEL_DISABLED = "CHANNEL_DISABLED"
    CONSENT_REQUIRED = "CONSENT_REQUIRED"
    DELIVERY_FAILURE = "DELIVERY_FAILURE"
    ALREADY_ENROLLED = "ALREADY_ENROLLED"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"


RETRYABLE_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.QUIET_HOURS,
        ErrorCode.FREQUENCY_LIMIT,
        ErrorCode.CHANNEL_DISABLED,
        ErrorCode.CONSENT_REQUIRED,
        ErrorCode.DELIVERY_FAILURE,
    }
)


class CommsError(ValueError):
    """Typed error raised by the template store, orchestrator and journey engine."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }
