"""Mapping from :class:`CommsError` codes to HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from comms.core.errors import CommsError, ErrorCode

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_ENROLLED: 409,
    ErrorCode.COOLDOWN_ACTIVE: 409,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.MISSING_VARIABLE: 422,
    ErrorCode.TYPE_MISMATCH: 422,
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.QUIET_HOURS: 429,
    ErrorCode.FREQUENCY_LIMIT: 429,
    ErrorCode.CHANNEL_DISABLED: 429,
    ErrorCode.CONSENT_REQUIRED: 429,
}


def status_for(code: ErrorCode) -> int:
    return _STATUS_BY_CODE.get(code, 400)


def http_error(exc: CommsError) -> HTTPException:
    """Turn a core error into an HTTPException carrying the structured error body."""
    return HTTPException(status_code=status_for(exc.code), detail=exc.to_dict())
