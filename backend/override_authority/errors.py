# Overview: The single error taxonomy for override authorization.

"""
Override Authorization Errors

Every failure the core reports to a caller is one of these classes. Routes
never build their own error bodies for core failures: the app-level handler
renders any OverrideError with its status code and to_dict() payload.

- ValidationError   400  malformed input, no side effects, no audit entry
- UnauthorizedError 401  PIN invalid / expired / wrong tier / cap exhausted
- RateLimitedError  429  origin locked out, no PIN comparison performed
- ConflictError     409  terminal request resolved again, duplicate scope
- ForbiddenError    403  caller may not act on this record
- NotFoundError     404  unknown threshold / request / credential
- AuditWriteError   503  audit record could not be written (fail closed)
"""

from __future__ import annotations

from datetime import datetime

from .time_utils import seconds_until, to_utc_z


GENERIC_PIN_FAILURE = "Invalid PIN or insufficient authorization"


class OverrideError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(OverrideError, ValueError):
    """400-level input problem."""
    status_code = 400


class NotFoundError(OverrideError, LookupError):
    status_code = 404


class ConflictError(OverrideError):
    """409-level business rule conflict (terminal request, duplicate scope)."""
    status_code = 409


class UnauthorizedError(OverrideError):
    """
    A credential check failed.

    The message is deliberately generic: callers learn only that the PIN was
    not accepted, never which check rejected it. ``detail`` names the check
    for the audit trail and is never rendered.

    The failure that trips the lockout is answered with 429 so clients stop
    retrying immediately.
    """

    def __init__(
        self,
        message: str = GENERIC_PIN_FAILURE,
        *,
        detail: str | None = None,
        attempts_remaining: int | None = None,
        locked_until: datetime | None = None,
    ):
        super().__init__(message)
        self.detail = detail or message
        self.attempts_remaining = attempts_remaining
        self.locked_until = locked_until

    @property
    def locked(self) -> bool:
        return self.locked_until is not None

    @property
    def status_code(self) -> int:
        return 429 if self.locked else 401

    def to_dict(self) -> dict:
        body = {"error": self.message, "valid": False}
        if self.attempts_remaining is not None:
            body["attempts_remaining"] = self.attempts_remaining
        if self.locked_until is not None:
            body["locked"] = True
            body["locked_until"] = to_utc_z(self.locked_until)
            body["retry_after_seconds"] = seconds_until(self.locked_until)
        return body


class RateLimitedError(OverrideError):
    status_code = 429

    def __init__(self, locked_until: datetime, message: str = "Too many PIN attempts. Please wait before trying again."):
        super().__init__(message)
        self.locked_until = locked_until

    @property
    def retry_after_seconds(self) -> int:
        return seconds_until(self.locked_until)

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "valid": False,
            "locked": True,
            "locked_until": to_utc_z(self.locked_until),
            "retry_after_seconds": self.retry_after_seconds,
        }


class AuditWriteError(OverrideError):
    """The decision could not be recorded; the action is treated as not authorized."""
    status_code = 503

    def to_dict(self) -> dict:
        return {"error": self.message, "approved": False}


class ForbiddenError(OverrideError):
    """The caller is authenticated but may not act on this record."""
    status_code = 403
