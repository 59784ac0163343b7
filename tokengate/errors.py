"""
errors.py — Access-control error taxonomy
=========================================
Core components return ``Denied`` values rather than raising. The HTTP
layer turns a ``Denied`` into an ``ApiError`` which the exception handler
registered in main.py renders as the JSON error envelope.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_REVOKED = "ALREADY_REVOKED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    LOCKED_OUT = "LOCKED_OUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


HTTP_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_REVOKED: 400,
    ErrorCode.LIMIT_EXCEEDED: 400,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.LOCKED_OUT: 429,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INTERNAL_ERROR: 500,
}


@dataclass(frozen=True)
class Denied:
    """A typed refusal. ``retry_after`` is in whole seconds when set."""

    code: ErrorCode
    message: str
    retry_after: Optional[int] = None

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.code, 500)


class ApiError(Exception):
    """Raised inside route handlers and dependencies; rendered by main.py."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.headers = headers or {}

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.code, 500)

    @classmethod
    def from_denied(
        cls,
        denied: Denied,
        headers: Optional[Dict[str, str]] = None,
    ) -> "ApiError":
        headers = dict(headers or {})
        details = None
        if denied.retry_after is not None:
            headers.setdefault("Retry-After", str(denied.retry_after))
            details = {"retry_after": denied.retry_after}
        return cls(denied.code, denied.message, details=details, headers=headers)
