"""
core/errors.py -- Error taxonomy shared by every access-control component.

Authorization checks never raise: they return either a context object or a
Denial. The API layer converts a Denial into the stable error envelope
{"error": {"code": ..., "message": ...}} with the matching HTTP status.

Layer rule: core/ is the kernel and imports nothing from the application.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCode(str, Enum):
    unauthorized = "unauthorized"  # no or invalid credential
    forbidden = "forbidden"  # valid credential, insufficient entitlement
    not_found = "not_found"  # resource or grant absent (or hidden)
    gone = "gone"  # grant revoked or expired
    rate_limited = "rate_limited"  # lockout active
    invalid = "invalid"  # malformed input
    conflict = "conflict"  # duplicate webhook delivery


_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.unauthorized: 401,
    ErrorCode.forbidden: 403,
    ErrorCode.not_found: 404,
    ErrorCode.gone: 410,
    ErrorCode.rate_limited: 429,
    ErrorCode.invalid: 400,
    ErrorCode.conflict: 409,
}


@dataclass(frozen=True)
class Denial:
    """A typed refusal returned by an authorization check."""

    code: ErrorCode
    message: str

    @property
    def status_code(self) -> int:
        return _STATUS_BY_CODE[self.code]

    def as_detail(self) -> dict:
        return {"code": self.code.value, "message": self.message}


def unauthorized(message: str = "Authentication required.") -> Denial:
    return Denial(ErrorCode.unauthorized, message)


def forbidden(message: str = "Forbidden.") -> Denial:
    return Denial(ErrorCode.forbidden, message)


def not_found(message: str = "Not found.") -> Denial:
    return Denial(ErrorCode.not_found, message)


def gone(message: str = "Gone.") -> Denial:
    return Denial(ErrorCode.gone, message)


def invalid(message: str) -> Denial:
    return Denial(ErrorCode.invalid, message)
