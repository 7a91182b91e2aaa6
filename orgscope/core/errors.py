"""Error taxonomy and sanitization.

Every failure that leaves the process is reduced to a stable HTTP status and a
``{"error": ..., "details": ...}`` body. Raw exception messages, stack traces,
tokens and emails never reach the client or the logs.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError, NoResultFound, SQLAlchemyError
from starlette.exceptions import HTTPException

from orgscope.core.structured_logging import redact_mapping


class ErrorKind(str, Enum):
    """Stable error identifiers exposed to clients."""

    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal_error"


PUBLIC_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.UNAUTHENTICATED: "Authentication required",
    ErrorKind.FORBIDDEN: "Access denied",
    ErrorKind.VALIDATION: "Invalid data provided",
    ErrorKind.NOT_FOUND: "Resource not found",
    ErrorKind.CONFLICT: "Request conflicts with an existing resource",
    ErrorKind.RATE_LIMITED: "Too many requests",
    ErrorKind.INTERNAL: "An internal error occurred",
}

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
}


class AppError(Exception):
    """Base class for errors the request layer knows how to map.

    ``public_message`` is safe to show to clients; the exception's own ``str()``
    may carry internal detail and is never serialized.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        public_message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        internal: str | None = None,
    ):
        self.public_message = public_message or PUBLIC_MESSAGES[self.kind]
        self.details = details
        super().__init__(internal or self.public_message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


class Unauthenticated(AppError):
    """No resolvable principal."""

    kind = ErrorKind.UNAUTHENTICATED


class Forbidden(AppError):
    """Principal resolved but the role/scope policy denies the action."""

    kind = ErrorKind.FORBIDDEN


class ValidationError(AppError):
    """Malformed input, caught before touching the data store."""

    kind = ErrorKind.VALIDATION


class NotFound(AppError):
    kind = ErrorKind.NOT_FOUND


class Conflict(AppError):
    """The request conflicts with existing state (e.g. dependent records)."""

    kind = ErrorKind.CONFLICT


class IdempotencyConflict(Conflict):
    """Idempotency token reused for a different operation or by another principal."""


class ConflictHandled(AppError):
    """Idempotency race lost to a concurrent transaction.

    Recovered inside the guard; reaching the wrapper with this error is a bug.
    """

    kind = ErrorKind.INTERNAL


class InternalError(AppError):
    kind = ErrorKind.INTERNAL


class ContextEstablishmentError(InternalError):
    """The principal could not be bound to the database session."""


class ContextTeardownError(InternalError):
    """A statement was attempted after the scoped session began tearing down."""


def error_body(kind: ErrorKind, message: str | None = None, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message or PUBLIC_MESSAGES[kind]}
    if details:
        body["details"] = details
    return body


def _validation_details(errors: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Keep field locations and error types only; input values may hold PII."""
    return [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "type": str(err.get("type", ""))}
        for err in errors
    ]


def sanitize_error(exc: BaseException) -> tuple[int, dict[str, Any]]:
    """Map any exception to ``(status_code, body)`` without leaking internals."""
    if isinstance(exc, AppError):
        if isinstance(exc, ConflictHandled):
            return 500, error_body(ErrorKind.INTERNAL)
        return exc.status_code, error_body(exc.kind, exc.public_message, exc.details)

    if isinstance(exc, RequestValidationError):
        return 400, error_body(ErrorKind.VALIDATION, details=_validation_details(list(exc.errors())))

    if isinstance(exc, PydanticValidationError):
        return 400, error_body(ErrorKind.VALIDATION, details=_validation_details(list(exc.errors())))

    if isinstance(exc, HTTPException):
        kind = _kind_for_status(exc.status_code)
        # HTTPException.detail is written by our own handlers and is public.
        message = exc.detail if isinstance(exc.detail, str) else None
        return exc.status_code, error_body(kind, message)

    if isinstance(exc, NoResultFound):
        return 404, error_body(ErrorKind.NOT_FOUND)

    if isinstance(exc, IntegrityError):
        return 409, error_body(ErrorKind.CONFLICT)

    if isinstance(exc, DBAPIError) and _sqlstate(exc) == "42501":
        # insufficient_privilege / row violates row-level security policy
        return 403, error_body(ErrorKind.FORBIDDEN)

    return 500, error_body(ErrorKind.INTERNAL)


def _kind_for_status(status_code: int) -> ErrorKind:
    for kind, status in STATUS_BY_KIND.items():
        if status == status_code:
            return kind
    return ErrorKind.INTERNAL if status_code >= 500 else ErrorKind.VALIDATION


def _sqlstate(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def redact_for_log(exc: BaseException, context: str) -> dict[str, Any]:
    """Return a log-safe description of an error: context, type and code only."""
    record: dict[str, Any] = {
        "context": context,
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, AppError):
        record["error_kind"] = exc.kind.value
    if isinstance(exc, SQLAlchemyError):
        code = _sqlstate(exc) or getattr(exc, "code", None)
        if code:
            record["error_code"] = code
    return record


def log_error(logger: logging.Logger, context: str, exc: BaseException, **extra: Any) -> None:
    """Log a redacted error record (no message, no stack, no PII)."""
    logger.error("%s failed", context, extra={**redact_mapping(extra), **redact_for_log(exc, context)})
