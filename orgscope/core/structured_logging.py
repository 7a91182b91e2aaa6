"""Structured logging helpers (PII-safe)."""

import hashlib
import logging
from typing import Any

# Keys that must never appear in a log record, whatever their source.
REDACTED_KEYS = frozenset(
    {"authorization", "cookie", "token", "password", "secret", "email", "idempotency_key"}
)


def build_log_context(
    *,
    principal_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
    status_code: int | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if principal_id:
        context["principal_id"] = principal_id
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    if status_code is not None:
        context["status_code"] = status_code
    return context


def redact_mapping(values: dict[str, Any]) -> dict[str, Any]:
    """Drop values whose key names a secret or personal identifier."""
    return {
        key: ("[redacted]" if key.lower() in REDACTED_KEYS else value)
        for key, value in values.items()
    }


def fingerprint(value: str | None) -> str:
    """Short stable hash for correlating secrets/tokens in logs without exposing them."""
    if not value:
        return ""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the API process."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
