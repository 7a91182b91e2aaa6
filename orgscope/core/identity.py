"""Identity resolution: who is asking.

The identity provider is an opaque collaborator: it is handed the inbound
request and answers with a ``Principal`` or ``None``. Nothing here touches the
database; creating a Profile for a first-time principal is the job of the
``/auth/me`` endpoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import jwt
from starlette.requests import HTTPConnection

from orgscope.core.config import settings
from orgscope.core.errors import Unauthenticated
from orgscope.core.security import decode_identity_token, extract_bearer_token
from orgscope.core.structured_logging import fingerprint

logger = logging.getLogger(__name__)

MAX_PRINCIPAL_ID_LENGTH = 64


@dataclass(frozen=True)
class Principal:
    """Authenticated identity established by the external provider."""

    id: str
    email: str
    name: str | None = None


class IdentityProvider(Protocol):
    def get_current_principal(self, request: HTTPConnection) -> Principal | None:
        ...


class SessionTokenIdentityProvider:
    """Reads the provider session JWT from the bearer header or the session cookie."""

    def __init__(self, cookie_name: str | None = None):
        self.cookie_name = cookie_name or settings.SESSION_COOKIE_NAME

    def _token(self, request: HTTPConnection) -> str | None:
        token = extract_bearer_token(request.headers.get("authorization"))
        if token:
            return token
        return request.cookies.get(self.cookie_name)

    def get_current_principal(self, request: HTTPConnection) -> Principal | None:
        token = self._token(request)
        if not token:
            return None
        try:
            claims = decode_identity_token(token)
        except jwt.InvalidTokenError as exc:
            logger.info(
                "Rejected identity token",
                extra={"token_fp": fingerprint(token), "error_type": type(exc).__name__},
            )
            return None

        subject = claims.get("sub")
        email = claims.get("email")
        if not isinstance(subject, str) or not isinstance(email, str):
            return None
        if not subject or len(subject) > MAX_PRINCIPAL_ID_LENGTH or not email:
            return None
        # Same shape the database context accepts
        if subject != subject.strip() or "\x00" in subject:
            return None
        name = claims.get("name")
        return Principal(
            id=subject,
            email=email.strip().lower(),
            name=name if isinstance(name, str) and name.strip() else None,
        )


def resolve_principal(request: HTTPConnection, provider: IdentityProvider) -> Principal:
    """Return the request's principal or raise ``Unauthenticated``."""
    principal = provider.get_current_principal(request)
    if principal is None:
        raise Unauthenticated()
    return principal
