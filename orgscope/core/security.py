"""Security utilities for identity-provider session tokens and shared secrets."""

import hmac
from datetime import datetime, timedelta, timezone

import jwt

from orgscope.core.config import settings


# =============================================================================
# Identity provider session token (JWT in cookie or bearer header)
# =============================================================================

def _decode_options() -> dict:
    options: dict = {"require": ["sub", "exp"]}
    if not settings.IDP_AUDIENCE:
        options["verify_aud"] = False
    return options


def decode_identity_token(token: str) -> dict:
    """
    Decode and verify an identity-provider session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error: jwt.InvalidTokenError | None = None
    for secret in settings.idp_jwt_secrets:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[settings.IDP_JWT_ALGORITHM],
                audience=settings.IDP_AUDIENCE or None,
                issuer=settings.IDP_ISSUER or None,
                options=_decode_options(),
            )
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error or jwt.InvalidTokenError("No signing secret configured")


def create_identity_token(
    subject: str,
    email: str,
    name: str | None = None,
    expires_minutes: int = 60,
) -> str:
    """
    Mint an identity token in the provider's format.

    Used by the CLI and tests; production tokens are issued by the provider.
    """
    now = datetime.now(timezone.utc)
    payload: dict = {
        "sub": subject,
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if name:
        payload["name"] = name
    if settings.IDP_ISSUER:
        payload["iss"] = settings.IDP_ISSUER
    if settings.IDP_AUDIENCE:
        payload["aud"] = settings.IDP_AUDIENCE
    return jwt.encode(payload, settings.IDP_JWT_SECRET, algorithm=settings.IDP_JWT_ALGORITHM)


# =============================================================================
# Shared secrets (scheduled jobs)
# =============================================================================

def verify_secret(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison; empty values never match."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]
