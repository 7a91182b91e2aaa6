"""FastAPI dependencies for identity, scoped database access and cron auth."""

from typing import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from orgscope.core.config import settings
from orgscope.core.errors import Forbidden, InternalError, Unauthenticated
from orgscope.core.identity import Principal
from orgscope.core.security import extract_bearer_token, verify_secret
from orgscope.db.models import Profile
from orgscope.db.rls import PrincipalScope


def get_scoped_db(request: Request) -> Session:
    """
    Principal-bound session opened by the authorization wrapper.

    Only available on routes declared with AuthorizedRoute; commit and
    rollback belong to the wrapper.
    """
    db = getattr(request.state, "db", None)
    if db is None:
        raise InternalError(internal="route is not wrapped by authorize()")
    return db


def get_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise Unauthenticated()
    return principal


def get_principal_scope(
    request: Request,
    db: Session = Depends(get_scoped_db),
    principal: Principal = Depends(get_principal),
) -> PrincipalScope:
    """Role and scope of the caller, read through row-level security (self-read)."""
    cached = getattr(request.state, "principal_scope", None)
    if cached is not None:
        return cached
    profile = db.get(Profile, principal.id)
    if profile is None:
        raise Forbidden("Profile not found; sign in again to create it")
    scope = PrincipalScope.from_profile(profile)
    request.state.principal_scope = scope
    return scope


def require_active_scope(scope: PrincipalScope = Depends(get_principal_scope)) -> PrincipalScope:
    if scope.role is None:
        raise Forbidden("Account is not active")
    return scope


def get_system_db(request: Request) -> Generator[Session, None, None]:
    """
    Owner-level session without a bound principal.

    Used only by the identity bootstrap endpoint and cron jobs, which must
    commit explicitly.
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def require_cron_secret(request: Request) -> None:
    """
    Verify ``Authorization: Bearer <CRON_SECRET>``.

    Raises:
        InternalError: CRON_SECRET not configured (500)
        Unauthenticated: missing or wrong secret (401)
    """
    if not settings.CRON_SECRET:
        raise InternalError(internal="CRON_SECRET not configured")
    provided = extract_bearer_token(request.headers.get("authorization"))
    if not verify_secret(provided, settings.CRON_SECRET):
        raise Unauthenticated("Invalid cron secret")


def require_roles(allowed_roles: list):
    """
    Dependency factory for role-based authorization.

    Uses enum values (not strings) to prevent drift. Row-level security still
    filters what the allowed roles can see.

    Usage:
        @router.get("/audit-logs", dependencies=[Depends(require_roles([Role.NATIONAL_COORDINATOR]))])
    """
    def dependency(scope: PrincipalScope = Depends(require_active_scope)) -> PrincipalScope:
        if scope.role not in allowed_roles:
            raise Forbidden(f"Role '{scope.role.value}' not authorized for this action")
        return scope
    return dependency
