"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from orgscope.core.config import settings
from orgscope.core.errors import AppError, log_error, sanitize_error
from orgscope.core.identity import IdentityProvider, SessionTokenIdentityProvider
from orgscope.core.rate_limit import limiter
from orgscope.core.structured_logging import build_log_context, configure_logging
from orgscope.db.session import SessionLocal
from orgscope.routers import activities, audit, auth, internal, invitations, organization, transactions, users

logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Never ship principal emails or tokens
    )
    logging.info("Sentry initialized for error tracking")


# ============================================================================
# Error handlers (routes outside the authorization wrapper)
# ============================================================================

def _log_context(request: Request) -> dict:
    return build_log_context(
        request_id=request.headers.get("x-request-id"),
        route=request.url.path,
        method=request.method,
    )


async def app_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code, body = sanitize_error(exc)
    if status_code >= 500:
        log_error(logger, "request", exc, **_log_context(request))
    return JSONResponse(body, status_code=status_code)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log_error(logger, "request", exc, **_log_context(request))
    status_code, body = sanitize_error(exc)
    return JSONResponse(body, status_code=status_code)


# ============================================================================
# FastAPI App
# ============================================================================

def create_app(
    identity_provider: IdentityProvider | None = None,
    session_factory=None,
    app_role: str | None = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        identity_provider: resolves the principal of each request
            (defaults to the session-token provider)
        session_factory: callable returning a new Session from the shared pool
        app_role: role assumed with SET LOCAL ROLE in scoped sessions
            (None means settings.DB_APP_ROLE, "" disables it)
    """
    app = FastAPI(
        title="orgscope API",
        description="Organizational management API with row-level authorization",
        version=settings.VERSION,
        docs_url="/docs" if settings.ENV == "dev" else None,
        redoc_url="/redoc" if settings.ENV == "dev" else None,
    )
    app.state.identity_provider = identity_provider or SessionTokenIdentityProvider()
    app.state.session_factory = session_factory or SessionLocal
    app.state.db_app_role = app_role

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, app_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,  # Required for the session cookie
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Idempotency-Key", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Idempotent-Replayed"],
    )

    # Identity bootstrap (exempt from the authorization wrapper)
    app.include_router(auth.router)

    # Principal-scoped API (AuthorizedRoute)
    app.include_router(users.router)
    app.include_router(invitations.router)
    app.include_router(organization.router)
    app.include_router(activities.router)
    app.include_router(transactions.router)
    app.include_router(audit.router)

    # Scheduled jobs (CRON_SECRET)
    app.include_router(internal.router)

    return app


configure_logging()
app = create_app()
