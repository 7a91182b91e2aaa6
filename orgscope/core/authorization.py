"""Request authorization wrapper.

Every API route is declared on a router built with ``route_class=AuthorizedRoute``
which wraps the route handler with ``authorize``. For each request the wrapper:

1. resolves the principal (401 without opening a session when absent);
2. opens a principal-bound ``ContextScope`` (sanitized 500 on failure, the
   handler never runs);
3. runs the handler with the scoped session on ``request.state``;
4. commits for responses below 400, rolls back otherwise, maps any error to a
   sanitized ``{error, details?}`` body, and always closes the scope.

``GET /auth/me`` and ``/internal/cron/*`` are the only exclusions;
``audit_route_coverage`` reports any route that is neither wrapped nor excluded.
"""

import logging
from typing import Awaitable, Callable

import anyio
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.concurrency import run_in_threadpool
from starlette.routing import Route

from orgscope.core.errors import (
    ContextEstablishmentError,
    Unauthenticated,
    log_error,
    redact_for_log,
    sanitize_error,
)
from orgscope.core.structured_logging import build_log_context
from orgscope.db.context import ContextScope

logger = logging.getLogger(__name__)

RouteHandler = Callable[[Request], Awaitable[Response]]

# Identity bootstrap: no principal-bound session.
EXEMPT_ROUTES: frozenset[tuple[str, str]] = frozenset({
    ("GET", "/auth/me"),
})
# Shared-secret scheduled jobs.
EXEMPT_PREFIXES: tuple[str, ...] = ("/internal/cron/",)

_IGNORED_METHODS = frozenset({"HEAD", "OPTIONS"})


def error_response(exc: BaseException) -> JSONResponse:
    status_code, body = sanitize_error(exc)
    return JSONResponse(body, status_code=status_code)


def _log_handler_error(exc: Exception, status_code: int, log_context: dict) -> None:
    if status_code >= 500:
        log_error(logger, "request_handler", exc, **log_context)
    else:
        logger.info(
            "Request rejected",
            extra={**log_context, "status_code": status_code, **redact_for_log(exc, "request_handler")},
        )


async def _shielded(fn: Callable[[], None]) -> None:
    """Run blocking teardown in a worker thread, even while the request is cancelled."""
    with anyio.CancelScope(shield=True):
        await run_in_threadpool(fn)


def authorize(handler: RouteHandler) -> RouteHandler:
    """Wrap a route handler with principal resolution and a context-scoped session."""

    async def authorized_handler(request: Request) -> Response:
        provider = request.app.state.identity_provider
        principal = provider.get_current_principal(request)
        if principal is None:
            return error_response(Unauthenticated())

        log_context = build_log_context(
            principal_id=principal.id,
            request_id=request.headers.get("x-request-id"),
            route=request.url.path,
            method=request.method,
        )

        scope: ContextScope | None = None
        try:
            scope = ContextScope(
                principal.id,
                request.app.state.session_factory,
                request.app.state.db_app_role,
            )
            session = await run_in_threadpool(scope.open)
        except Exception as exc:
            if scope is not None:
                await run_in_threadpool(scope.close)
            log_error(logger, "context_establishment", exc, **log_context)
            return error_response(ContextEstablishmentError())
        except BaseException:
            # Cancelled while the scope was opening; open() may have completed.
            if scope is not None:
                await _shielded(scope.close)
            raise

        request.state.principal = principal
        request.state.db = session
        try:
            try:
                response = await handler(request)
            except Exception as exc:
                await run_in_threadpool(scope.rollback)
                status_code, body = sanitize_error(exc)
                _log_handler_error(exc, status_code, log_context)
                return JSONResponse(body, status_code=status_code)
            except BaseException:
                await _shielded(scope.rollback)
                raise

            if response.status_code < 400:
                await run_in_threadpool(scope.commit)
            else:
                await run_in_threadpool(scope.rollback)
            return response
        except Exception as exc:
            log_error(logger, "context_teardown", exc, **log_context)
            return error_response(exc)
        finally:
            request.state.db = None
            await _shielded(scope.close)

    return authorized_handler


class AuthorizedRoute(APIRoute):
    """APIRoute whose handler always runs through ``authorize``."""

    authorized = True

    def get_route_handler(self) -> RouteHandler:
        return authorize(super().get_route_handler())


def is_exempt(method: str, path: str) -> bool:
    return (method, path) in EXEMPT_ROUTES or path.startswith(EXEMPT_PREFIXES)


def _framework_paths(app: FastAPI) -> set[str]:
    paths = {app.openapi_url, app.docs_url, app.redoc_url, app.swagger_ui_oauth2_redirect_url}
    return {path for path in paths if path}


def audit_route_coverage(app: FastAPI) -> list[tuple[str, str]]:
    """
    Return ``(method, path)`` for every route that is neither wrapped nor exempt.

    An empty list means every endpoint either runs through ``authorize`` or is
    on the documented exclusion list.
    """
    framework_paths = _framework_paths(app)
    uncovered: list[tuple[str, str]] = []
    for route in app.routes:
        if not isinstance(route, Route):
            continue
        if not isinstance(route, APIRoute) and route.path in framework_paths:
            continue
        wrapped = getattr(route, "authorized", False)
        for method in sorted(route.methods or {"GET"}):
            if method in _IGNORED_METHODS:
                continue
            if wrapped or is_exempt(method, route.path):
                continue
            uncovered.append((method, route.path))
    return uncovered
