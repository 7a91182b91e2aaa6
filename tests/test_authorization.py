"""Tests for the request authorization wrapper."""
import threading
from unittest.mock import MagicMock

import anyio
import pytest
from fastapi import APIRouter, Depends, FastAPI
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.orm import Session

from orgscope.core.authorization import AuthorizedRoute, _shielded
from orgscope.core.config import settings
from orgscope.core.deps import get_principal, get_scoped_db
from orgscope.core.errors import Forbidden
from orgscope.core.identity import Principal
from orgscope.db.context import ContextScope
from orgscope.db.session import RLS_PRINCIPAL_KEY

INSERT_NOTE = text("INSERT INTO notes (body) VALUES ('note')")


class NotePayload(BaseModel):
    body: str = Field(min_length=1)


def build_app(provider, session_factory) -> FastAPI:
    router = APIRouter(route_class=AuthorizedRoute)
    calls: list[str] = []

    @router.post("/notes", status_code=201)
    def create_note(db: Session = Depends(get_scoped_db)):
        calls.append("create_note")
        db.execute(INSERT_NOTE)
        return {"created": True}

    @router.post("/notes/forbidden")
    def forbidden_note(db: Session = Depends(get_scoped_db)):
        db.execute(INSERT_NOTE)
        raise Forbidden("Not your site")

    @router.post("/notes/crash")
    def crash(db: Session = Depends(get_scoped_db)):
        db.execute(INSERT_NOTE)
        raise RuntimeError("boom for user-secret@example.org")

    @router.post("/notes/declined")
    def declined(db: Session = Depends(get_scoped_db)):
        db.execute(INSERT_NOTE)
        return JSONResponse({"error": "declined"}, status_code=409)

    @router.post("/notes/validated")
    def validated(payload: NotePayload, db: Session = Depends(get_scoped_db)):
        calls.append("validated")
        return {"body": payload.body}

    @router.get("/whoami")
    def whoami(
        db: Session = Depends(get_scoped_db),
        principal: Principal = Depends(get_principal),
    ):
        bound = db.execute(
            text("SELECT current_setting(:name, true)"),
            {"name": settings.RLS_SETTING_NAME},
        ).scalar()
        return {"principal": principal.id, "bound": bound}

    app = FastAPI()
    app.state.identity_provider = provider
    app.state.session_factory = session_factory
    app.state.db_app_role = ""
    app.state.calls = calls
    app.include_router(router)
    return app


@pytest.fixture
def wrapped_app(test_auth, session_factory):
    return build_app(test_auth.provider, session_factory)


@pytest.fixture
async def wrapped_client(wrapped_app):
    async with AsyncClient(transport=ASGITransport(app=wrapped_app), base_url="http://test") as c:
        yield c


# =============================================================================
# Principal resolution
# =============================================================================

@pytest.mark.asyncio
async def test_missing_principal_returns_401_without_opening_session(make_provider):
    factory = MagicMock()
    app = build_app(make_provider(None), factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        response = await c.post("/notes")

    assert response.status_code == 401
    assert response.json() == {"error": "Authentication required"}
    factory.assert_not_called()
    assert app.state.calls == []


@pytest.mark.asyncio
async def test_handler_sees_bound_principal(wrapped_client, test_auth):
    response = await wrapped_client.get("/whoami")

    assert response.status_code == 200
    assert response.json() == {
        "principal": test_auth.principal.id,
        "bound": test_auth.principal.id,
    }


@pytest.mark.asyncio
async def test_context_failure_returns_500_and_skips_handler(test_auth, broken_session_factory):
    app = build_app(test_auth.provider, broken_session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        response = await c.post("/notes")

    assert response.status_code == 500
    assert response.json() == {"error": "An internal error occurred"}
    assert app.state.calls == []


# =============================================================================
# Commit / rollback
# =============================================================================

@pytest.mark.asyncio
async def test_success_commits(wrapped_client, note_count):
    response = await wrapped_client.post("/notes")

    assert response.status_code == 201
    assert response.json() == {"created": True}
    assert note_count() == 1


@pytest.mark.asyncio
async def test_app_error_is_mapped_and_rolled_back(wrapped_client, note_count):
    response = await wrapped_client.post("/notes/forbidden")

    assert response.status_code == 403
    assert response.json() == {"error": "Not your site"}
    assert note_count() == 0


@pytest.mark.asyncio
async def test_unexpected_error_is_sanitized_and_rolled_back(wrapped_client, note_count):
    response = await wrapped_client.post("/notes/crash")

    assert response.status_code == 500
    assert response.json() == {"error": "An internal error occurred"}
    assert "boom" not in response.text
    assert "example.org" not in response.text
    assert note_count() == 0


@pytest.mark.asyncio
async def test_error_status_response_rolls_back(wrapped_client, note_count):
    response = await wrapped_client.post("/notes/declined")

    assert response.status_code == 409
    assert note_count() == 0


@pytest.mark.asyncio
async def test_validation_error_is_sanitized(wrapped_client, wrapped_app):
    response = await wrapped_client.post("/notes/validated", json={"body": ""})

    assert response.status_code == 400
    data = response.json()
    assert data["error"] == "Invalid data provided"
    assert data["details"][0]["field"] == "body.body"
    assert "validated" not in wrapped_app.state.calls


@pytest.mark.asyncio
async def test_connection_mark_cleared_on_every_path(wrapped_client, sqlite_engine):
    for path in ("/notes", "/notes/forbidden", "/notes/crash", "/notes/declined"):
        await wrapped_client.post(path)
        with sqlite_engine.connect() as conn:
            assert RLS_PRINCIPAL_KEY not in conn.info


@pytest.mark.asyncio
async def test_principal_not_visible_to_next_request(wrapped_app, make_provider):
    first = Principal(id="user_first", email="first@example.org")
    second = Principal(id="user_second", email="second@example.org")

    async with AsyncClient(transport=ASGITransport(app=wrapped_app), base_url="http://test") as c:
        wrapped_app.state.identity_provider = make_provider(first)
        assert (await c.get("/whoami")).json()["bound"] == "user_first"
        wrapped_app.state.identity_provider = make_provider(second)
        assert (await c.get("/whoami")).json()["bound"] == "user_second"


# =============================================================================
# Teardown
# =============================================================================

@pytest.mark.asyncio
async def test_teardown_runs_in_worker_threads(wrapped_client, monkeypatch):
    loop_thread = threading.get_ident()
    seen: list[tuple[str, int]] = []

    for name in ("rollback", "close"):
        original = getattr(ContextScope, name)

        def record(self, _name=name, _original=original):
            seen.append((_name, threading.get_ident()))
            return _original(self)

        monkeypatch.setattr(ContextScope, name, record)

    response = await wrapped_client.post("/notes/forbidden")

    assert response.status_code == 403
    assert {name for name, _ in seen} == {"rollback", "close"}
    assert all(ident != loop_thread for _, ident in seen)


@pytest.mark.asyncio
async def test_shielded_teardown_completes_when_cancelled():
    ran: list[int] = []
    with anyio.CancelScope() as cancel_scope:
        cancel_scope.cancel()
        await _shielded(lambda: ran.append(threading.get_ident()))

    assert len(ran) == 1
    assert ran[0] != threading.get_ident()
