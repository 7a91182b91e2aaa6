"""Tests for the shared-secret cron endpoints."""
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from orgscope.core.config import settings
from orgscope.main import create_app
from orgscope.services import idempotency_service, invitation_service


@pytest.fixture
def system_db():
    return MagicMock()


@pytest.fixture
async def cron_client(make_provider, system_db):
    # No principal: cron jobs must not depend on identity.
    app = create_app(identity_provider=make_provider(None), session_factory=lambda: system_db)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_cron_without_configured_secret_is_500(cron_client, system_db, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "")

    response = await cron_client.post(
        "/internal/cron/purge-idempotency",
        headers={"Authorization": "Bearer anything"},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "An internal error occurred"}
    system_db.commit.assert_not_called()


@pytest.mark.asyncio
async def test_cron_with_wrong_secret_is_401(cron_client, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")

    response = await cron_client.post(
        "/internal/cron/purge-idempotency",
        headers={"Authorization": "Bearer wrong"},
    )
    assert response.status_code == 401

    response = await cron_client.post("/internal/cron/purge-idempotency")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_purge_idempotency(cron_client, system_db, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")
    monkeypatch.setattr(idempotency_service, "purge_expired", lambda db: 3)

    response = await cron_client.post(
        "/internal/cron/purge-idempotency",
        headers={"Authorization": "Bearer cron-secret"},
    )

    assert response.status_code == 200
    assert response.json() == {"deleted": 3}
    system_db.commit.assert_called_once()


@pytest.mark.asyncio
async def test_mark_expired_invitations(cron_client, system_db, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")
    monkeypatch.setattr(invitation_service, "mark_expired", lambda db: 2)

    response = await cron_client.post(
        "/internal/cron/mark-expired-invitations",
        headers={"Authorization": "Bearer cron-secret"},
    )

    assert response.status_code == 200
    assert response.json() == {"expired": 2}
    system_db.commit.assert_called_once()
