import pytest


@pytest.mark.asyncio
async def test_unknown_route_returns_sanitized_404(client):
    response = await client.get("/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"error": "Not Found"}


@pytest.mark.asyncio
async def test_no_unauthenticated_liveness_route(client):
    response = await client.get("/health")
    assert response.status_code == 404
