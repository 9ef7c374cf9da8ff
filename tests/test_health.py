"""Health check and public fee schedule endpoints."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_fee_schedule_is_public(client: AsyncClient) -> None:
    resp = await client.get("/fees")
    assert resp.status_code == 200
    body = resp.json()
    assert body["platform_fee_percent"] == "10"
    assert body["charged_to"] == "payee"
    assert body["charged_at"] == "capture"
