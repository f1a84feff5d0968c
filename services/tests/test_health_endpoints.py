from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from services.common import ServiceSettings
from services.price_change_service.app.main import SERVICE_NAME, create_app


@pytest.mark.asyncio
async def test_health_endpoint_returns_ok(tmp_path) -> None:
    settings = ServiceSettings(
        enable_tracing=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'health.db'}",
        database_auto_create=True,
    )
    app = create_app(settings)
    assert app.title == SERVICE_NAME

    async with lifespan(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
            ready = await client.get("/health/ready")
            metrics = await client.get("/metrics")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert ready.json() == {"status": "ok", "database": "ok"}
    assert metrics.status_code == 200
    assert "price_change_transitions_total" in metrics.text


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield
