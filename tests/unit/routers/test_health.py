"""Unit tests for the health endpoint."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from extracts.routers import health


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(health.router)
    return TestClient(app)


def make_pool(fetchval=None):
    mock_conn = AsyncMock()
    mock_conn.fetchval.side_effect = fetchval
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = mock_conn
    return mock_pool


def make_broker(reachable=True, pending=0):
    broker = MagicMock()
    broker.ping = AsyncMock(return_value=reachable)
    broker.pending_count.return_value = pending
    return broker


class TestHealth:
    def test_all_ok(self, client):
        with patch.object(health, "get_db_pool", return_value=make_pool()), patch.object(
            health, "get_code_broker", return_value=make_broker(pending=2)
        ):
            response = client.get("/health")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "ok"
        assert body["database"] == "ok"
        assert body["code_broker"] == "ok"
        assert body["pending_code_requests"] == 2

    def test_nothing_configured(self, client):
        with patch.object(health, "get_db_pool", return_value=None), patch.object(
            health, "get_code_broker", return_value=None
        ):
            body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["database"] == "unavailable"
        assert body["code_broker"] == "unavailable"

    def test_database_error(self, client):
        pool = make_pool(fetchval=ConnectionError("refused"))
        with patch.object(health, "get_db_pool", return_value=pool), patch.object(
            health, "get_code_broker", return_value=make_broker()
        ):
            body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["database"] == "error"

    def test_broker_unreachable(self, client):
        with patch.object(health, "get_db_pool", return_value=make_pool()), patch.object(
            health, "get_code_broker", return_value=make_broker(reachable=False)
        ):
            body = client.get("/health").json()

        assert body["code_broker"] == "error"
