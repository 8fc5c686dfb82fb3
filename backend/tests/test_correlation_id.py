# tests/test_correlation_id.py
"""
Tests for the request context middleware and context management.
"""

import pytest
from fastapi.testclient import TestClient

from coinfolio.database import get_db
from coinfolio.main import app
from coinfolio.utils.context import (
    clear_correlation_id,
    clear_user_id,
    get_correlation_id,
    get_user_id,
    set_correlation_id,
    set_user_id,
)


class TestRequestContext:
    """Tests for context functions."""

    def test_get_returns_none_when_not_set(self):
        clear_correlation_id()
        assert get_correlation_id() is None

    def test_set_and_get_correlation_id(self):
        set_correlation_id("test-correlation-123")
        assert get_correlation_id() == "test-correlation-123"
        clear_correlation_id()

    def test_set_and_clear_user_id(self):
        set_user_id("user-42")
        assert get_user_id() == "user-42"
        clear_user_id()
        assert get_user_id() is None


class TestCorrelationIdMiddleware:
    """Tests for CorrelationIdMiddleware."""

    @pytest.fixture
    def client(self, db):
        """Create test client with database override."""
        def override_get_db():
            yield db

        app.dependency_overrides[get_db] = override_get_db
        with TestClient(app) as c:
            yield c
        app.dependency_overrides.clear()

    def test_generates_correlation_id(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert len(response.headers["X-Correlation-ID"]) == 36

    def test_echoes_incoming_correlation_id(self, client):
        response = client.get("/health/live", headers={"X-Correlation-ID": "trace-abc"})

        assert response.headers["X-Correlation-ID"] == "trace-abc"

    def test_falls_back_to_request_id(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Correlation-ID"] == "req-123"

    def test_different_requests_get_different_ids(self, client):
        first = client.get("/health/live").headers["X-Correlation-ID"]
        second = client.get("/health/live").headers["X-Correlation-ID"]

        assert first != second

    def test_context_is_cleared_after_request(self, client):
        client.get("/health/live", headers={"X-Correlation-ID": "leak-check", "X-User-Id": "u1"})

        assert get_correlation_id() is None
        assert get_user_id() is None

    def test_header_on_error_responses(self, client):
        response = client.get("/holdings", headers={"X-Correlation-ID": "err-1"})

        assert response.status_code == 401
        assert response.headers["X-Correlation-ID"] == "err-1"
