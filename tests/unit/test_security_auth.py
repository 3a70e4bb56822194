"""Tests for the admin token dependency."""

from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from extracts.deps.security import require_admin_token


def make_request(token=None):
    request = MagicMock()
    request.headers = {"X-Admin-Token": token} if token is not None else {}
    request.url.path = "/anomaly-questions/unanswered"
    request.client.host = "127.0.0.1"
    return request


class TestRequireAdminToken:
    def test_valid_token(self, monkeypatch):
        monkeypatch.setenv("ADMIN_TOKEN", "s3cret")
        assert require_admin_token(make_request("s3cret")) is True

    def test_missing_token_raises_401(self, monkeypatch):
        monkeypatch.setenv("ADMIN_TOKEN", "s3cret")

        with pytest.raises(HTTPException) as exc_info:
            require_admin_token(make_request())

        assert exc_info.value.status_code == 401

    def test_wrong_token_raises_403(self, monkeypatch):
        monkeypatch.setenv("ADMIN_TOKEN", "s3cret")

        with pytest.raises(HTTPException) as exc_info:
            require_admin_token(make_request("guess"))

        assert exc_info.value.status_code == 403

    def test_unconfigured_token_raises_403(self, monkeypatch):
        """Nothing is reachable until ADMIN_TOKEN is set."""
        monkeypatch.delenv("ADMIN_TOKEN", raising=False)

        with pytest.raises(HTTPException) as exc_info:
            require_admin_token(make_request("anything"))

        assert exc_info.value.status_code == 403
        assert "not configured" in exc_info.value.detail
