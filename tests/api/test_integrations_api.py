"""Tests for the /api/integrations endpoints (status and the Google connect flow)."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest

from almanac.api.routers import integrations as integrations_module
from almanac.api.routers.integrations import (
    _STATE_TTL_SECONDS,
    _consume_state,
    _state_store,
    _store_state,
)
from almanac.errors import MissingAccessTokenError, ProviderApiError
from almanac.models import Credential, IntegrationStatus
from tests.api.conftest import USER_HEADERS

pytestmark = pytest.mark.unit


def _credential(scope: str | None = "https://www.googleapis.com/auth/calendar.events"):
    return Credential(
        user_id="user-1", provider="google_calendar", access_token="ya29.x", scope=scope
    )


class TestStateStore:
    def test_state_is_bound_to_user_and_single_use(self):
        _store_state("s1", "user-1")
        assert _consume_state("s1") == "user-1"
        assert _consume_state("s1") is None

    def test_expired_state_is_rejected(self):
        _store_state("s1", "user-1")
        later = time.monotonic() + _STATE_TTL_SECONDS + 1
        with patch.object(integrations_module.time, "monotonic", return_value=later):
            assert _consume_state("s1") is None
        assert "s1" not in _state_store


class TestStatus:
    async def test_status(self, client, mocks):
        mocks.service.get_integration_status.return_value = IntegrationStatus(
            has_local_events=True, has_google_integration=False, total_integrations=1
        )
        response = await client.get("/api/integrations/status", headers=USER_HEADERS)
        assert response.status_code == 200
        assert response.json()["data"] == {
            "has_local_events": True,
            "has_google_integration": False,
            "total_integrations": 1,
        }
        mocks.service.get_integration_status.assert_awaited_once_with("user-1")


class TestGoogleConnectFlow:
    async def test_auth_url_issues_state_for_user(self, client, mocks):
        response = await client.get("/api/integrations/google/auth", headers=USER_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["authorization_url"].endswith(f"state={data['state']}")
        assert _state_store[data["state"]][0] == "user-1"

    async def test_auth_url_requires_user(self, client):
        response = await client.get("/api/integrations/google/auth")
        assert response.status_code == 401

    async def test_callback_exchanges_code_for_state_owner(self, client, mocks):
        mocks.credentials.exchange_code_for_credential.return_value = _credential()
        auth = await client.get("/api/integrations/google/auth", headers=USER_HEADERS)
        state = auth.json()["data"]["state"]

        response = await client.get(
            "/api/integrations/google/callback", params={"code": "4/abc", "state": state}
        )

        assert response.status_code == 200
        assert response.json()["data"] == {
            "connected": True,
            "scope": "https://www.googleapis.com/auth/calendar.events",
        }
        mocks.credentials.exchange_code_for_credential.assert_awaited_once_with(
            "4/abc", "user-1"
        )

    async def test_state_cannot_be_replayed(self, client, mocks):
        mocks.credentials.exchange_code_for_credential.return_value = _credential()
        _store_state("replay", "user-1")

        first = await client.get(
            "/api/integrations/google/callback", params={"code": "4/a", "state": "replay"}
        )
        second = await client.get(
            "/api/integrations/google/callback", params={"code": "4/b", "state": "replay"}
        )

        assert first.status_code == 200
        assert second.status_code == 400
        assert mocks.credentials.exchange_code_for_credential.await_count == 1

    @pytest.mark.parametrize(
        "params",
        [
            {"code": "4/abc"},
            {"code": "4/abc", "state": "unknown"},
            {"error": "access_denied", "state": "s1"},
        ],
    )
    async def test_callback_rejections(self, client, mocks, params):
        response = await client.get("/api/integrations/google/callback", params=params)
        assert response.status_code == 400
        mocks.credentials.exchange_code_for_credential.assert_not_awaited()

    async def test_provider_error_consumes_state(self, client, mocks):
        _store_state("s1", "user-1")
        await client.get(
            "/api/integrations/google/callback", params={"error": "access_denied", "state": "s1"}
        )
        assert "s1" not in _state_store

    async def test_missing_code(self, client, mocks):
        _store_state("s1", "user-1")
        response = await client.get("/api/integrations/google/callback", params={"state": "s1"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing authorization code"

    async def test_rejected_code_maps_to_bad_gateway(self, client, mocks):
        mocks.credentials.exchange_code_for_credential.side_effect = ProviderApiError(
            status_code=400, message="Bad Request"
        )
        _store_state("s1", "user-1")
        response = await client.get(
            "/api/integrations/google/callback", params={"code": "4/bad", "state": "s1"}
        )
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "PROVIDER_ERROR"

    async def test_missing_access_token(self, client, mocks):
        mocks.credentials.exchange_code_for_credential.side_effect = MissingAccessTokenError(
            "No access token received from Google"
        )
        _store_state("s1", "user-1")
        response = await client.get(
            "/api/integrations/google/callback", params={"code": "4/x", "state": "s1"}
        )
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "MISSING_ACCESS_TOKEN"


class TestCalendarsAndDisconnect:
    async def test_lists_calendars(self, client, mocks):
        mocks.google.list_calendars.return_value = [
            {
                "id": "primary",
                "summary": "Me",
                "primary": True,
                "accessRole": "owner",
                "timeZone": "Europe/Berlin",
            },
            {"id": "team@group.calendar.google.com", "summaryOverride": "Team"},
            {"summary": "missing id"},
        ]

        response = await client.get("/api/integrations/google/calendars", headers=USER_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert [c["id"] for c in data] == ["primary", "team@group.calendar.google.com"]
        assert data[0]["access_role"] == "owner"
        assert data[1]["summary"] == "Team"
        assert data[1]["primary"] is False

    async def test_disconnect(self, client, mocks):
        response = await client.delete("/api/integrations/google", headers=USER_HEADERS)
        assert response.status_code == 200
        assert response.json()["data"] == {"connected": False, "scope": None}
        mocks.credentials.disconnect.assert_awaited_once_with("user-1")
