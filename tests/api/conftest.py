"""Shared fixtures for almanac API tests.

``create_app`` is built with an explicit config and no lifespan run, so no
database or Google connection is touched; every dependency is replaced via
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import FastAPI

from almanac.api.app import create_app
from almanac.api.deps import (
    get_credential_manager,
    get_event_parser,
    get_event_service,
    get_google_client,
)
from almanac.api.routers.integrations import _clear_state_store
from almanac.config import AlmanacConfig
from almanac.credentials import CredentialManager
from almanac.google_calendar import GoogleCalendarClient
from almanac.nl_parser import NaturalLanguageEventParser
from almanac.service import UnifiedEventService

USER_HEADERS = {"X-User-Id": "user-1"}


@dataclass
class Mocks:
    service: AsyncMock
    credentials: AsyncMock
    google: AsyncMock
    parser: AsyncMock


@pytest.fixture(autouse=True)
def clear_states():
    """Keep the OAuth state store empty between tests."""
    _clear_state_store()
    yield
    _clear_state_store()


@pytest.fixture
def mocks() -> Mocks:
    credentials = AsyncMock(spec=CredentialManager)
    # get_authorization_url is synchronous.
    credentials.get_authorization_url = MagicMock(
        side_effect=lambda state=None: f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"
    )
    return Mocks(
        service=AsyncMock(spec=UnifiedEventService),
        credentials=credentials,
        google=AsyncMock(spec=GoogleCalendarClient),
        parser=AsyncMock(spec=NaturalLanguageEventParser),
    )


@pytest.fixture
def app(mocks: Mocks) -> FastAPI:
    app = create_app(AlmanacConfig(cors_origins=["http://localhost:5173"]))
    app.dependency_overrides[get_event_service] = lambda: mocks.service
    app.dependency_overrides[get_credential_manager] = lambda: mocks.credentials
    app.dependency_overrides[get_google_client] = lambda: mocks.google
    app.dependency_overrides[get_event_parser] = lambda: mocks.parser
    return app


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
