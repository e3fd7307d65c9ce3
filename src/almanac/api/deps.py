"""Service wiring and FastAPI dependencies for the almanac API.

``init_services()`` builds the full object graph (pool, HTTP client, stores,
provider client, aggregation service, parser) once at startup;
``shutdown_services()`` releases it.  Route handlers receive the pieces
through the ``get_*`` dependency functions, which tests replace with
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from fastapi import Header, HTTPException
from openai import AsyncOpenAI

from almanac.config import AlmanacConfig
from almanac.core.logging import set_user_context
from almanac.credentials import CredentialManager
from almanac.db import Database
from almanac.google_calendar import GoogleCalendarClient
from almanac.local_store import LocalEventStore
from almanac.nl_parser import NaturalLanguageEventParser
from almanac.service import UnifiedEventService

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


@dataclass
class AlmanacServices:
    """Everything a request handler may need, built once per process."""

    config: AlmanacConfig
    database: Database
    http_client: httpx.AsyncClient
    local_store: LocalEventStore
    credential_manager: CredentialManager
    google_client: GoogleCalendarClient
    event_service: UnifiedEventService
    event_parser: NaturalLanguageEventParser | None = None


_services: AlmanacServices | None = None


async def init_services(config: AlmanacConfig) -> AlmanacServices:
    """Connect to PostgreSQL, ensure the schema exists and build the services."""
    global _services

    database = Database(config.db)
    pool = await database.open()
    http_client = httpx.AsyncClient(timeout=config.google.provider_timeout_seconds)
    try:
        _services = _build_services(config, database, pool, http_client)
    except Exception:
        await http_client.aclose()
        await database.close()
        raise
    return _services


def _build_services(
    config: AlmanacConfig,
    database: Database,
    pool: asyncpg.Pool,
    http_client: httpx.AsyncClient,
) -> AlmanacServices:
    local_store = LocalEventStore(
        pool,
        timezone=config.timezone,
        command_timeout=config.db.command_timeout_seconds,
    )
    credential_manager = CredentialManager(
        pool,
        config.google,
        http_client,
        command_timeout=config.db.command_timeout_seconds,
    )
    google_client = GoogleCalendarClient(
        credential_manager,
        http_client,
        timeout=config.google.provider_timeout_seconds,
        default_max_results=config.google.max_results,
    )
    event_service = UnifiedEventService(
        local_store,
        google_client,
        credential_manager,
        timezone=config.timezone,
        default_calendar_id=config.google.default_calendar_id,
        external_timeout=config.google.read_budget_seconds,
    )

    event_parser: NaturalLanguageEventParser | None = None
    if config.llm.api_key:
        event_parser = NaturalLanguageEventParser(
            AsyncOpenAI(api_key=config.llm.api_key),
            local_store,
            model=config.llm.model,
            timezone=config.timezone,
            temperature=config.llm.temperature,
        )
    else:
        logger.info("No LLM API key configured; natural-language parsing disabled")

    if not config.google.is_configured:
        logger.warning("Google OAuth client is not configured; external events unavailable")

    return AlmanacServices(
        config=config,
        database=database,
        http_client=http_client,
        local_store=local_store,
        credential_manager=credential_manager,
        google_client=google_client,
        event_service=event_service,
        event_parser=event_parser,
    )


async def shutdown_services() -> None:
    global _services
    if _services is None:
        return
    await _services.http_client.aclose()
    await _services.database.close()
    _services = None


def _require_services() -> AlmanacServices:
    if _services is None:
        raise RuntimeError("Almanac services are not initialized")
    return _services


def get_event_service() -> UnifiedEventService:
    return _require_services().event_service


def get_credential_manager() -> CredentialManager:
    return _require_services().credential_manager


def get_google_client() -> GoogleCalendarClient:
    return _require_services().google_client


def get_event_parser() -> NaturalLanguageEventParser:
    parser = _require_services().event_parser
    if parser is None:
        raise HTTPException(
            status_code=503,
            detail="Natural-language event parsing is not configured",
        )
    return parser


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Resolve the acting user from the ``X-User-Id`` header.

    Authentication happens upstream; this layer only trusts the header.
    """
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user_id = x_user_id.strip()
    set_user_context(user_id)
    return user_id
