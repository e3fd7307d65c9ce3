"""Google Calendar connection endpoints.

The connect flow:
  1. GET /api/integrations/google/auth
     - Generates a CSRF state token bound to the calling user (TTL 10 min).
     - Returns the Google consent URL.

  2. GET /api/integrations/google/callback
     - Consumes the state token to recover the user it was issued for.
     - Exchanges the authorization code and stores the credential.

State tokens are one-time-use.  The store is process-local, so the API must
run as a single worker process for the callback to find its state.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from almanac.api.deps import (
    get_credential_manager,
    get_current_user_id,
    get_event_service,
    get_google_client,
)
from almanac.api.models import (
    ApiResponse,
    AuthorizationUrlResponse,
    CalendarSummary,
    GoogleConnectionResult,
)
from almanac.credentials import CredentialManager
from almanac.google_calendar import GoogleCalendarClient
from almanac.models import IntegrationStatus
from almanac.service import UnifiedEventService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])

_STATE_TTL_SECONDS = 600  # 10 minutes

# Maps state token → (user_id, expiry timestamp (monotonic))
_state_store: dict[str, tuple[str, float]] = {}


def _generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


def _store_state(state: str, user_id: str) -> None:
    _state_store[state] = (user_id, time.monotonic() + _STATE_TTL_SECONDS)
    _evict_expired_states()


def _consume_state(state: str) -> str | None:
    """Validate and consume a state token, returning the user it was issued for."""
    _evict_expired_states()
    entry = _state_store.pop(state, None)
    if entry is None:
        return None
    user_id, expiry = entry
    if time.monotonic() >= expiry:
        return None
    return user_id


def _evict_expired_states() -> None:
    now = time.monotonic()
    expired = [k for k, (_, exp) in _state_store.items() if now >= exp]
    for k in expired:
        del _state_store[k]


def _clear_state_store() -> None:
    """Clear all state entries. Used in tests."""
    _state_store.clear()


@router.get("/status", response_model=ApiResponse[IntegrationStatus])
async def integration_status(
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[IntegrationStatus]:
    return ApiResponse[IntegrationStatus](data=await service.get_integration_status(user_id))


@router.get("/google/auth", response_model=ApiResponse[AuthorizationUrlResponse])
async def google_authorization_url(
    user_id: str = Depends(get_current_user_id),
    credentials: CredentialManager = Depends(get_credential_manager),
) -> ApiResponse[AuthorizationUrlResponse]:
    state = _generate_state()
    _store_state(state, user_id)
    logger.info("Google Calendar connect started (state=%s...)", state[:8])
    return ApiResponse[AuthorizationUrlResponse](
        data=AuthorizationUrlResponse(
            authorization_url=credentials.get_authorization_url(state=state),
            state=state,
        )
    )


@router.get("/google/callback", response_model=ApiResponse[GoogleConnectionResult])
async def google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    credentials: CredentialManager = Depends(get_credential_manager),
) -> ApiResponse[GoogleConnectionResult]:
    """Finish the OAuth flow for the user the state token was issued to."""
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        if state:
            _consume_state(state)
        raise HTTPException(status_code=400, detail=f"Google authorization failed: {error}")

    if not state:
        raise HTTPException(status_code=400, detail="Missing OAuth state parameter")
    user_id = _consume_state(state)
    if user_id is None:
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    credential = await credentials.exchange_code_for_credential(code, user_id)
    return ApiResponse[GoogleConnectionResult](
        data=GoogleConnectionResult(connected=True, scope=credential.scope)
    )


def _calendar_summary(entry: dict[str, Any]) -> CalendarSummary | None:
    calendar_id = entry.get("id")
    if not isinstance(calendar_id, str) or not calendar_id:
        return None
    return CalendarSummary(
        id=calendar_id,
        summary=entry.get("summaryOverride") or entry.get("summary"),
        primary=bool(entry.get("primary", False)),
        access_role=entry.get("accessRole"),
        time_zone=entry.get("timeZone"),
    )


@router.get("/google/calendars", response_model=ApiResponse[list[CalendarSummary]])
async def google_calendars(
    user_id: str = Depends(get_current_user_id),
    client: GoogleCalendarClient = Depends(get_google_client),
) -> ApiResponse[list[CalendarSummary]]:
    entries = await client.list_calendars(user_id)
    summaries = [s for s in (_calendar_summary(e) for e in entries) if s is not None]
    return ApiResponse[list[CalendarSummary]](data=summaries)


@router.delete("/google", response_model=ApiResponse[GoogleConnectionResult])
async def google_disconnect(
    user_id: str = Depends(get_current_user_id),
    credentials: CredentialManager = Depends(get_credential_manager),
) -> ApiResponse[GoogleConnectionResult]:
    await credentials.disconnect(user_id)
    return ApiResponse[GoogleConnectionResult](data=GoogleConnectionResult(connected=False))
