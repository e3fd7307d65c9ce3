"""Google Calendar REST client for the unified event layer.

Every call resolves an authenticated session through the injected
:class:`~almanac.credentials.CredentialManager`; when none can be obtained the
call raises :class:`~almanac.errors.ProviderUnavailableError`.  Each HTTP
request is bounded by its own timeout.  Payloads are provider-native JSON
dicts; translation to and from :class:`~almanac.models.UnifiedEvent` happens
in :mod:`almanac.service`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from almanac.config import DEFAULT_EXTERNAL_MAX_RESULTS, DEFAULT_PROVIDER_TIMEOUT_SECONDS
from almanac.errors import ProviderApiError, ProviderTimeoutError, ProviderUnavailableError
from almanac.google_http import (
    GOOGLE_CALENDAR_API_BASE_URL,
    google_rfc3339,
    is_success,
    safe_google_error_message,
)

if TYPE_CHECKING:
    from almanac.credentials import CredentialManager
    from almanac.models import GoogleSession

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"
MAX_RESULTS_CEILING = 2500

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Deleting an event that is already gone is not an error.
_ALREADY_DELETED_STATUS_CODES = {404, 410}


class GoogleCalendarClient:
    """Thin async client over the Calendar v3 REST API."""

    def __init__(
        self,
        credential_manager: CredentialManager,
        http_client: httpx.AsyncClient,
        *,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        default_max_results: int = DEFAULT_EXTERNAL_MAX_RESULTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._credentials = credential_manager
        self._http_client = http_client
        self._timeout = timeout
        self._default_max_results = default_max_results
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_events(
        self,
        user_id: str,
        *,
        max_results: int | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        calendar_id: str = DEFAULT_CALENDAR_ID,
    ) -> list[dict[str, Any]]:
        """List expanded single events starting from *time_min* (default: now)."""
        limit = self._default_max_results if max_results is None else max_results
        if limit < 1:
            raise ValueError("max_results must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": min(limit, MAX_RESULTS_CEILING),
            "timeMin": google_rfc3339(time_min or self._clock()),
        }
        if time_max is not None:
            params["timeMax"] = google_rfc3339(time_max)

        payload = await self._request_json(
            user_id,
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            params=params,
        )
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise ProviderApiError(
                status_code=200,
                message="Google Calendar list_events response has a non-list items field",
            )
        return [item for item in items if isinstance(item, dict)]

    async def create_event(
        self,
        user_id: str,
        payload: dict[str, Any],
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
    ) -> dict[str, Any]:
        return await self._request_json(
            user_id,
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=payload,
        )

    async def update_event(
        self,
        user_id: str,
        external_id: str,
        partial_payload: dict[str, Any],
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
    ) -> dict[str, Any]:
        """Apply a partial update (PATCH semantics) to an existing event."""
        return await self._request_json(
            user_id,
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{_encode_event_id(external_id)}",
            json_body=partial_payload,
        )

    async def delete_event(
        self,
        user_id: str,
        external_id: str,
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
    ) -> None:
        """Delete an event; an event that is already gone counts as deleted."""
        response = await self._request(
            user_id,
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{_encode_event_id(external_id)}",
        )
        if response.status_code in _ALREADY_DELETED_STATUS_CODES:
            logger.debug(
                "delete_event: event '%s' already gone (%d); treating as success",
                external_id,
                response.status_code,
            )
            return
        if not is_success(response):
            raise ProviderApiError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

    async def list_calendars(self, user_id: str) -> list[dict[str, Any]]:
        payload = await self._request_json(user_id, "GET", "/users/me/calendarList")
        items = payload.get("items", [])
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request_json(
        self,
        user_id: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            user_id, method, path, params=params, json_body=json_body
        )

        if not is_success(response):
            raise ProviderApiError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderApiError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderApiError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _request(
        self,
        user_id: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        session = await self._require_session(user_id)
        response = await self._send(session, method, url, params=params, json_body=json_body)

        if response.status_code == 401:
            session = await self._require_session(user_id, force_refresh=True)
            response = await self._send(session, method, url, params=params, json_body=json_body)

        # Honour Retry-After on 429, exponential backoff otherwise. Each wait is
        # capped at the per-request timeout.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            backoff = min(max(backoff, 0.0), self._timeout)
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._send(session, method, url, params=params, json_body=json_body)
            retry += 1

        return response

    async def _require_session(self, user_id: str, *, force_refresh: bool = False) -> GoogleSession:
        session = await self._credentials.get_authenticated_session(
            user_id, force_refresh=force_refresh
        )
        if session is None:
            raise ProviderUnavailableError("Google Calendar is not connected for this user")
        return session

    async def _send(
        self,
        session: GoogleSession,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await asyncio.wait_for(
                self._http_client.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=session.authorization_header,
                ),
                timeout=self._timeout,
            )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise ProviderTimeoutError(
                f"Google Calendar {method} request timed out after {self._timeout:.1f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                f"Google Calendar request failed: {type(exc).__name__}"
            ) from exc


def _encode_event_id(event_id: str) -> str:
    normalized = event_id.strip()
    if not normalized:
        raise ValueError("event_id must be a non-empty string")
    return quote(normalized, safe="")
