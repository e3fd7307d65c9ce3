"""Google Calendar credential lifecycle backed by the ``calendar_credentials`` table.

Responsibilities:

- build the OAuth consent URL (offline access, forced consent)
- exchange an authorization code for tokens and upsert one row per
  (user, provider)
- hand out an authenticated session, refreshing the access token when it has
  expired and persisting the refreshed token before returning
- check whether a session actually works against the Calendar API
- forget a user's credentials on disconnect

Session lookups never raise: any refresh, network, or storage failure is
logged and reported as "no session".  Concurrent requests for the same
expired credential may both refresh; Google accepts repeated refreshes with
the same refresh token, so no lock is taken.

Secret material (access_token, refresh_token, client_secret) is never logged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from almanac.config import DEFAULT_DB_COMMAND_TIMEOUT_SECONDS, GoogleConfig
from almanac.errors import MissingAccessTokenError, ProviderApiError, ProviderUnavailableError
from almanac.google_http import (
    GOOGLE_AUTH_URL,
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_CALENDAR_SCOPES,
    GOOGLE_OAUTH_TOKEN_URL,
    GOOGLE_PROVIDER,
    coerce_expires_in_seconds,
    is_success,
    safe_google_error_message,
)
from almanac.models import Credential, GoogleSession

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_credentials"

_CREDENTIALS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    id            BIGSERIAL PRIMARY KEY,
    user_id       TEXT NOT NULL,
    provider      TEXT NOT NULL,
    access_token  TEXT NOT NULL,
    refresh_token TEXT,
    expires_at    TIMESTAMPTZ,
    scope         TEXT,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, provider)
)
"""

_UPSERT_SQL = f"""
INSERT INTO {_TABLE} (user_id, provider, access_token, refresh_token, expires_at, scope)
VALUES ($1, $2, $3, $4, $5, $6)
ON CONFLICT (user_id, provider) DO UPDATE SET
    access_token  = EXCLUDED.access_token,
    refresh_token = COALESCE(EXCLUDED.refresh_token, {_TABLE}.refresh_token),
    expires_at    = EXCLUDED.expires_at,
    scope         = COALESCE(EXCLUDED.scope, {_TABLE}.scope),
    updated_at    = now()
RETURNING user_id, provider, access_token, refresh_token, expires_at, scope,
          created_at, updated_at
"""

_SELECT_SQL = f"""
SELECT user_id, provider, access_token, refresh_token, expires_at, scope,
       created_at, updated_at
FROM {_TABLE}
WHERE user_id = $1 AND provider = $2
"""

_REFRESH_UPDATE_SQL = f"""
UPDATE {_TABLE}
SET access_token  = $3,
    expires_at    = $4,
    refresh_token = COALESCE($5, refresh_token),
    updated_at    = now()
WHERE user_id = $1 AND provider = $2
"""

_DELETE_SQL = f"DELETE FROM {_TABLE} WHERE user_id = $1 AND provider = $2"


async def ensure_credentials_schema(
    pool: asyncpg.Pool, *, timeout: float = DEFAULT_DB_COMMAND_TIMEOUT_SECONDS
) -> None:
    """Ensure ``calendar_credentials`` exists on the target database."""
    await pool.execute(_CREDENTIALS_TABLE_DDL, timeout=timeout)


def _parse_delete_count(result: str) -> int:
    # asyncpg returns "DELETE <n>"
    try:
        return int(result.split()[-1])
    except (IndexError, ValueError):
        return 0


class CredentialManager:
    """Owns the OAuth token lifecycle for the Google Calendar provider.

    Parameters
    ----------
    pool:
        asyncpg pool holding the ``calendar_credentials`` table.
    config:
        Google OAuth app settings (client id/secret, redirect URI, timeout).
    http_client:
        Shared ``httpx.AsyncClient`` used for token and session-check requests.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        config: GoogleConfig,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], datetime] | None = None,
        command_timeout: float = DEFAULT_DB_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._pool = pool
        self._config = config
        self._http_client = http_client
        self._clock = clock or (lambda: datetime.now(UTC))
        self._command_timeout = command_timeout

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def get_authorization_url(self, state: str | None = None) -> str:
        """Build the Google consent URL requesting offline calendar access."""
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",  # Force a refresh token on every grant
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code_for_credential(self, code: str, user_id: str) -> Credential:
        """Exchange an authorization code and persist the resulting credential.

        Raises
        ------
        ProviderApiError
            The token endpoint rejected the code.
        ProviderUnavailableError
            The token endpoint could not be reached.
        MissingAccessTokenError
            The token endpoint answered without an access token.
        """
        payload = await self._post_token_request(
            {
                "code": code,
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "redirect_uri": self._config.redirect_uri,
                "grant_type": "authorization_code",
            }
        )

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise MissingAccessTokenError("No access token received from Google")

        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = None
        scope = payload.get("scope") if isinstance(payload.get("scope"), str) else None
        expires_at = self._clock() + timedelta(
            seconds=coerce_expires_in_seconds(payload.get("expires_in"))
        )

        row = await self._pool.fetchrow(
            _UPSERT_SQL,
            user_id,
            GOOGLE_PROVIDER,
            access_token.strip(),
            refresh_token,
            expires_at,
            scope,
            timeout=self._command_timeout,
        )
        logger.info(
            "Stored Google Calendar credential",
            extra={"user_id": user_id, "has_refresh_token": refresh_token is not None},
        )
        return Credential.model_validate(dict(row))

    async def get_credential(self, user_id: str) -> Credential | None:
        row = await self._pool.fetchrow(
            _SELECT_SQL, user_id, GOOGLE_PROVIDER, timeout=self._command_timeout
        )
        if row is None:
            return None
        return Credential.model_validate(dict(row))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def get_authenticated_session(
        self, user_id: str, *, force_refresh: bool = False
    ) -> GoogleSession | None:
        """Return a usable session for *user_id*, refreshing if expired.

        ``force_refresh`` refreshes even an unexpired token (used after the
        provider rejects it with 401).  Returns None when the user has no
        credential, the refresh fails, or the refreshed token cannot be
        persisted.
        """
        try:
            credential = await self.get_credential(user_id)
        except Exception:
            logger.warning(
                "Failed to load Google credential", extra={"user_id": user_id}, exc_info=True
            )
            return None

        if credential is None or not credential.access_token:
            return None

        if not force_refresh and not credential.is_expired(self._clock()):
            return GoogleSession(
                user_id=user_id,
                access_token=credential.access_token,
                expires_at=credential.expires_at,
            )

        if not credential.refresh_token:
            logger.info(
                "Google credential expired without a refresh token", extra={"user_id": user_id}
            )
            return None

        try:
            access_token, expires_at, rotated_refresh_token = await self._refresh_access_token(
                credential.refresh_token
            )
        except (ProviderApiError, ProviderUnavailableError, MissingAccessTokenError) as exc:
            logger.warning(
                "Google token refresh failed: %s",
                exc,
                extra={"user_id": user_id},
            )
            return None

        try:
            await self._pool.execute(
                _REFRESH_UPDATE_SQL,
                user_id,
                GOOGLE_PROVIDER,
                access_token,
                expires_at,
                rotated_refresh_token,
                timeout=self._command_timeout,
            )
        except Exception:
            logger.warning(
                "Failed to persist refreshed Google token",
                extra={"user_id": user_id},
                exc_info=True,
            )
            return None

        logger.debug("Refreshed Google access token", extra={"user_id": user_id})
        return GoogleSession(user_id=user_id, access_token=access_token, expires_at=expires_at)

    async def has_valid_session(self, user_id: str) -> bool:
        """Check the user's session against the Calendar API; never raises."""
        session = await self.get_authenticated_session(user_id)
        if session is None:
            return False

        try:
            response = await asyncio.wait_for(
                self._http_client.get(
                    f"{GOOGLE_CALENDAR_API_BASE_URL}/users/me/calendarList",
                    params={"maxResults": 1},
                    headers=session.authorization_header,
                ),
                timeout=self._config.provider_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "Google session check failed: %s",
                type(exc).__name__,
                extra={"user_id": user_id},
                exc_info=True,
            )
            return False

        if not is_success(response):
            logger.info(
                "Google session check rejected (%d): %s",
                response.status_code,
                safe_google_error_message(response),
                extra={"user_id": user_id},
            )
            return False
        return True

    async def disconnect(self, user_id: str) -> None:
        result = await self._pool.execute(
            _DELETE_SQL, user_id, GOOGLE_PROVIDER, timeout=self._command_timeout
        )
        logger.info(
            "Disconnected Google Calendar",
            extra={"user_id": user_id, "deleted": _parse_delete_count(result)},
        )

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def _refresh_access_token(
        self, refresh_token: str
    ) -> tuple[str, datetime, str | None]:
        payload = await self._post_token_request(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise MissingAccessTokenError(
                "Google OAuth token response is missing a non-empty access_token"
            )
        expires_at = self._clock() + timedelta(
            seconds=coerce_expires_in_seconds(payload.get("expires_in"))
        )
        rotated = payload.get("refresh_token")
        if not isinstance(rotated, str) or not rotated.strip():
            rotated = None
        return access_token.strip(), expires_at, rotated

    async def _post_token_request(self, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = await asyncio.wait_for(
                self._http_client.post(
                    GOOGLE_OAUTH_TOKEN_URL,
                    data=data,
                    headers={"Accept": "application/json"},
                ),
                timeout=self._config.provider_timeout_seconds,
            )
        except TimeoutError as exc:
            raise ProviderUnavailableError("Google OAuth token request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                f"Google OAuth token request failed: {type(exc).__name__}"
            ) from exc

        if not is_success(response):
            raise ProviderApiError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderApiError(
                status_code=response.status_code,
                message="Google OAuth token endpoint returned invalid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderApiError(
                status_code=response.status_code,
                message="Google OAuth token endpoint returned an unexpected payload",
            )
        return payload
