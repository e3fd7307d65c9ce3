"""API error handling: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``NotFoundError`` → 404 Not Found
- ``UserNotFoundError`` / ``EventParseError`` → 422 Unprocessable Entity
- ``InvalidEventIdError`` / ``ValueError`` → 400 Bad Request
- ``ProviderApiError`` / ``MissingAccessTokenError`` → 502 Bad Gateway
- ``ProviderUnavailableError`` → 503 Service Unavailable
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from almanac.api.models import ErrorDetail, ErrorResponse
from almanac.errors import (
    EventParseError,
    InvalidEventIdError,
    MissingAccessTokenError,
    NotFoundError,
    ProviderApiError,
    ProviderUnavailableError,
    UserNotFoundError,
)

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str, **details: object) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(code=code, message=message, details=details or None)
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(404, "EVENT_NOT_FOUND", str(exc))


async def _handle_user_not_found(request: Request, exc: UserNotFoundError) -> JSONResponse:
    logger.info("Event write for unknown user: %s", exc.user_id)
    return _error_response(422, "USER_NOT_FOUND", str(exc))


async def _handle_parse_error(request: Request, exc: EventParseError) -> JSONResponse:
    return _error_response(422, "EVENT_PARSE_FAILED", str(exc))


async def _handle_invalid_event_id(request: Request, exc: InvalidEventIdError) -> JSONResponse:
    return _error_response(400, "INVALID_EVENT_ID", str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


async def _handle_provider_api_error(request: Request, exc: ProviderApiError) -> JSONResponse:
    logger.warning("Google Calendar rejected request (%d): %s", exc.status_code, exc.message)
    return _error_response(
        502, "PROVIDER_ERROR", exc.message, provider_status=exc.status_code
    )


async def _handle_missing_token(request: Request, exc: MissingAccessTokenError) -> JSONResponse:
    logger.warning("Google OAuth exchange returned no access token")
    return _error_response(502, "MISSING_ACCESS_TOKEN", str(exc))


async def _handle_provider_unavailable(
    request: Request, exc: ProviderUnavailableError
) -> JSONResponse:
    logger.info("Google Calendar unavailable: %s", exc)
    return _error_response(503, "PROVIDER_UNAVAILABLE", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Starlette resolves handlers along the exception's MRO, so the more
    specific domain errors win over ``ValueError``.
    """
    app.add_exception_handler(NotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(UserNotFoundError, _handle_user_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(EventParseError, _handle_parse_error)  # type: ignore[arg-type]
    app.add_exception_handler(InvalidEventIdError, _handle_invalid_event_id)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderApiError, _handle_provider_api_error)  # type: ignore[arg-type]
    app.add_exception_handler(MissingAccessTokenError, _handle_missing_token)  # type: ignore[arg-type]
    app.add_exception_handler(
        ProviderUnavailableError,
        _handle_provider_unavailable,  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
