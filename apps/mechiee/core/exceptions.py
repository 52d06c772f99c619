from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR

logger = logging.getLogger(__name__)


def _error_payload(
    *,
    error: str,
    type_: str,
    code: str | None = None,
    details: Any | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": error, "code": code, "type": type_}
    if details is not None:
        payload["details"] = details
    return payload


class MechieeException(Exception):
    """Base exception for the dispatch-and-room core.

    Raised from service functions and translated at the edge: FastAPI exception
    handlers for HTTP callers, `error` events for live connections.
    """

    status_code: int = 400
    default_code: str | None = None

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: Any | None = None,
    ) -> None:
        self.message = message
        self.code = code if code is not None else self.default_code
        self.status_code = status_code if status_code is not None else self.status_code
        self.details = details
        super().__init__(message)

    def to_event(self) -> dict[str, Any]:
        """Payload for the `error` event sent to a single connection."""
        event: dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details is not None:
            event["details"] = self.details
        return event


class ValidationError(MechieeException):
    """Malformed or missing input to a creation call. Nothing is persisted."""

    status_code = 422
    default_code = "validation_error"


class NotFoundError(MechieeException):
    status_code = 404
    default_code = "not_found"


class NoCoverageError(MechieeException):
    """No garage lies within the dispatch radius of the booking."""

    status_code = 404
    default_code = "no_coverage"


class AlreadyResolvedError(MechieeException):
    """The accept race was lost (or the booking is no longer pending).

    Callers branch on this; it is not an anomaly and must not be retried blindly.
    """

    status_code = 409
    default_code = "already_resolved"


class DuplicateTicketError(MechieeException):
    """The caller already owns an open support ticket."""

    status_code = 409
    default_code = "duplicate_ticket"

    def __init__(self, message: str, *, ticket_id: str, details: Any | None = None) -> None:
        payload = {"chatId": ticket_id, "roomId": f"admin_support_{ticket_id}"}
        if isinstance(details, dict):
            payload.update(details)
        super().__init__(message, details=payload)
        self.ticket_id = ticket_id


class PermissionDeniedError(MechieeException):
    status_code = 403
    default_code = "permission_denied"


def register_exception_handlers(app: FastAPI) -> None:
    """Register the service's exception handlers on a FastAPI app."""

    @app.exception_handler(MechieeException)
    async def _mechiee_exception_handler(_request: Request, exc: MechieeException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(
                error=exc.message,
                code=exc.code,
                type_=exc.__class__.__name__,
                details=exc.details,
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_payload(
                error="Validation error",
                code="validation_error",
                type_=exc.__class__.__name__,
                details=exc.errors(),
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(
        _request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        detail = getattr(exc, "detail", None)
        if isinstance(detail, str):
            error = detail
            details = None
        else:
            error = "Request failed"
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(
                error=error,
                code="http_exception",
                type_=exc.__class__.__name__,
                details=details,
            ),
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_payload(
                error="Internal server error",
                code="internal_error",
                type_="InternalServerError",
            ),
        )
