"""Control plane error taxonomy and FastAPI exception handlers.

Every error leaves the API as ``{"error": message, **extra}``; no traceback is
ever included in a response body.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from oraya_control.api.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)


class ControlPlaneError(Exception):
    """Base error rendered as a JSON ``{"error": ...}`` body.

    Extra keyword arguments (``code``, ``requires_organization``, ``hint``...)
    are merged into the body.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self, message: str, status_code: int | None = None, **extra: Any
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class AuthenticationError(ControlPlaneError):
    status_code = status.HTTP_401_UNAUTHORIZED


class AuthorizationError(ControlPlaneError):
    status_code = status.HTTP_403_FORBIDDEN


class ValidationError(ControlPlaneError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ControlPlaneError):
    status_code = status.HTTP_404_NOT_FOUND


class DomainRuleViolation(ControlPlaneError):
    """A business rule rejected the request (409 by default)."""

    status_code = status.HTTP_409_CONFLICT


class AccountLockedError(ControlPlaneError):
    status_code = status.HTTP_423_LOCKED


class UnexpectedError(ControlPlaneError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ConfigurationError(ControlPlaneError):
    """Required platform configuration (e.g. billing credentials) is missing."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class PaymentProviderError(ControlPlaneError):
    """The payments provider rejected or failed a request."""

    status_code = status.HTTP_502_BAD_GATEWAY


async def control_plane_error_handler(
    request: Request, exc: ControlPlaneError
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s",
            request.method,
            sanitize_for_log(request.url.path),
            sanitize_for_log(exc.message),
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        content = dict(detail)
        content.setdefault("error", "Request failed")
    else:
        content = {"error": str(detail)}
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST, content={"error": message}
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
