"""
Error taxonomy for the SMS core and the handlers that render it.

Every error leaves the API as {"error": "<human readable message>"}.
"""

import logging
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from smsrelay.logging_utils import REQUEST_ID_HEADER

logger = logging.getLogger(__name__)


class SmsRelayError(Exception):
    """Base exception carrying the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class UnauthenticatedError(SmsRelayError):
    status_code = 401


class ForbiddenError(SmsRelayError):
    status_code = 403


class InvalidRequestError(SmsRelayError):
    status_code = 400


class ComplianceError(SmsRelayError):
    """Destination is in the opt-out registry."""
    status_code = 400


class NotFoundError(SmsRelayError):
    status_code = 404


class GatewayError(SmsRelayError):
    """
    The carrier rejected a request or returned an error payload.

    code and gateway_status are whatever the carrier reported.
    """
    status_code = 502

    def __init__(self, message: str, code: Optional[str] = None, gateway_status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.gateway_status = gateway_status


class PersistenceError(SmsRelayError):
    status_code = 500


class ConfigurationError(SmsRelayError):
    status_code = 500


def error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


def add_exception_handlers(app: FastAPI, response_headers: Optional[Dict[str, str]] = None) -> None:
    """
    Registers exception handlers with the FastAPI app.

    The catch-all handler runs outside every middleware, so response_headers
    (CORS) and the request id are stamped on its responses here.
    """
    @app.exception_handler(SmsRelayError)
    async def sms_relay_exception_handler(request: Request, exc: SmsRelayError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc.message}", extra={"path": request.url.path})
        else:
            logger.warning(f"{type(exc).__name__}: {exc.message}", extra={"path": request.url.path})
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query"))
            message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
        else:
            message = "Invalid request"
        return error_response(400, message)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled exception: {exc}",
            extra={
                "method": request.method,
                "path": request.url.path,
            },
            exc_info=True,
        )
        headers = dict(response_headers or {})
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            headers[REQUEST_ID_HEADER] = request_id
        return error_response(500, "Internal server error", headers=headers)
