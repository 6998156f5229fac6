"""
Structured JSON logging and per-request access logs.

Every log line carries ts, level, logger name and, while a request is in
flight, its request_id. RequestLoggingMiddleware emits one line per
request; routes enrich that line through log_sms_data().
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from smsrelay.metrics import record_http_request

SERVICE_NAME = "smsrelay"
REQUEST_ID_HEADER = "X-Request-ID"

# Loggers whose output is rerouted through the JSON handler
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a UTC ts, the level name, the service and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        # %(ts)s in the format string leaves a None placeholder behind
        if not log_record.get("ts"):
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = stamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname
        log_record.setdefault("service", SERVICE_NAME)

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log record to stdout as one JSON object per line.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # RequestLoggingMiddleware replaces the access log
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every gateway request at INFO, including credentials in URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _route_template(request: Request) -> str:
    """Matched route path (/campaigns/{campaign_id}) or the raw path when nothing matched."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One access log line and one metrics sample per request.

    The request id is taken from an incoming X-Request-ID header when the
    caller sends one, otherwise generated, and echoed on the response.
    Lines for 5xx responses are logged at ERROR, 4xx at WARNING.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            route = _route_template(request)
            if route != "/metrics":
                record_http_request(request.method, route, response.status_code, elapsed)

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "sms_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger("smsrelay.requests").log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_sms_data(request: Request, **fields) -> None:
    """Merge SMS fields (to, message_id, batch_id, ...) into this request's access log line. None values are dropped."""
    data = getattr(request.state, "sms_log_data", {})
    data.update({key: value for key, value in fields.items() if value is not None})
    request.state.sms_log_data = data
