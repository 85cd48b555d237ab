"""
Structured JSON logging for the pipeline service.

Every record carries ts, level and logger name; records emitted while an
HTTP request is being served also carry its request_id and the caller's
user_id. The request log line for POST /messages is enriched with the send
outcome attached by log_send_data().
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chatpipe.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

# Routed through our JSON handler instead of their own
LIBRARY_LOGGERS = ("uvicorn", "uvicorn.error", "sqlalchemy.engine")

# Paths kept out of the HTTP metrics
UNMETERED_PATHS = ("/metrics", "/health/live", "/health/ready")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds an ISO-8601 ts, the level name and the request context."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # "ts" is a required field, so it arrives here as None
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        for key, ctx in (("request_id", request_id_ctx), ("user_id", user_id_ctx)):
            value = ctx.get()
            if value and key not in log_record:
                log_record[key] = value


def setup_logging(log_level: str = "INFO", stream=None,
                  library_loggers: Iterable[str] = LIBRARY_LOGGERS) -> logging.Logger:
    """
    Install a single JSON handler on the root logger.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Output stream, stdout by default
        library_loggers: Third-party loggers redirected to the JSON handler
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in library_loggers:
        library_logger = logging.getLogger(name)
        library_logger.handlers = [handler]
        library_logger.propagate = False

    # SQL echo is noise at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    # Replaced by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per HTTP request.

    Keys: request_id, user_id, method, path, route, status, latency_ms.
    A client-supplied X-Request-ID is reused so client and server logs of a
    retried send can be correlated; otherwise a uuid4 is generated.

    For POST /messages, also includes message_id, fragments and result
    (stored, chunked, rejected, error).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        request_token = request_id_ctx.set(request_id)
        user_token = user_id_ctx.set(request.headers.get("X-User-Id"))

        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            elapsed = time.perf_counter() - started

            # Label by route template so message ids do not explode cardinality
            route = request.scope.get("route")
            route_path = route.path if route is not None else request.url.path
            if request.url.path not in UNMETERED_PATHS:
                record_http_request(
                    method=request.method,
                    path=route_path,
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "route": route_path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "send_log_data", {}))

            logging.getLogger("chatpipe.requests").log(
                _level_for(response.status_code), "Request completed", extra=log_data
            )
            return response
        finally:
            user_id_ctx.reset(user_token)
            request_id_ctx.reset(request_token)


def log_send_data(request: Request, message_id: str = None, fragments: int = 0, result: str = None):
    """
    Attach send outcome fields to the request log line.

    Args:
        request: FastAPI request object
        message_id: Id of the first stored row
        fragments: Number of rows written for the logical message
        result: stored, chunked, rejected or error
    """
    send_data = {"fragments": fragments}
    if message_id is not None:
        send_data["message_id"] = message_id
    if result is not None:
        send_data["result"] = result
    request.state.send_log_data = send_data
