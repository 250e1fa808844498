import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chatrelay.metrics import record_http_request


# Per-request id for HTTP routes
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Per-session id for the /ws relay endpoint
connection_id_ctx: ContextVar[Optional[str]] = ContextVar("connection_id", default=None)

# Context variable -> log key, copied onto every record while set
_CONTEXT_FIELDS = (
    (request_id_ctx, "request_id"),
    (connection_id_ctx, "connection_id"),
)

# Loggers owned by uvicorn; they bypass the root logger
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a millisecond UTC `ts`, `level` and context ids."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"
        log_record['level'] = record.levelname

        for ctx, key in _CONTEXT_FIELDS:
            value = ctx.get()
            if value and key not in log_record:
                log_record[key] = value


def setup_logging(log_level: str = "INFO"):
    """
    Route every log line (ours and uvicorn's) to stdout as one JSON object.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware already logs every HTTP request
    logging.getLogger("uvicorn.access").disabled = True

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one "Request completed" line per HTTP request and records the
    request metrics. Each request gets an X-Request-ID header.

    Only plain HTTP routes pass through here (health, metrics). The /ws
    relay session is tagged with connection_id instead.
    """

    logger = logging.getLogger("chatrelay.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            self._observe(request, response.status_code, time.perf_counter() - started)
            return response
        finally:
            request_id_ctx.reset(token)

    def _observe(self, request: Request, status: int, elapsed: float) -> None:
        path = request.url.path
        if path != "/metrics":
            record_http_request(method=request.method, path=path, status=status, latency_seconds=elapsed)

        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.logger.log(level, "Request completed", extra={
            "method": request.method,
            "path": path,
            "status": status,
            "latency_ms": round(elapsed * 1000, 2),
        })
