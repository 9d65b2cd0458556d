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

from msgbridge.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 `ts`, `level` and the request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Queue runs happen outside any request and carry no request_id
        if 'request_id' not in log_record:
            req_id = get_request_id()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Request logging is done by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs full request URLs at INFO, and provider URLs can carry API keys
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger


def _path_label(request: Request) -> str:
    # Webhook paths carry per-route tokens; log only the prefix
    path = request.url.path
    return "/webhooks" if path.startswith("/webhooks/") else path


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every HTTP request as one JSON line.

    Keys: ts, level, request_id, method, path, status, latency_ms.
    Webhook requests add route_id, kind (sms or whatsapp) and result, as
    attached by the webhook endpoint through `log_webhook_data`.
    """

    logger = logging.getLogger("msgbridge.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            elapsed = time.perf_counter() - started
            path = _path_label(request)

            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "webhook_log_data", {}))
            self.logger.log(_level_for(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    route_id: Optional[int] = None,
    kind: Optional[str] = None,
    result: Optional[str] = None,
) -> None:
    """
    Attach webhook fields to the request log line written by the middleware.

    `result` is one of: incoming, delivery_report, unclassified, not_found,
    invalid_signature, verified, verify_rejected, error.
    """
    fields = {"route_id": route_id, "kind": kind, "result": result}
    request.state.webhook_log_data = {k: v for k, v in fields.items() if v is not None}
