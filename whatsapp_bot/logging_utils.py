import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger.json import JsonFormatter
from starlette.middleware.base import BaseHTTPMiddleware

from whatsapp_bot.metrics import record_http_request
from whatsapp_bot.schemas import WebhookLogCreate


WEBHOOK_PATH = "/api/webhook"

# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


class CustomJsonFormatter(JsonFormatter):
    """JSON formatter adding ISO-8601 timestamps, level and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
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

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys: ts, level, request_id, method, path, status, latency_ms.
    For webhook requests the route may add units (inbound messages seen)
    and result; those requests are also appended to the webhook log table.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            latency_ms = round(latency_seconds * 1000, 2)

            # Exclude /metrics to avoid self-instrumentation noise
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }
            webhook_data = getattr(request.state, "webhook_log_data", None)
            if webhook_data:
                log_data.update(webhook_data)

            logger = logging.getLogger("whatsapp_bot.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            if request.url.path == WEBHOOK_PATH:
                record_webhook_request(request, response.status_code, int(latency_ms), webhook_data or {})

            return response
        finally:
            request_id_ctx.reset(token)


def record_webhook_request(request: Request, status_code: int, latency_ms: int, webhook_data: dict) -> None:
    """Append one webhook request to the store's webhook log."""
    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        return
    is_successful = status_code < 400
    try:
        storage.create_webhook_log(
            WebhookLogCreate(
                webhook_url=str(request.url),
                method=request.method,
                headers={"content-type": request.headers.get("content-type")},
                body={"units": webhook_data["units"]} if "units" in webhook_data else None,
                response_status=status_code,
                response_time=latency_ms,
                is_successful=is_successful,
                error_message=None if is_successful else webhook_data.get("result", f"HTTP {status_code}"),
            )
        )
    except Exception:
        logging.getLogger(__name__).exception("Failed to record webhook log")


def log_webhook_data(request: Request, units: int = None, result: str = None):
    """
    Attach webhook-specific logging data to the request state.
    The middleware includes it in the request log and the webhook log.

    Args:
        request: FastAPI request object
        units: Number of inbound messages found in the delivery
        result: Processing result (processed, verified, verification_failed,
            invalid_signature, validation_error)
    """
    webhook_data = {}
    if units is not None:
        webhook_data["units"] = units
    if result is not None:
        webhook_data["result"] = result
    request.state.webhook_log_data = webhook_data
