"""Request id propagation and access logging that keeps payment data out of logs."""

import logging
import time
import uuid
from typing import Callable, Optional

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import settings
from .observability import metrics_collector

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Bodies and query strings on these paths carry customer PII, tracking ids or gateway payloads
SENSITIVE_PATH_PREFIXES = ("/v1/payments", "/v1/callbacks", "/v1/admin")

QUIET_PATHS = frozenset({"/health", "/ready", "/metrics", "/favicon.ico"})


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id, echoed in the response header.

    The id is also bound into the structlog context, so gateway adapter logs
    for a request can be found from the id a customer reports.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line per request and records request metrics.

    Query strings and bodies are only logged for non-payment routes and the
    Authorization header is never logged.
    """

    def __init__(self, app: ASGIApp, log_request_body: bool = False, skip_paths: Optional[frozenset] = None):
        super().__init__(app)
        self.log_request_body = log_request_body
        self.skip_paths = QUIET_PATHS if skip_paths is None else skip_paths

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.skip_paths:
            return await call_next(request)

        started = time.monotonic()
        request_id = getattr(request.state, "request_id", None)
        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "client_ip": client_ip(request),
            "user_agent": request.headers.get("User-Agent", "unknown"),
        }
        if not path.startswith(SENSITIVE_PATH_PREFIXES):
            log_data["query"] = request.url.query
            if self.log_request_body and request.method in ("POST", "PUT", "PATCH"):
                body = await request.body()
                if body:
                    log_data["request_body"] = body.decode("utf-8", errors="replace")[:1000]

        try:
            response = await call_next(request)
        except Exception:
            logger.exception("HTTP request raised", extra={"request_id": request_id, "path": path})
            response = JSONResponse(
                status_code=500,
                content={
                    "title": "Internal Server Error",
                    "status": 500,
                    "detail": "An unexpected error occurred while processing the request",
                    "instance": path,
                    "request_id": request_id,
                },
                media_type="application/problem+json",
            )

        duration = time.monotonic() - started
        route = request.scope.get("route")
        metrics_collector.record_request(
            request.method, getattr(route, "path", None) or "unmatched", response.status_code, duration
        )

        log_data["status_code"] = response.status_code
        log_data["duration_ms"] = round(duration * 1000, 2)
        if response.status_code >= 500:
            logger.error("HTTP request failed", extra=log_data)
        elif response.status_code >= 400:
            logger.warning("HTTP request rejected", extra=log_data)
        else:
            logger.info("HTTP request completed", extra=log_data)

        return response


def setup_middleware(app, enable_logging: bool = True) -> None:
    """Install request id and logging middleware; the request id runs first."""
    if enable_logging:
        app.add_middleware(LoggingMiddleware, log_request_body=settings.debug)
    app.add_middleware(RequestIDMiddleware)
