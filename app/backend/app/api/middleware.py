"""
HTTP middleware: CORS, per-client rate limiting and request logging.
"""

import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings


logger = structlog.get_logger(__name__)

UNLIMITED_PATHS = frozenset({"/health"})


def client_key(request: Request) -> str:
    """Rate limit bucket: operators share one, everyone else is keyed by address."""
    admin_key = request.headers.get("x-admin-key")
    if settings.admin_api_key and admin_key == settings.admin_api_key:
        return "admin"
    return f"ip:{request.client.host if request.client else 'unknown'}"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request; the request id is bound for every line logged while handling it."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        started = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    "Request failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    exc_info=True
                )
                response = JSONResponse(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    content={
                        "success": False,
                        "error": "INTERNAL_SERVER_ERROR",
                        "message": "An internal server error occurred",
                    }
                )

            logger.info(
                "Request handled",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )

        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitingMiddleware(BaseHTTPMiddleware):
    """Sliding window of ``max_requests`` per ``window_seconds`` for each client."""

    def __init__(
        self,
        app: FastAPI,
        max_requests: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.hits: Dict[str, Deque[float]] = defaultdict(deque)

    def admit(self, key: str) -> Optional[int]:
        """Record a request for ``key``. Returns the requests left, or None when over the limit."""
        now = self.clock()
        hits = self.hits[key]
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()

        if len(hits) >= self.max_requests:
            return None
        hits.append(now)
        return self.max_requests - len(hits)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in UNLIMITED_PATHS:
            return await call_next(request)

        key = client_key(request)
        remaining = self.admit(key)
        if remaining is None:
            logger.warning("Rate limit exceeded", client_key=key, path=request.url.path)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "success": False,
                    "error": "RATE_LIMIT_EXCEEDED",
                    "message": f"At most {self.max_requests} requests per {self.window_seconds} seconds",
                },
                headers={"Retry-After": str(self.window_seconds)}
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response


def add_middleware(app: FastAPI) -> None:
    """Install middleware; the last one added runs first."""
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitingMiddleware,
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window
        )

    app.add_middleware(RequestLoggingMiddleware)
