"""
FastAPI Middleware

- Correlation ID per request (reused from X-Correlation-ID when Meta or a
  proxy sends one)
- Request logging with phones masked in the path; health probes log at DEBUG
- Sliding-window rate limit on the WhatsApp webhook
- AppException / unexpected exception handlers
"""
import time
from collections import defaultdict
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    mask_phones,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

# Liveness/readiness probes hit these every few seconds
_PROBE_PATHS = frozenset({"/health", "/health/ready"})


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Correlation-ID or mint one, and echo it back."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def _mask_path_pii(path: str) -> str:
    return mask_phones(path)


def client_ip(request: Request, trust_forwarded: bool = False) -> str:
    """Client address; behind a proxy the first X-Forwarded-For hop."""
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with duration and status"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        started = time.perf_counter()
        safe_path = _mask_path_pii(request.url.path)
        is_probe = request.url.path in _PROBE_PATHS
        request_fields = {"method": request.method, "path": safe_path}

        if not is_probe:
            logger.info(
                f"Request started: {request.method} {safe_path}",
                extra_data={**request_fields, "client_host": request.client.host if request.client else None},
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={
                    **request_fields,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        if response.status_code >= 400:
            log = logger.warning
        elif is_probe:
            log = logger.debug
        else:
            log = logger.info
        log(
            f"Request completed: {request.method} {safe_path}",
            extra_data={
                **request_fields,
                "status_code": response.status_code,
                "duration_seconds": round(time.perf_counter() - started, 4),
            }
        )
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limit per client IP on /webhook paths.

    Returns 429 with Retry-After once a client exceeds max_requests inside
    window_seconds. Meta retries a 429 later, so nothing is lost.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
        trust_forwarded: bool = False,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._trust_forwarded = trust_forwarded
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _prune(self, ip: str, now: float) -> list[float]:
        cutoff = now - self._window_seconds
        recent = [ts for ts in self._requests.get(ip, []) if ts >= cutoff]
        if recent:
            self._requests[ip] = recent
        else:
            # drop idle IPs so the table does not grow forever
            self._requests.pop(ip, None)
        return recent

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        path = request.url.path
        if "/webhook" not in path:
            return await call_next(request)

        ip = client_ip(request, self._trust_forwarded)
        now = time.time()

        if len(self._prune(ip, now)) >= self._max_requests:
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": ip,
                    "path": path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Too many requests. Please try again later.",
                        "details": {"retry_after_seconds": self._window_seconds},
                    }
                },
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        self._requests[ip].append(now)
        return await call_next(request)


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """AppException -> its status code and {"error": {...}} body"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": _mask_path_pii(request.url.path),
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Anything else is a 500 that never echoes the exception text"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": _mask_path_pii(request.url.path),
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


def setup_middleware(app: FastAPI) -> None:
    """Register middleware. The last one added is the outermost."""
    from app.core.config import settings

    # request order: CorrelationId -> RequestLogging -> RateLimit -> app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
        trust_forwarded=settings.TRUST_FORWARDED_FOR,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
