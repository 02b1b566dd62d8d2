"""
Logging setup plus per-request logging helpers.

``timed`` wraps a route handler and logs the outcome on every exit path, which
keeps the response objects themselves untouched.
"""
import functools
import logging
import sys
import time
from typing import Callable, Mapping, Optional

from fastapi import Request

logger = logging.getLogger("toolgate.requests")

SENSITIVE_HEADERS = {"authorization", "x-api-key", "cookie", "proxy-authorization"}


def setup_logging(debug: bool = False) -> None:
    root = logging.getLogger("toolgate")
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        root.addHandler(handler)
    root.propagate = False


def redact_headers(headers: Mapping[str, str]) -> dict:
    """Copy of ``headers`` with credential values reduced to a short prefix."""
    redacted = {}
    for name, value in headers.items():
        if name.lower() in SENSITIVE_HEADERS and value:
            redacted[name] = value[:12] + "..."
        else:
            redacted[name] = value
    return redacted


def log_request(request: Request, label: str) -> None:
    client = request.client.host if request.client else "-"
    logger.info("[%s] %s %s from %s", label, request.method, request.url.path, client)


def log_response(status: Optional[int], label: str, started: float) -> None:
    duration_ms = (time.perf_counter() - started) * 1000
    logger.info("[%s] -> %s in %.1fms", label, status if status is not None else "error", duration_ms)


def timed(label: str) -> Callable:
    """Log request start and response status/duration around an async route."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(request: Request, *args, **kwargs):
            log_request(request, label)
            started = time.perf_counter()
            status = None
            try:
                response = await func(request, *args, **kwargs)
                status = getattr(response, "status_code", 200)
                return response
            except Exception as exc:
                status = getattr(exc, "status_code", 500)
                raise
            finally:
                log_response(status, label, started)

        return wrapper

    return decorator
