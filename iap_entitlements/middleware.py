"""Request correlation and log context for the HTTP surface."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from iap_entitlements.logging_config import bind_context, clear_context, get_logger
from iap_entitlements.models.subscription import StoreProvider

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
USER_ID_HEADER = "X-User-Id"
WEBHOOK_PATH_PREFIX = "/api/v1/webhooks/"

KNOWN_PROVIDERS = frozenset(p.value for p in StoreProvider)


def webhook_provider(path: str):
    """Provider named by a webhook path, or None for other routes."""
    if not path.startswith(WEBHOOK_PATH_PREFIX):
        return None
    name = path[len(WEBHOOK_PATH_PREFIX):].split("/", 1)[0]
    return name if name in KNOWN_PROVIDERS else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request under a correlation ID.

    An ID sent by the upstream gateway in X-Request-ID is reused; otherwise
    one is generated. Either way it is echoed back in the response header.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        bind_context(request_id=request_id)

        details = {"method": request.method, "path": request.url.path}
        if self.include_request_details:
            details["client_host"] = request.client.host if request.client else "unknown"
            details["user_agent"] = request.headers.get("user-agent")
        logger.info("request_started", **details)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        else:
            log = logger.warning if response.status_code >= 500 else logger.info
            log(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds the caller's user ID and the webhook provider to the log context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        user_id = request.headers.get(USER_ID_HEADER)
        if user_id:
            bind_context(user_id=user_id)

        provider = webhook_provider(request.url.path)
        if provider:
            bind_context(provider=provider)

        return await call_next(request)
