"""Request middleware: correlation ids, actor extraction and error mapping.

The upstream identity provider authenticates the user and forwards the opaque
user id in the ``X-User-Id`` header; this service trusts that header.
"""

import logging
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from typing import Any, Optional

from aiohttp import web

from ..exceptions import (
    AuthorizationError,
    CapExceededError,
    ConflictError,
    TaskNotFoundError,
    TaskSeriesError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"

# Context variable for storing request correlation ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_STATUS_BY_ERROR: tuple[tuple[type[TaskSeriesError], int], ...] = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (TaskNotFoundError, 404),
    (ConflictError, 409),
    (CapExceededError, 422),
)


@web.middleware
async def correlation_id_middleware(
    request: web.Request, handler: Callable[[web.Request], Any]
) -> web.StreamResponse:
    """Extract or generate a correlation ID and echo it in the response.

    Priority: X-Request-ID, then X-Correlation-ID, then a new UUID.
    """
    correlation_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid.uuid4())
    )
    token = request_id_var.set(correlation_id)
    request["correlation_id"] = correlation_id
    try:
        response = await handler(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = correlation_id
    return response


def get_request_id() -> str:
    """Get current request correlation ID from context.

    Returns:
        Current request correlation ID, or "no-request-id" if not set
    """
    request_id = request_id_var.get()
    return request_id if request_id else "no-request-id"


def error_body(error: str, message: str, field: Optional[str] = None) -> dict[str, Any]:
    return {"error": error, "message": message, "field": field}


def status_for(exc: TaskSeriesError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@web.middleware
async def error_middleware(
    request: web.Request, handler: Callable[[web.Request], Any]
) -> web.StreamResponse:
    """Render TaskSeriesError as a JSON error body with the matching status."""
    try:
        return await handler(request)
    except TaskSeriesError as exc:
        status = status_for(exc)
        if status >= 500:
            logger.error("Request %s %s failed: %s", request.method, request.path, exc.message)
        else:
            logger.info("Request %s %s rejected (%d): %s", request.method, request.path, status, exc)
        return web.json_response(
            error_body(type(exc).__name__, exc.message, getattr(exc, "field", None)),
            status=status,
        )


@web.middleware
async def actor_middleware(
    request: web.Request, handler: Callable[[web.Request], Any]
) -> web.StreamResponse:
    """Require ``X-User-Id`` on every ``/api/`` route except health."""
    if request.path.startswith("/api/") and request.path != "/api/health":
        actor_id = request.headers.get(ACTOR_HEADER, "").strip()
        if not actor_id:
            return web.json_response(
                error_body("Unauthenticated", f"Missing {ACTOR_HEADER} header."), status=401
            )
        request["actor_id"] = actor_id
    return await handler(request)
