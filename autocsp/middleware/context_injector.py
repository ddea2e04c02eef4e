"""Context injector middleware: request ID, forwarding headers and log context."""

from __future__ import annotations

from uuid import uuid4

import structlog
from starlette.requests import Request
from starlette.responses import Response

from autocsp.middleware.pipeline import Middleware, RequestContext
from autocsp.utils.sanitize import strip_control_chars

logger = structlog.get_logger()

_MAX_REQUEST_ID_LENGTH = 256


class ContextInjector(Middleware):
    """Set up per-request context.

    - Generates a unique X-Request-ID and binds it to structlog contextvars
    - Preserves the client's X-Request-ID as X-Original-Request-ID
    - Computes X-Forwarded-For / X-Forwarded-Proto for the upstream request
    """

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        new_request_id = uuid4().hex[:8]

        # Sanitized at storage time so nothing downstream logs raw client input
        client_request_id = request.headers.get("x-request-id")
        if client_request_id:
            context.extra["original_request_id"] = strip_control_chars(
                client_request_id[:_MAX_REQUEST_ID_LENGTH]
            )

        context.request_id = new_request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=new_request_id,
            path=request.url.path,
        )

        client_ip = request.client.host if request.client else "unknown"
        existing_xff = request.headers.get("x-forwarded-for")
        if existing_xff:
            context.extra["x_forwarded_for"] = f"{existing_xff}, {client_ip}"
        else:
            context.extra["x_forwarded_for"] = client_ip
        context.extra["x_forwarded_proto"] = request.url.scheme

        logger.debug("context_injected", client_ip=client_ip)
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        response.headers["x-request-id"] = context.request_id
        if context.extra.get("original_request_id"):
            response.headers["x-original-request-id"] = context.extra["original_request_id"]
        return response
