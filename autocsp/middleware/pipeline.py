"""Ordered middleware chain framework."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import structlog
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()


@dataclass
class RequestContext:
    """Mutable context passed through the middleware pipeline."""

    request_id: str = ""
    # Public URL of the page being proxied; relative references resolve against it.
    page_url: str = ""
    # CSP policies the client request already carried.
    inbound_policies: list[str] = field(default_factory=list)
    # False when page_url came from client-controlled headers.
    page_origin_trusted: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.request_id:
            self.request_id = uuid4().hex[:8]


class Middleware(abc.ABC):
    """Base class for middleware in the pipeline."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abc.abstractmethod
    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        """Process an incoming request.

        Return None to continue the pipeline, or a Response to short-circuit.
        """
        ...

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        """Process an outgoing response. Override if needed."""
        return response


class MiddlewarePipeline:
    """Ordered list of middleware. Executes request handlers forward, response handlers in reverse."""

    def __init__(self) -> None:
        self._middleware: list[Middleware] = []

    def add(self, middleware: Middleware) -> None:
        """Add a middleware to the end of the pipeline."""
        self._middleware.append(middleware)
        logger.info("middleware_registered", name=middleware.name)

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        """Run request through all middleware in order.

        Returns a Response if any middleware short-circuits, otherwise None.
        A middleware that raises turns into a 502 instead of crashing the proxy.
        """
        for mw in self._middleware:
            try:
                result = await mw.process_request(request, context)
            except Exception:
                logger.exception("middleware_request_error", middleware=mw.name)
                return Response(content="Internal proxy error", status_code=502)
            if isinstance(result, Response):
                logger.info("middleware_short_circuit", middleware=mw.name)
                return result
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        """Run response through all middleware in reverse order.

        A middleware that raises fails the response with a 500: a half
        processed page must not be served as if it were complete.
        """
        for mw in reversed(self._middleware):
            try:
                response = await mw.process_response(response, context)
            except Exception:
                logger.exception("middleware_response_error", middleware=mw.name)
                return Response(content="Internal proxy error", status_code=500)
        return response
