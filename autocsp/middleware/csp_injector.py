"""CSP injection middleware: synthesizes a Content-Security-Policy for HTML responses."""

from __future__ import annotations

import re
from urllib.parse import urlsplit

import structlog
from starlette.requests import Request
from starlette.responses import Response

from autocsp.csp.engine import CSPEngine
from autocsp.middleware.pipeline import Middleware, RequestContext
from autocsp.utils.sanitize import clean_header_value

logger = structlog.get_logger()

_CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w\-.:]+)", re.IGNORECASE)

# Recomputed for the rewritten body
_REPLACED_HEADERS = frozenset({b"content-length", b"content-security-policy"})

_NO_BODY_STATUSES = frozenset({204, 304})


def _charset(content_type: str) -> str:
    match = _CHARSET_RE.search(content_type)
    if match:
        try:
            "".encode(match.group(1))
            return match.group(1)
        except LookupError:
            pass
    return "utf-8"


def public_url(
    request: Request,
    *,
    public_origin: str | None = None,
    trust_forwarded: bool = False,
) -> tuple[str, bool]:
    """The URL the client asked for, and whether its origin can be trusted.

    A configured ``public_origin`` wins. X-Forwarded-Proto / X-Forwarded-Host
    are only honoured with ``trust_forwarded``, i.e. behind a proxy that
    overwrites them. Anything else comes from the client's Host header and is
    reported as untrusted.
    """
    url = request.url
    if public_origin:
        base = urlsplit(public_origin)
        return str(url.replace(scheme=base.scheme, netloc=base.netloc)), True

    if not trust_forwarded:
        return str(url), False

    proto = request.headers.get("x-forwarded-proto")
    host = request.headers.get("x-forwarded-host")
    if proto:
        url = url.replace(scheme=proto.split(",")[0].strip())
    if host:
        url = url.replace(netloc=host.split(",")[0].strip())
    return str(url), bool(host)


class CSPInjector(Middleware):
    """Run the CSP engine over every ``text/html`` response.

    - Policies the request carried and the upstream response's own
      Content-Security-Policy header are merged, never narrowed
    - The policy is delivered as a header or as a ``<meta>`` tag in ``<head>``
    - If synthesis fails the response becomes a 500; a partially rewritten
      page is never served
    """

    def __init__(
        self,
        engine: CSPEngine,
        *,
        public_origin: str | None = None,
        trust_forwarded: bool = False,
    ) -> None:
        self._engine = engine
        self._public_origin = public_origin
        self._trust_forwarded = trust_forwarded

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        context.page_url, context.page_origin_trusted = public_url(
            request,
            public_origin=self._public_origin,
            trust_forwarded=self._trust_forwarded,
        )
        inbound = request.headers.get("content-security-policy")
        if inbound:
            context.inbound_policies.append(clean_header_value(inbound))
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        content_type = response.headers.get("content-type", "")
        if "text/html" not in content_type.lower():
            return response
        if response.status_code in _NO_BODY_STATUSES or not response.body:
            return response

        charset = _charset(content_type)
        html = response.body.decode(charset, errors="replace")

        policies = list(context.inbound_policies)
        upstream_policy = response.headers.get("content-security-policy")
        if upstream_policy:
            policies.append(clean_header_value(upstream_policy))

        try:
            result = await self._engine.process(
                html,
                context.page_url,
                inbound_policies=policies,
                origin_trusted=context.page_origin_trusted,
            )
        except Exception:
            logger.exception("csp_synthesis_failed", url=context.page_url)
            return Response(content="Content-Security-Policy synthesis failed", status_code=500)

        body = result.html.encode(charset, errors="xmlcharrefreplace")
        rewritten = Response(content=body, status_code=response.status_code)
        rewritten.raw_headers = [
            (key, value) for key, value in response.raw_headers if key.lower() not in _REPLACED_HEADERS
        ] + [(b"content-length", str(len(body)).encode("latin-1"))]
        if result.needs_header:
            rewritten.headers["content-security-policy"] = result.policy

        logger.debug(
            "csp_injected",
            method=result.injection_method,
            request_id=context.request_id,
        )
        return rewritten
