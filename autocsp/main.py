"""FastAPI reverse proxy that adds a synthesized Content-Security-Policy to HTML pages."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import Response

from autocsp.config.loader import get_settings, load_settings, register_reload_handler
from autocsp.csp.cache import ClassificationCache
from autocsp.csp.engine import CSPEngine
from autocsp.csp.exceptions import CSPError
from autocsp.csp.fetcher import ResourceFetcher
from autocsp.health import router as health_router
from autocsp.logging_config import setup_logging
from autocsp.middleware.context_injector import ContextInjector
from autocsp.middleware.csp_injector import CSPInjector
from autocsp.middleware.pipeline import MiddlewarePipeline, RequestContext

logger = structlog.get_logger()

_http_client: httpx.AsyncClient | None = None
_resource_client: httpx.AsyncClient | None = None
_engine: CSPEngine | None = None
_pipeline: MiddlewarePipeline | None = None


def _build_pipeline(engine: CSPEngine) -> MiddlewarePipeline:
    """Build the ordered middleware pipeline.

    Responses run in reverse, so CSPInjector rewrites the page before
    ContextInjector stamps the request ID on the final response.
    """
    settings = get_settings()
    pipeline = MiddlewarePipeline()
    pipeline.add(ContextInjector())  # 0: request ID, forwarding headers
    pipeline.add(CSPInjector(        # 1: CSP synthesis for HTML
        engine,
        public_origin=settings.public_origin,
        trust_forwarded=settings.trust_forwarded_headers,
    ))
    return pipeline


def _build_engine(resource_client: httpx.AsyncClient, cache: ClassificationCache | None = None) -> CSPEngine:
    """Build the process-wide engine. Misconfiguration raises here, at startup.

    An existing ``cache`` is reused when its retention still matches the settings.
    """
    settings = get_settings()
    if cache is None or cache.method != settings.cache_method:
        cache = ClassificationCache(settings.cache_method)
    fetcher = ResourceFetcher(resource_client, max_bytes=settings.max_resource_bytes)
    return CSPEngine(settings.engine_options(), cache=cache, fetcher=fetcher)


def _reload_engine() -> None:
    """Rebuild the engine and pipeline from freshly loaded settings (SIGHUP).

    Requests already running keep the pipeline they started with.
    """
    global _engine, _pipeline
    if _resource_client is None:
        return
    try:
        engine = _build_engine(_resource_client, cache=_engine.cache if _engine else None)
    except CSPError as exc:
        logger.error("engine_reload_failed", error=str(exc))
        return
    _engine = engine
    _pipeline = _build_pipeline(engine)
    logger.info("engine_reloaded", cache_method=engine.cache.method)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    global _http_client, _resource_client, _engine, _pipeline

    settings = load_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.log_json)
    register_reload_handler(_reload_engine)

    # Upstream proxying
    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.proxy_timeout),
        follow_redirects=settings.upstream_follow_redirects,
        limits=httpx.Limits(
            max_connections=settings.upstream_max_connections,
            max_keepalive_connections=settings.upstream_max_keepalive,
        ),
    )
    # Classification and scanning of referenced resources
    _resource_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.fetch_timeout),
        follow_redirects=settings.fetch_follow_redirects,
    )

    _engine = _build_engine(_resource_client)
    _pipeline = _build_pipeline(_engine)

    logger.info(
        "proxy_started",
        upstream=settings.upstream_url,
        port=settings.listen_port,
        injection_method=settings.injection_method,
    )

    yield

    logger.info("proxy_shutting_down")
    if _http_client:
        await _http_client.aclose()
    if _resource_client:
        await _resource_client.aclose()
    _engine = None
    logger.info("proxy_stopped")


app = FastAPI(title="autocsp", lifespan=lifespan)

app.include_router(health_router)


HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# httpx has already decoded the body, so these no longer describe it
_DECODED_BODY_HEADERS = frozenset({"content-encoding", "content-length"})


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def proxy_request(request: Request, path: str) -> Response:
    """Catch-all reverse proxy handler."""
    if _http_client is None:
        return Response(content="Proxy not initialized", status_code=503)

    settings = get_settings()
    context = RequestContext()
    # A reload may swap the global mid-request
    pipeline = _pipeline

    if pipeline:
        short_circuit = await pipeline.process_request(request, context)
        if short_circuit is not None:
            return await pipeline.process_response(short_circuit, context)

    upstream_url = f"{settings.upstream_url.rstrip('/')}/{path}"
    if request.url.query:
        upstream_url = f"{upstream_url}?{request.url.query}"

    headers = {}
    for key, value in request.headers.items():
        lower = key.lower()
        if lower in HOP_BY_HOP_HEADERS or lower == "host":
            continue
        headers[key] = value
    if context.request_id:
        headers["x-request-id"] = context.request_id
    if context.extra.get("x_forwarded_for"):
        headers["x-forwarded-for"] = context.extra["x_forwarded_for"]
    if context.extra.get("x_forwarded_proto"):
        headers["x-forwarded-proto"] = context.extra["x_forwarded_proto"]

    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > settings.max_body_bytes:
                return Response(content="Request body too large", status_code=413)
        except (ValueError, OverflowError):
            return Response(content="Invalid Content-Length", status_code=400)
    body = await request.body()
    if len(body) > settings.max_body_bytes:
        return Response(content="Request body too large", status_code=413)

    try:
        upstream_resp = await _http_client.request(
            method=request.method,
            url=upstream_url,
            headers=headers,
            content=body,
        )
    except httpx.TimeoutException:
        logger.error("upstream_timeout", url=upstream_url, request_id=context.request_id)
        return Response(content="Upstream timeout", status_code=504)
    except httpx.ConnectError:
        logger.error("upstream_connect_error", url=upstream_url, request_id=context.request_id)
        return Response(content="Upstream unreachable", status_code=502)
    except httpx.HTTPError as exc:
        logger.error("upstream_error", url=upstream_url, request_id=context.request_id, error=str(exc))
        return Response(content="Upstream error", status_code=502)

    if len(upstream_resp.content) > settings.max_body_bytes:
        logger.error(
            "upstream_response_too_large",
            actual_size=len(upstream_resp.content),
            max=settings.max_body_bytes,
            request_id=context.request_id,
        )
        return Response(content="Upstream response too large", status_code=502)

    response = Response(content=upstream_resp.content, status_code=upstream_resp.status_code)
    response.raw_headers = [
        (key.encode("latin-1"), value.encode("latin-1"))
        for key, value in upstream_resp.headers.multi_items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in _DECODED_BODY_HEADERS
    ] + [(b"content-length", str(len(upstream_resp.content)).encode("latin-1"))]

    if pipeline:
        response = await pipeline.process_response(response, context)

    return response


def run() -> None:
    """Serve the proxy with uvicorn on the configured port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host="0.0.0.0", port=settings.listen_port, log_config=None)
