"""Discover resource references inside CSS, JavaScript and web-app manifests.

Discovery is pattern based, not a parser. Every reference found goes through
the session's classifier and lands in a contribution sink: the session itself,
which feeds the request's PolicySet, or a RecordingSink when a fetched file is
being scanned so its contributions can be cached and replayed.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import TYPE_CHECKING, Awaitable, Callable
from urllib.parse import urljoin

import structlog

from autocsp.csp.cache import Contribution, cache_key
from autocsp.csp.classifier import directive_for_mime, extension_of
from autocsp.csp.directives import Directive
from autocsp.csp.session import ContributionSink, RecordingSink
from autocsp.csp.sources import BLOB, DATA, Origin

if TYPE_CHECKING:
    from autocsp.csp.session import ScanSession

logger = structlog.get_logger()

Scanner = Callable[["ScanSession", str, str, ContributionSink], Awaitable[None]]

# ── CSS patterns ────────────────────────────────────────────────────────

_CSS_URL_RE = re.compile(r"""url\(\s*(?P<q>['"]?)(?P<url>.*?)(?P=q)\s*\)""", re.IGNORECASE)
_CSS_IMPORT_RE = re.compile(r"""@import\s+(?P<q>['"])(?P<url>.+?)(?P=q)""", re.IGNORECASE)

# ── JS patterns ─────────────────────────────────────────────────────────

_JS_STRING = r"""(?P<q>['"`])(?P<url>[^'"`\s]+?)(?P=q)"""

_JS_CALL_PATTERNS: tuple[tuple[re.Pattern[str], Directive], ...] = (
    (re.compile(r"\bfetch\(\s*" + _JS_STRING), Directive.connect_src),
    (re.compile(r"\bnew\s+(?:Shared)?Worker\(\s*" + _JS_STRING), Directive.worker_src),
    (re.compile(r"\bserviceWorker\.register\(\s*" + _JS_STRING), Directive.worker_src),
    (re.compile(r"\bimportScripts\(\s*" + _JS_STRING), Directive.script_src),
)

_JS_BLOB_RE = re.compile(
    r"""\bnew\s+Blob\(\s*\[.*?\]\s*,\s*\{[^}]*?\btype\s*:\s*['"`](?P<mime>[\w/+.\-]+)['"`]""",
    re.DOTALL,
)
_JS_ABSOLUTE_URL_RE = re.compile(r"""(?P<q>['"`])(?P<url>(?:https?:)?//[^'"`\s]+?)(?P=q)""", re.IGNORECASE)
_JS_SCRIPT_LITERAL_RE = re.compile(r"""(?P<q>['"`])(?P<url>[\w\-./:]+\.m?js)(?:[?#][^'"`\s]*)?(?P=q)""")

# data:<mime>;base64, in either language
_DATA_URI_RE = re.compile(r"""data:(?P<mime>[\w\-.+]+/[\w\-.+]+)(?:;[\w\-]+=[\w\-]+)*;base64,""", re.IGNORECASE)

_SCRIPT_EXTENSIONS = frozenset({".js", ".mjs"})


def _data_uri_directive(mime: str) -> Directive | None:
    category = mime.lower().split("/", 1)[0]
    if category == "image":
        return Directive.img_src
    if category == "font" or "font" in mime.lower():
        return Directive.font_src
    return None


def _data_uri_mime(ref: str) -> str:
    return ref[len("data:"):].split(",", 1)[0].split(";", 1)[0].strip()


# ── CSS ─────────────────────────────────────────────────────────────────


async def scan_css(session: ScanSession, base_url: str, text: str, sink: ContributionSink | None = None) -> None:
    """Find ``url(...)`` and ``@import`` references in a stylesheet."""
    sink = sink if sink is not None else session
    recurse = session.options.recurse_into_referenced_files
    pending: list[Awaitable] = []

    for match in _CSS_IMPORT_RE.finditer(text):
        url = _join(base_url, match.group("url"))
        if url is None:
            continue
        pending.append(session.contribute_url(sink, url, Directive.style_src))
        if recurse:
            pending.append(scan_css_file(session, url, sink))

    for match in _CSS_URL_RE.finditer(text):
        ref = match.group("url").strip()
        if not ref or ref.startswith("#") or ref.lower().startswith("blob:"):
            continue
        if ref.lower().startswith("data:"):
            directive = _data_uri_directive(_data_uri_mime(ref))
            if directive is not None:
                sink.add(directive, DATA)
            continue
        url = _join(base_url, ref)
        if url is None:
            continue
        pending.append(session.contribute_url(sink, url))
        if recurse and extension_of(url) == ".css":
            pending.append(scan_css_file(session, url, sink))

    if pending:
        await asyncio.gather(*pending)


async def scan_css_file(session: ScanSession, url: str, sink: ContributionSink | None = None) -> None:
    await _scan_file(session, url, sink, scan_css)


# ── JS ──────────────────────────────────────────────────────────────────


async def scan_js(session: ScanSession, base_url: str, text: str, sink: ContributionSink | None = None) -> None:
    """Find URLs used by common resource-producing calls and URL literals."""
    sink = sink if sink is not None else session
    recurse = session.options.recurse_into_referenced_files
    pending: list[Awaitable] = []
    consumed: set[str] = set()

    for match in _DATA_URI_RE.finditer(text):
        if _data_uri_directive(match.group("mime")) is Directive.img_src:
            sink.add(Directive.img_src, DATA)

    for pattern, directive in _JS_CALL_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group("url")
            consumed.add(raw)
            url = _join(base_url, raw)
            if url is None:
                continue
            pending.append(session.contribute_url(sink, url, directive))
            if recurse and directive in (Directive.worker_src, Directive.script_src):
                pending.append(scan_js_file(session, url, sink))

    for match in _JS_BLOB_RE.finditer(text):
        directive = directive_for_mime(match.group("mime"))
        if directive is not None:
            sink.add(directive, BLOB)

    for match in _JS_ABSOLUTE_URL_RE.finditer(text):
        raw = match.group("url")
        if raw in consumed:
            continue
        consumed.add(raw)
        url = _join(base_url, raw)
        if url is None:
            continue
        pending.append(session.contribute_url(sink, url))

    if recurse:
        for match in _JS_SCRIPT_LITERAL_RE.finditer(text):
            raw = match.group("url")
            url = _join(base_url, raw)
            if url is None or extension_of(url) not in _SCRIPT_EXTENSIONS:
                continue
            if raw not in consumed:
                pending.append(session.contribute_url(sink, url, Directive.script_src))
            pending.append(scan_js_file(session, url, sink))

    if pending:
        await asyncio.gather(*pending)


async def scan_js_file(session: ScanSession, url: str, sink: ContributionSink | None = None) -> None:
    await _scan_file(session, url, sink, scan_js)


# ── Manifest ────────────────────────────────────────────────────────────


async def scan_manifest(session: ScanSession, url: str, text: str, sink: ContributionSink | None = None) -> None:
    """Allow the manifest's own URL under ``img-src`` when it declares icons.

    Icons are not resolved one by one: a manifest declaring icons is taken to
    mean "this manifest's location may serve images".
    """
    sink = sink if sink is not None else session
    try:
        manifest = json.loads(text)
    except ValueError as exc:
        logger.debug("csp_manifest_invalid", url=url, error=str(exc))
        return
    if not isinstance(manifest, dict):
        return
    icons = manifest.get("icons")
    if not isinstance(icons, list):
        return
    origin = Origin.from_url(url)
    if origin is None:
        return
    for _icon in icons:
        sink.add(Directive.img_src, origin)


async def scan_manifest_file(session: ScanSession, url: str, sink: ContributionSink | None = None) -> None:
    await _scan_file(session, url, sink, scan_manifest)


# ── Shared ──────────────────────────────────────────────────────────────


def _join(base_url: str, ref: str) -> str | None:
    try:
        url = urljoin(base_url, ref.strip())
    except ValueError:
        return None
    return url if Origin.from_url(url) is not None else None


async def _scan_file(
    session: ScanSession,
    url: str,
    sink: ContributionSink | None,
    scanner: Scanner,
) -> None:
    """Fetch ``url`` and run ``scanner`` over it, at most once per request.

    Cached contributions are replayed instead of fetching, and so are those of
    a file already scanned earlier in this request. Cross-origin files are only
    fetched when external scanning is enabled.

    A file still in flight higher up the chain (an import cycle, or the same
    file referenced twice concurrently) is not followed again. Its
    contributions reach the policy through that other scan, but every
    recording that skipped it is incomplete and stays out of the cache.
    """
    sink = sink if sink is not None else session
    key = cache_key(url)
    if key is None:
        return

    cached = session.cache.get_contents(url)
    if cached is not None:
        _replay(sink, cached)
        return

    if key in session.scanned:
        earlier = session.scanned[key]
        if earlier is None:
            logger.debug("csp_scan_in_flight", url=key)
            _mark_incomplete(sink)
            return
        contributions, complete = earlier
        _replay(sink, contributions)
        if not complete:
            _mark_incomplete(sink)
        return

    if not session.options.scan_external and not session.is_same_origin(url):
        logger.debug("csp_scan_skipped_external", url=key)
        return
    session.scanned[key] = None

    result = await session.fetch(url)
    if result is None or not result.ok:
        logger.debug(
            "csp_scan_fetch_failed",
            url=key,
            status=result.status_code if result is not None else None,
        )
        session.scanned[key] = ((), True)
        return

    recorder = RecordingSink(sink)
    await scanner(session, url, result.text, recorder)
    session.scanned[key] = (tuple(recorder.contributions), recorder.complete)

    if not recorder.complete:
        logger.debug("csp_contents_not_cached", url=key, reason="incomplete")
    elif session.should_cache(url):
        session.cache.put_contents(url, recorder.contributions, self_origin=session.self_origin)


def _replay(sink: ContributionSink, contributions: tuple[Contribution, ...]) -> None:
    for contribution in contributions:
        sink.add(contribution.directive, contribution.expr)


def _mark_incomplete(sink: ContributionSink) -> None:
    if isinstance(sink, RecordingSink):
        sink.mark_incomplete()
