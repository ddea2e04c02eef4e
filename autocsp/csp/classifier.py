"""Map a resource URL to the CSP directive that governs it."""

from __future__ import annotations

import posixpath
from typing import Awaitable, Callable
from urllib.parse import urlsplit

import structlog

from autocsp.csp.cache import MISSING, ClassificationCache
from autocsp.csp.directives import Directive
from autocsp.csp.fetcher import FetchResult

logger = structlog.get_logger()

FetchFn = Callable[[str], Awaitable[FetchResult | None]]

_IMAGE_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".avif", ".svg", ".ico", ".bmp", ".tif", ".tiff",
)
_FONT_EXTENSIONS = (".woff", ".woff2", ".ttf", ".otf", ".eot")

EXTENSION_DIRECTIVES: dict[str, Directive] = {
    **{ext: Directive.img_src for ext in _IMAGE_EXTENSIONS},
    **{ext: Directive.font_src for ext in _FONT_EXTENSIONS},
    ".js": Directive.script_src,
    ".mjs": Directive.script_src,
    ".css": Directive.style_src,
    ".json": Directive.connect_src,
}

# Top-level MIME type -> directive. Anything else is unknown.
MIME_CATEGORY_DIRECTIVES: dict[str, Directive] = {
    "application": Directive.script_src,
    "text": Directive.script_src,
    "audio": Directive.media_src,
    "video": Directive.media_src,
    "font": Directive.font_src,
    "image": Directive.img_src,
    "message": Directive.connect_src,
    "model": Directive.connect_src,
    "multipart": Directive.connect_src,
}

# Un-substituted template artifacts; the real runtime path is unknowable.
_TEMPLATE_MARKERS = ("${", "{{", "$%7b", "%7b%7b")


def extension_of(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    return posixpath.splitext(path)[1].lower()


def directive_for_extension(url: str) -> Directive | None:
    return EXTENSION_DIRECTIVES.get(extension_of(url))


def directive_for_mime(mime: str | None) -> Directive | None:
    """Directive for a content-type value such as ``image/png; charset=...``."""
    if not mime:
        return None
    category = mime.split(";", 1)[0].strip().lower().split("/", 1)[0]
    return MIME_CATEGORY_DIRECTIVES.get(category)


def has_template_marker(url: str) -> bool:
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return False
    return any(marker in path for marker in _TEMPLATE_MARKERS)


class ResourceClassifier:
    """Resolve URLs to directives: hint > extension table > MIME sniff.

    Sniff results, negative ones included, go through the shared
    ClassificationCache. Each request builds its own classifier around the
    process-wide cache so the same-origin retention check knows the page
    origin.
    """

    def __init__(
        self,
        cache: ClassificationCache,
        fetch: FetchFn,
        *,
        self_origin: str | None,
        cacheable: Callable[[str], bool] | None = None,
    ) -> None:
        self._cache = cache
        self._fetch = fetch
        self._self_origin = self_origin
        self._cacheable = cacheable

    def resolve_static(self, url: str, hint: Directive | None = None) -> Directive | None:
        """Resolution without touching the network."""
        return hint or directive_for_extension(url)

    async def resolve(self, url: str, hint: Directive | None = None) -> Directive | None:
        directive = self.resolve_static(url, hint)
        if directive is not None:
            return directive
        if has_template_marker(url):
            return None

        cached = self._cache.get_classification(url)
        if cached is not MISSING:
            return cached

        result = await self._fetch(url)
        if result is None or not result.ok:
            logger.debug(
                "csp_classify_failed",
                url=url,
                status=result.status_code if result is not None else None,
            )
            directive = None
        else:
            directive = directive_for_mime(result.content_type)

        if self._cacheable is None or self._cacheable(url):
            self._cache.put_classification(url, directive, self_origin=self._self_origin)
        return directive
