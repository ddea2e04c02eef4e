"""Per-request scan state shared by every element handler and scanner."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Coroutine, Literal, Protocol
from urllib.parse import urljoin, urlsplit, urlunsplit

import structlog

from autocsp.csp.cache import ClassificationCache, Contribution
from autocsp.csp.classifier import ResourceClassifier, has_template_marker
from autocsp.csp.directives import Directive
from autocsp.csp.fetcher import FetchResult, ResourceFetcher
from autocsp.csp.inline import InlineAuthorizer, InlineMethod
from autocsp.csp.policy import PolicySet
from autocsp.csp.sources import BLOB, DATA, SELF, Origin, SourceExpression

logger = structlog.get_logger()

InjectionMethod = Literal["headers", "meta-tags"]

_FETCHABLE_SCHEMES = frozenset({"http", "https"})
_SKIPPED_SCHEMES = frozenset({"javascript", "mailto", "tel", "about"})


@dataclass(frozen=True)
class EngineOptions:
    """Engine behaviour switches; built from settings in the proxy."""

    injection_method: InjectionMethod = "headers"
    inline_method: InlineMethod = "nonce"
    scan_external: bool = False
    recurse_into_referenced_files: bool = False
    treat_same_origin_as_self: bool = True
    preserve_unknown_directives: bool = False
    # Same-origin resources are fetched from here instead of the public origin.
    upstream_url: str | None = None


class ContributionSink(Protocol):
    def add(self, directive: Directive, expr: SourceExpression) -> bool: ...


class RecordingSink:
    """Forward contributions to ``parent`` while recording them for the content cache.

    Origins are recorded as-is; turning a page-origin entry into ``'self'`` is
    left to the session, so a recording is valid for pages on any origin.
    ``complete`` goes False when a nested file could not be followed, in which
    case the recording must not be cached.
    """

    def __init__(self, parent: ContributionSink) -> None:
        self._parent = parent
        self.contributions: list[Contribution] = []
        self.complete = True

    def mark_incomplete(self) -> None:
        self.complete = False
        if isinstance(self._parent, RecordingSink):
            self._parent.mark_incomplete()

    def add(self, directive: Directive, expr: SourceExpression) -> bool:
        self.contributions.append(Contribution(directive, expr))
        return self._parent.add(directive, expr)


class PendingWork:
    """Scatter-gather barrier over the tasks spawned during a scan pass.

    ``join`` waits until no task is left, including tasks spawned by other
    tasks while it waits. Recoverable per-resource failures are handled
    inside the tasks; anything that escapes is re-raised from ``join``.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        return task

    async def join(self) -> None:
        errors: list[BaseException] = []
        try:
            while self._tasks:
                batch, self._tasks = self._tasks, set()
                results = await asyncio.gather(*batch, return_exceptions=True)
                errors.extend(
                    r for r in results
                    if isinstance(r, BaseException) and not isinstance(r, asyncio.CancelledError)
                )
        except asyncio.CancelledError:
            self.cancel()
            raise
        if errors:
            raise errors[0]

    def cancel(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)


def origin_of(url: str) -> str | None:
    origin = Origin.from_url(url)
    return origin.origin if origin else None


class ScanSession:
    """Everything one document scan shares: policy, base URL, options, caches.

    Created per request by :class:`autocsp.csp.engine.CSPEngine`; the cache
    and fetcher are the engine's process-wide instances.

    The session is also the root contribution sink: ``add`` maps Origins on
    the page's own origin to ``'self'`` before they reach the PolicySet.

    ``origin_trusted`` is False when the page origin was taken from
    client-controlled input. Resources such a session fetches from the
    upstream are then kept out of the shared cache, since they would be
    stored under whatever origin the client claimed.
    """

    def __init__(
        self,
        page_url: str,
        options: EngineOptions,
        *,
        cache: ClassificationCache,
        fetcher: ResourceFetcher,
        origin_trusted: bool = True,
    ) -> None:
        self.page_url = page_url
        self.base_url = page_url
        self.self_origin = origin_of(page_url)
        self.options = options
        self.origin_trusted = origin_trusted
        self.cache = cache
        self.policy = PolicySet(preserve_unknown=options.preserve_unknown_directives)
        self.authorizer = InlineAuthorizer(self.policy, options.inline_method)
        self.classifier = ResourceClassifier(
            cache, self.fetch, self_origin=self.self_origin, cacheable=self.should_cache
        )
        self.pending = PendingWork()
        # Files fetched for scanning during this request: None while in flight,
        # then (contributions, complete).
        self.scanned: dict[str, tuple[tuple[Contribution, ...], bool] | None] = {}
        self._fetcher = fetcher

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        return self.pending.spawn(coro)

    def resolve(self, ref: str) -> str:
        return urljoin(self.base_url, ref.strip())

    def set_base(self, href: str) -> None:
        """Apply a document ``<base href>``."""
        self.base_url = urljoin(self.page_url, href.strip())

    def is_same_origin(self, url: str) -> bool:
        return self.self_origin is not None and origin_of(url) == self.self_origin

    def source_for(self, origin: Origin) -> SourceExpression:
        if self.options.treat_same_origin_as_self and origin.origin == self.self_origin:
            return SELF
        return origin

    def add(self, directive: Directive, expr: SourceExpression) -> bool:
        if isinstance(expr, Origin):
            expr = self.source_for(expr)
        return self.policy.add(directive, expr)

    def should_cache(self, url: str) -> bool:
        return self.origin_trusted or not self._fetches_from_upstream(url)

    async def fetch(self, url: str) -> FetchResult | None:
        return await self._fetcher.fetch(self._upstream_url_for(url))

    async def contribute_url(
        self,
        sink: ContributionSink,
        url: str,
        hint: Directive | None = None,
    ) -> Directive | None:
        """Classify an absolute URL and add it to ``sink``. Unknowns are dropped."""
        origin = Origin.from_url(url)
        if origin is None:
            logger.debug("csp_resource_dropped", url=url, reason="malformed_url")
            return None

        if has_template_marker(url):
            # Only the origin is enumerable
            directive = self.classifier.resolve_static(url, hint)
            if directive is not None:
                sink.add(directive, origin.root())
            return directive

        directive = await self.classifier.resolve(url, hint)
        if directive is None:
            logger.debug("csp_resource_dropped", url=url, reason="unclassified")
            return None
        sink.add(directive, origin)
        return directive

    def contribute_inline_scheme(self, sink: ContributionSink, directive: Directive, ref: str) -> bool:
        """Handle ``data:`` / ``blob:`` references. Returns True if ``ref`` was one."""
        lowered = ref.strip().lower()
        if lowered.startswith("data:"):
            sink.add(directive, DATA)
            return True
        if lowered.startswith("blob:"):
            sink.add(directive, BLOB)
            return True
        return False

    def fetchable(self, ref: str) -> str | None:
        """Absolute http(s) URL for a document reference, or None to skip it."""
        ref = ref.strip()
        if not ref or ref.startswith("#"):
            return None
        try:
            if urlsplit(ref).scheme.lower() in _SKIPPED_SCHEMES:
                return None
            absolute = self.resolve(ref)
            if urlsplit(absolute).scheme.lower() not in _FETCHABLE_SCHEMES:
                return None
        except ValueError:
            return None
        return absolute

    def _fetches_from_upstream(self, url: str) -> bool:
        return bool(self.options.upstream_url) and self.is_same_origin(url)

    def _upstream_url_for(self, url: str) -> str:
        if not self._fetches_from_upstream(url):
            return url
        parts = urlsplit(url)
        base = urlsplit(self.options.upstream_url)
        return urlunsplit((base.scheme, base.netloc, parts.path, parts.query, ""))
