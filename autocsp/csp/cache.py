"""Process-wide classification and scan-result cache."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Literal, get_args

import structlog

from autocsp.csp.directives import Directive
from autocsp.csp.exceptions import CSPConfigError
from autocsp.csp.sources import Origin, SourceExpression

logger = structlog.get_logger()

CacheMethod = Literal["none", "same-origin-only", "all"]

CACHE_METHODS: tuple[str, ...] = get_args(CacheMethod)


@dataclass(frozen=True, slots=True)
class Contribution:
    """One (directive, source) pair discovered while scanning a file."""

    directive: Directive
    expr: SourceExpression


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def cache_key(url: str) -> str | None:
    """Normalized cache key (no query, no fragment), or None for non-absolute URLs."""
    origin = Origin.from_url(url)
    return origin.url if origin else None


class ClassificationCache:
    """URL -> directive (or unknown) and URL -> scan contributions.

    Constructed once per process and shared by every request. Retention:

    - ``none``: nothing is stored
    - ``same-origin-only``: only URLs on the requesting page's origin
    - ``all``: everything

    Entries never expire. Writes are first-writer-wins under a lock, so two
    overlapping requests resolving the same URL cannot clobber each other.
    """

    def __init__(self, method: CacheMethod = "same-origin-only") -> None:
        if method not in CACHE_METHODS:
            raise CSPConfigError(f"unsupported cache method: {method!r}")
        self.method = method
        self._classifications: dict[str, Directive | None] = {}
        self._contents: dict[str, tuple[Contribution, ...]] = {}
        self._lock = threading.Lock()

    def retains(self, url: str, self_origin: str | None) -> bool:
        if self.method == "all":
            return True
        if self.method == "same-origin-only":
            origin = Origin.from_url(url)
            return origin is not None and self_origin is not None and origin.origin == self_origin
        return False

    def get_classification(self, url: str) -> Directive | None | _Missing:
        """Return the cached directive, None for a cached negative, or MISSING."""
        key = cache_key(url)
        if key is None:
            return MISSING
        with self._lock:
            return self._classifications.get(key, MISSING)

    def put_classification(self, url: str, directive: Directive | None, *, self_origin: str | None) -> None:
        key = cache_key(url)
        if key is None or not self.retains(url, self_origin):
            return
        with self._lock:
            self._classifications.setdefault(key, directive)

    def get_contents(self, url: str) -> tuple[Contribution, ...] | None:
        key = cache_key(url)
        if key is None:
            return None
        with self._lock:
            return self._contents.get(key)

    def put_contents(self, url: str, contributions: list[Contribution], *, self_origin: str | None) -> None:
        key = cache_key(url)
        if key is None or not self.retains(url, self_origin):
            return
        with self._lock:
            if key not in self._contents:
                self._contents[key] = tuple(contributions)
                logger.debug("csp_contents_cached", url=key, count=len(contributions))

    def clear(self) -> None:
        with self._lock:
            self._classifications.clear()
            self._contents.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._classifications) + len(self._contents)
