"""CSP source expressions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

HASH_ALGORITHMS = ("sha256", "sha384", "sha512")

_SCHEME_SOURCE_RE = re.compile(r"^[a-z][a-z0-9+.\-]*:$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Keyword:
    """A quoted keyword such as ``'self'``; stored without the quotes."""

    value: str

    def render(self) -> str:
        return f"'{self.value}'"


@dataclass(frozen=True, slots=True)
class Scheme:
    """A scheme source such as ``data:``; stored without the colon."""

    scheme: str

    def render(self) -> str:
        return f"{self.scheme}:"


@dataclass(frozen=True, slots=True)
class Nonce:
    token: str

    def render(self) -> str:
        return f"'nonce-{self.token}'"


@dataclass(frozen=True, slots=True)
class Hash:
    algorithm: str
    digest: str

    def render(self) -> str:
        return f"'{self.algorithm}-{self.digest}'"


@dataclass(frozen=True, slots=True)
class Origin:
    """An absolute URL source, normalized without query and fragment.

    Build instances with :meth:`from_url`; the constructor does not normalize.
    """

    url: str

    @classmethod
    def from_url(cls, url: str) -> Origin | None:
        """Normalize ``url`` into an Origin, or None if it is not absolute."""
        try:
            parts = urlsplit(url.strip())
        except ValueError:
            return None
        if not parts.scheme or not parts.netloc:
            return None
        path = parts.path or "/"
        return cls(urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", "")))

    @property
    def origin(self) -> str:
        """``scheme://host[:port]`` of this entry."""
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def is_root(self) -> bool:
        return self.path == "/"

    def root(self) -> Origin:
        return Origin(f"{self.origin}/")

    def render(self) -> str:
        return self.url


SourceExpression = Keyword | Scheme | Nonce | Hash | Origin

SELF = Keyword("self")
NONE = Keyword("none")
UNSAFE_INLINE = Keyword("unsafe-inline")
UNSAFE_EVAL = Keyword("unsafe-eval")
STRICT_DYNAMIC = Keyword("strict-dynamic")

DATA = Scheme("data")
BLOB = Scheme("blob")


def parse_source(token: str) -> SourceExpression | None:
    """Parse one source-list token from a policy string.

    Returns None for tokens that are neither quoted keywords, scheme
    sources nor absolute URLs; callers drop those.
    """
    token = token.strip()
    if len(token) > 2 and token.startswith("'") and token.endswith("'"):
        inner = token[1:-1]
        lowered = inner.lower()
        if lowered.startswith("nonce-") and len(inner) > len("nonce-"):
            return Nonce(inner[len("nonce-"):])
        for algorithm in HASH_ALGORITHMS:
            prefix = f"{algorithm}-"
            if lowered.startswith(prefix) and len(inner) > len(prefix):
                return Hash(algorithm, inner[len(prefix):])
        return Keyword(lowered)
    if _SCHEME_SOURCE_RE.match(token):
        return Scheme(token[:-1].lower())
    return Origin.from_url(token)


_KIND_RANK = {Keyword: 1, Scheme: 2, Nonce: 3, Hash: 4, Origin: 5}


def sort_key(expr: SourceExpression) -> tuple[int, str]:
    """Deterministic ordering: 'self' first, then keywords, schemes, nonces, hashes, origins."""
    if expr == SELF:
        return (0, "")
    return (_KIND_RANK[type(expr)], expr.render())
