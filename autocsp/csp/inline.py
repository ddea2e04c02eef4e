"""Nonce / hash authorization of inline ``<script>`` and ``<style>`` content."""

from __future__ import annotations

import base64
import enum
import hashlib
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, get_args

import structlog

from autocsp.csp.directives import Directive
from autocsp.csp.exceptions import CSPConfigError
from autocsp.csp.sources import UNSAFE_INLINE, Hash, Nonce, SourceExpression

if TYPE_CHECKING:
    from autocsp.csp.policy import PolicySet
    from autocsp.csp.rewriter import Element

logger = structlog.get_logger()

InlineMethod = Literal["nonce", "sha256", "sha384", "sha512"]

INLINE_METHODS: tuple[str, ...] = get_args(InlineMethod)

# 16 random bytes -> 22 url-safe base64 characters
NONCE_BYTES = 16


def check_inline_method(method: str) -> InlineMethod:
    """Validate an inline method at setup time."""
    if method not in INLINE_METHODS:
        raise CSPConfigError(f"unsupported inline method: {method!r}")
    if method != "nonce" and method not in hashlib.algorithms_available:
        raise CSPConfigError(f"digest algorithm not available: {method!r}")
    return method  # type: ignore[return-value]


def generate_nonce() -> str:
    return secrets.token_urlsafe(NONCE_BYTES)


def digest(text: str, algorithm: str) -> str:
    """Base64 digest of ``text`` (UTF-8) as used in CSP hash sources."""
    return base64.b64encode(hashlib.new(algorithm, text.encode("utf-8")).digest()).decode("ascii")


class InlineState(str, enum.Enum):
    pending = "pending"
    buffering = "buffering"
    finalized = "finalized"


@dataclass
class InlineBuffer:
    """Text of one element, collected across streamed chunks."""

    parts: list[str] = field(default_factory=list)
    complete: bool = False

    def append(self, chunk: str, *, last: bool) -> bool:
        """Add a chunk. Returns True once the last chunk has arrived."""
        if self.complete:
            return True
        if chunk:
            self.parts.append(chunk)
        self.complete = last
        return last

    @property
    def text(self) -> str:
        return "".join(self.parts)


@dataclass
class InlineElement:
    """Authorization state of one inline ``<script>`` / ``<style>``."""

    tag: str
    element: Element
    state: InlineState = InlineState.pending
    buffer: InlineBuffer = field(default_factory=InlineBuffer)


_TAG_DIRECTIVES = {
    "script": Directive.script_src,
    "style": Directive.style_src,
}


class InlineAuthorizer:
    """Grant nonces or hashes to inline content for one document.

    Once any element in the document carries a ``style`` attribute,
    ``style-src`` gets ``'unsafe-inline'`` and inline ``<style>`` blocks get
    neither nonce nor hash for the rest of the document. Grants already made
    to ``<style>`` blocks earlier in the document are revoked at that point,
    since a nonce or hash in the list would make browsers ignore
    ``'unsafe-inline'``.
    """

    def __init__(self, policy: PolicySet, method: str = "nonce") -> None:
        self.method = check_inline_method(method)
        self._policy = policy
        self.inline_style_seen = False
        self._style_grants: list[tuple[SourceExpression, Element | None]] = []

    @property
    def uses_nonce(self) -> bool:
        return self.method == "nonce"

    def note_style_attribute(self) -> None:
        if self.inline_style_seen:
            return
        self.inline_style_seen = True
        self._policy.add(Directive.style_src, UNSAFE_INLINE)
        for expr, element in self._style_grants:
            self._policy.discard(Directive.style_src, expr)
            if element is not None and isinstance(expr, Nonce):
                element.remove_attribute("nonce")
        if self._style_grants:
            logger.debug("csp_style_grants_revoked", count=len(self._style_grants))
        self._style_grants.clear()

    def open(self, tag: str, element: Element) -> InlineElement:
        """Start tracking an inline element at its start tag.

        Nonce mode finalizes immediately; digest mode buffers until the last
        text chunk.
        """
        inline = InlineElement(tag=tag, element=element)
        if tag == "style" and self.inline_style_seen:
            inline.state = InlineState.finalized
        elif self.uses_nonce:
            self.authorize_element(tag, element)
            inline.state = InlineState.finalized
        else:
            inline.state = InlineState.buffering
        return inline

    def feed(self, inline: InlineElement, chunk: str, *, last: bool) -> bool:
        """Buffer a text chunk. Returns True when the element's text is complete."""
        done = inline.buffer.append(chunk, last=last)
        if done and inline.state is InlineState.buffering:
            self.authorize_text(inline.tag, inline.buffer.text)
            inline.state = InlineState.finalized
        return done

    def authorize_element(self, tag: str, element: Element) -> Nonce:
        """Attach a nonce to ``element`` (reusing an existing one) and allow it."""
        token = element.get_attribute("nonce") or generate_nonce()
        element.set_attribute("nonce", token)
        expr = Nonce(token)
        self._grant(tag, expr, element)
        return expr

    def authorize_text(self, tag: str, text: str) -> Hash | None:
        if self.uses_nonce:
            return None
        if tag == "style" and self.inline_style_seen:
            return None
        expr = Hash(self.method, digest(text, self.method))
        self._grant(tag, expr, None)
        return expr

    def _grant(self, tag: str, expr: SourceExpression, element: Element | None) -> None:
        self._policy.add(_TAG_DIRECTIVES[tag], expr)
        if tag == "style":
            self._style_grants.append((expr, element))
