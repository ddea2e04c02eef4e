"""Element handlers wiring document events to the CSP engine.

Every handler shares one :class:`ScanSession` (policy, base URL, options,
classifier, pending work). Which attribute of which element maps to which
directive is a declarative table keyed by ``(tag, rel, as)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import structlog

from autocsp.csp.directives import Directive
from autocsp.csp.inline import InlineElement
from autocsp.csp.rewriter import Element, TextChunk
from autocsp.csp.scanners import (
    scan_css,
    scan_css_file,
    scan_js,
    scan_js_file,
    scan_manifest_file,
)
from autocsp.csp.serializer import build_meta_tag, is_csp_meta
from autocsp.csp.session import ScanSession
from autocsp.csp.sources import STRICT_DYNAMIC

logger = structlog.get_logger()

ScanKind = Literal["css", "js", "manifest"]


@dataclass(frozen=True, slots=True)
class ResourceRule:
    """Attribute ``attribute`` of a matching element loads a ``directive`` resource."""

    directive: Directive
    attribute: str
    scan: ScanKind | None = None


RuleKey = tuple[str, str | None, str | None]

# ``<link as=...>`` destination -> (directive, scanner)
LINK_AS_DIRECTIVES: dict[str, tuple[Directive, ScanKind | None]] = {
    "script": (Directive.script_src, "js"),
    "style": (Directive.style_src, "css"),
    "font": (Directive.font_src, None),
    "image": (Directive.img_src, None),
    "audio": (Directive.media_src, None),
    "video": (Directive.media_src, None),
    "track": (Directive.media_src, None),
    "object": (Directive.object_src, None),
    "embed": (Directive.object_src, None),
    "worker": (Directive.child_src, None),
    "document": (Directive.child_src, None),
    "fetch": (Directive.connect_src, None),
    "manifest": (Directive.manifest_src, "manifest"),
}

_LINK_AS_RELS = ("preload", "modulepreload", "preconnect", "prefetch", "prerender")


def _build_rules() -> dict[RuleKey, tuple[ResourceRule, ...]]:
    rules: dict[RuleKey, tuple[ResourceRule, ...]] = {
        ("script", None, None): (ResourceRule(Directive.script_src, "src", "js"),),
        ("img", None, None): (
            ResourceRule(Directive.img_src, "src"),
            ResourceRule(Directive.img_src, "srcset"),
        ),
        ("link", "stylesheet", None): (ResourceRule(Directive.style_src, "href", "css"),),
        ("link", "icon", None): (ResourceRule(Directive.img_src, "href"),),
        ("link", "apple-touch-icon", None): (ResourceRule(Directive.img_src, "href"),),
        ("link", "mask-icon", None): (ResourceRule(Directive.img_src, "href"),),
        ("link", "manifest", None): (ResourceRule(Directive.manifest_src, "href", "manifest"),),
        ("link", "prefetch", None): (ResourceRule(Directive.prefetch_src, "href"),),
        ("link", "prerender", None): (ResourceRule(Directive.prefetch_src, "href"),),
        ("link", "modulepreload", None): (ResourceRule(Directive.script_src, "href", "js"),),
        ("audio", None, None): (ResourceRule(Directive.media_src, "src"),),
        ("video", None, None): (
            ResourceRule(Directive.media_src, "src"),
            ResourceRule(Directive.img_src, "poster"),
        ),
        ("source", None, None): (
            ResourceRule(Directive.media_src, "src"),
            ResourceRule(Directive.img_src, "srcset"),
        ),
        ("track", None, None): (ResourceRule(Directive.media_src, "src"),),
        ("iframe", None, None): (ResourceRule(Directive.frame_src, "src"),),
        ("frame", None, None): (ResourceRule(Directive.frame_src, "src"),),
        ("object", None, None): (ResourceRule(Directive.object_src, "data"),),
        ("embed", None, None): (ResourceRule(Directive.object_src, "src"),),
        ("form", None, None): (ResourceRule(Directive.form_action, "action"),),
        ("a", None, None): (ResourceRule(Directive.connect_src, "ping"),),
        ("area", None, None): (ResourceRule(Directive.connect_src, "ping"),),
    }
    for rel in _LINK_AS_RELS:
        for as_, (directive, scan) in LINK_AS_DIRECTIVES.items():
            rules[("link", rel, as_)] = (ResourceRule(directive, "href", scan),)
    return rules


RESOURCE_RULES: dict[RuleKey, tuple[ResourceRule, ...]] = _build_rules()


def rules_for(tag: str, rel: str | None = None, as_: str | None = None) -> list[ResourceRule]:
    """All rules matching an element: ``(tag, rel, as)``, ``(tag, rel)``, then ``(tag)``.

    ``rel`` may hold several space-separated tokens (``"shortcut icon"``).
    """
    tag = tag.lower()
    as_ = as_.strip().lower() if as_ else None
    keys: list[RuleKey] = []
    for token in (rel or "").lower().split():
        if as_:
            keys.append((tag, token, as_))
        keys.append((tag, token, None))
    keys.append((tag, None, None))

    found: list[ResourceRule] = []
    for key in keys:
        for rule in RESOURCE_RULES.get(key, ()):
            if rule not in found:
                found.append(rule)
    return found


def attribute_urls(attribute: str, value: str) -> list[str]:
    """Split multi-URL attributes (``srcset``, ``ping``) into references."""
    if attribute == "srcset":
        refs = []
        for candidate in value.split(","):
            parts = candidate.split()
            if parts:
                refs.append(parts[0])
        return refs
    if attribute == "ping":
        return value.split()
    return [value]


_JS_SCRIPT_TYPES = frozenset({
    "", "text/javascript", "application/javascript", "application/ecmascript",
    "text/ecmascript", "module", "importmap",
})


def is_executable_script(element: Element) -> bool:
    script_type = (element.get_attribute("type") or "").split(";", 1)[0].strip().lower()
    return script_type in _JS_SCRIPT_TYPES


class SessionHandler:
    """Base for handlers sharing a request's scan session."""

    def __init__(self, session: ScanSession) -> None:
        self.session = session

    def element(self, element: Element) -> None:
        pass

    def text(self, chunk: TextChunk) -> None:
        pass


class ExistingMetaHandler(SessionHandler):
    """Merge policies from existing CSP meta tags, then drop the tags."""

    def element(self, element: Element) -> None:
        if not is_csp_meta(element.get_attribute("http-equiv")):
            return
        self.session.policy.parse(element.get_attribute("content") or "")
        element.remove()
        logger.debug("csp_existing_meta_merged")


class BaseHandler(SessionHandler):
    """``<base href>`` changes how later relative references resolve."""

    def element(self, element: Element) -> None:
        href = element.get_attribute("href")
        if not href:
            return
        self.session.set_base(href)
        url = self.session.fetchable(href)
        if url is not None:
            self.session.spawn(self.session.contribute_url(self.session, url, Directive.base_uri))


class InlineStyleFinder(SessionHandler):
    """Any ``style`` attribute switches the document's styles to ``'unsafe-inline'``."""

    def element(self, element: Element) -> None:
        style = element.get_attribute("style")
        if style is None:
            return
        self.session.authorizer.note_style_attribute()
        if "url(" in style.lower():
            self.session.spawn(scan_css(self.session, self.session.base_url, style))


class InlineContentHandler(SessionHandler):
    """Authorize and scan inline ``<script>`` / ``<style>`` content.

    Also blesses ``<script src>`` when the policy carries ``'strict-dynamic'``:
    a nonce in nonce mode, or the hash of the fetched file in digest mode.
    """

    def __init__(self, session: ScanSession, tag: str) -> None:
        super().__init__(session)
        self.tag = tag
        self._current: InlineElement | None = None

    def element(self, element: Element) -> None:
        self._current = None
        if self.tag == "script":
            if not is_executable_script(element):
                return
            if element.has_attribute("src"):
                if self.session.policy.has(Directive.script_src, STRICT_DYNAMIC):
                    self._authorize_external(element)
                return
        self._current = self.session.authorizer.open(self.tag, element)

    def text(self, chunk: TextChunk) -> None:
        inline = self._current
        if inline is None:
            return
        if not self.session.authorizer.feed(inline, chunk.text, last=chunk.last_in_text_node):
            return
        self._current = None
        body = inline.buffer.text
        if not body.strip():
            return
        scanner = scan_js if self.tag == "script" else scan_css
        self.session.spawn(scanner(self.session, self.session.base_url, body))

    def _authorize_external(self, element: Element) -> None:
        authorizer = self.session.authorizer
        if authorizer.uses_nonce:
            authorizer.authorize_element("script", element)
            return
        url = self.session.fetchable(element.get_attribute("src") or "")
        if url is not None:
            self.session.spawn(self._hash_external(url))

    async def _hash_external(self, url: str) -> None:
        result = await self.session.fetch(url)
        if result is None or not result.ok:
            logger.debug("csp_strict_dynamic_fetch_failed", url=url)
            return
        self.session.authorizer.authorize_text("script", result.text)


class ResourceHandler(SessionHandler):
    """Contribute URLs referenced by element attributes, per :data:`RESOURCE_RULES`."""

    _SCANNERS = {
        "css": scan_css_file,
        "js": scan_js_file,
        "manifest": scan_manifest_file,
    }

    def element(self, element: Element) -> None:
        rules = rules_for(element.tag_name, element.get_attribute("rel"), element.get_attribute("as"))
        for rule in rules:
            value = element.get_attribute(rule.attribute)
            if not value:
                continue
            for ref in attribute_urls(rule.attribute, value):
                self._contribute(rule, ref)

    def _contribute(self, rule: ResourceRule, ref: str) -> None:
        session = self.session
        if session.contribute_inline_scheme(session, rule.directive, ref):
            return
        url = session.fetchable(ref)
        if url is None:
            return
        session.spawn(session.contribute_url(session, url, rule.directive))
        if rule.scan is not None:
            session.spawn(self._SCANNERS[rule.scan](session, url))


class InsertMetaTagHandler:
    """Injection pass: insert the CSP meta tag as the first child of ``<head>``."""

    def __init__(self, policy_value: str) -> None:
        self.policy_value = policy_value
        self.inserted = False

    def element(self, element: Element) -> None:
        if self.inserted:
            return
        element.prepend(build_meta_tag(self.policy_value))
        self.inserted = True

    def text(self, chunk: TextChunk) -> None:
        pass


def scan_handlers(session: ScanSession) -> list[tuple[str, SessionHandler]]:
    """Handlers for the scan pass, in registration order."""
    return [
        ("*", InlineStyleFinder(session)),
        ("meta", ExistingMetaHandler(session)),
        ("base", BaseHandler(session)),
        ("style", InlineContentHandler(session, "style")),
        ("script", InlineContentHandler(session, "script")),
        ("*", ResourceHandler(session)),
    ]
