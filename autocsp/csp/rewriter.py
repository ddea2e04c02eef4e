"""Streaming HTML rewriter driving element / text-chunk callbacks.

Built on :class:`html.parser.HTMLParser`, fed in chunks. Untouched markup is
passed through byte-for-byte; only start tags whose attributes were changed
are re-rendered. Start tags are rendered lazily when the document is
rendered, so a handler may still change an element's attributes after later
parts of the document have been seen.
"""

from __future__ import annotations

import asyncio
from html import escape
from html.parser import HTMLParser
from typing import Protocol

DEFAULT_CHUNK_SIZE = 16 * 1024

VOID_ELEMENTS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
})


class TextChunk:
    """A piece of an element's text; the last piece has ``last_in_text_node``."""

    __slots__ = ("text", "last_in_text_node")

    def __init__(self, text: str, last_in_text_node: bool = False) -> None:
        self.text = text
        self.last_in_text_node = last_in_text_node


class Element:
    """A start tag as seen by element handlers."""

    def __init__(self, tag_name: str, attrs: list[tuple[str, str | None]], raw: str, self_closing: bool = False) -> None:
        self.tag_name = tag_name.lower()
        self._attrs = [(name.lower(), value) for name, value in attrs]
        self._raw = raw
        self._self_closing = self_closing
        self._modified = False
        self._before: list[str] = []
        self._prepend: list[str] = []
        self.removed = False

    @property
    def attributes(self) -> list[tuple[str, str | None]]:
        return list(self._attrs)

    def get_attribute(self, name: str) -> str | None:
        name = name.lower()
        for key, value in self._attrs:
            if key == name:
                return value if value is not None else ""
        return None

    def has_attribute(self, name: str) -> bool:
        name = name.lower()
        return any(key == name for key, _ in self._attrs)

    def set_attribute(self, name: str, value: str) -> None:
        name = name.lower()
        for index, (key, current) in enumerate(self._attrs):
            if key == name:
                if current != value:
                    self._attrs[index] = (key, value)
                    self._modified = True
                return
        self._attrs.append((name, value))
        self._modified = True

    def remove_attribute(self, name: str) -> None:
        name = name.lower()
        kept = [(key, value) for key, value in self._attrs if key != name]
        if len(kept) != len(self._attrs):
            self._attrs = kept
            self._modified = True

    def before(self, content: str) -> None:
        """Insert raw HTML before the element."""
        self._before.append(content)

    def prepend(self, content: str) -> None:
        """Insert raw HTML as the element's first child."""
        self._prepend.append(content)

    def remove(self) -> None:
        """Drop the element and its content. Only effective from an element callback."""
        self.removed = True

    def render(self) -> str:
        if self.removed:
            return "".join(self._before)
        if self._modified:
            start = self._render_start()
        else:
            start = self._raw
        return "".join(self._before) + start + "".join(self._prepend)

    def _render_start(self) -> str:
        parts = [self.tag_name]
        for key, value in self._attrs:
            parts.append(key if value is None else f'{key}="{escape(value, quote=True)}"')
        closing = " />" if self._self_closing else ">"
        return "<" + " ".join(parts) + closing


class ElementHandler(Protocol):
    def element(self, element: Element) -> None: ...

    def text(self, chunk: TextChunk) -> None: ...


class RewrittenDocument:
    """Output of one rewriter pass; ``render`` produces the final HTML."""

    def __init__(self, parts: list[str | Element]) -> None:
        self._parts = parts

    def render(self) -> str:
        return "".join(p if isinstance(p, str) else p.render() for p in self._parts)


class _Open:
    __slots__ = ("element", "handlers", "suppressed", "had_text")

    def __init__(self, element: Element, handlers: list[ElementHandler], suppressed: bool) -> None:
        self.element = element
        self.handlers = handlers
        self.suppressed = suppressed
        self.had_text = False


class _Walker(HTMLParser):
    def __init__(self, handlers: list[tuple[str, ElementHandler]]) -> None:
        super().__init__(convert_charrefs=False)
        self._handlers = handlers
        self._stack: list[_Open] = []
        self._in_text = False
        self.parts: list[str | Element] = []

    # ── output helpers ──

    @property
    def _suppressed(self) -> bool:
        return bool(self._stack) and self._stack[-1].suppressed

    def _emit(self, part: str | Element) -> None:
        if not self._suppressed:
            self.parts.append(part)

    def _text_handlers(self) -> list[ElementHandler]:
        return self._stack[-1].handlers if self._stack else []

    def _end_text(self) -> None:
        if self._in_text:
            self._in_text = False
            chunk = TextChunk("", last_in_text_node=True)
            for handler in self._text_handlers():
                handler.text(chunk)

    def _matching(self, tag: str) -> list[ElementHandler]:
        return [h for selector, h in self._handlers if selector == "*" or selector == tag]

    # ── parser callbacks ──

    def _start(self, tag: str, attrs: list[tuple[str, str | None]], self_closing: bool) -> None:
        self._end_text()
        raw = self.get_starttag_text() or ""
        element = Element(tag, attrs, raw, self_closing)
        handlers = self._matching(element.tag_name)
        if not self._suppressed:
            for handler in handlers:
                handler.element(element)
        suppressed = self._suppressed or element.removed
        if not self._suppressed:
            self.parts.append(element)
        if not self_closing and element.tag_name not in VOID_ELEMENTS:
            self._stack.append(_Open(element, handlers, suppressed))

    def handle_starttag(self, tag, attrs):
        self._start(tag, attrs, self_closing=False)

    def handle_startendtag(self, tag, attrs):
        self._start(tag, attrs, self_closing=True)

    def handle_endtag(self, tag):
        tag = tag.lower()
        if self._stack and self._stack[-1].element.tag_name == tag and not self._stack[-1].had_text:
            # Empty elements still get a final chunk
            self._in_text = True
        self._end_text()
        index = next((i for i in range(len(self._stack) - 1, -1, -1) if self._stack[i].element.tag_name == tag), None)
        if index is None:
            self._emit(f"</{tag}>")
            return
        closing = self._stack[index]
        del self._stack[index:]
        if not closing.suppressed:
            self._emit(f"</{tag}>")

    def handle_data(self, data):
        if not data:
            return
        self._emit(data)
        handlers = self._text_handlers()
        if self._stack:
            self._stack[-1].had_text = True
        if handlers and not self._suppressed:
            self._in_text = True
            chunk = TextChunk(data)
            for handler in handlers:
                handler.text(chunk)

    def handle_entityref(self, name):
        self.handle_data(f"&{name};")

    def handle_charref(self, name):
        self.handle_data(f"&#{name};")

    def handle_comment(self, data):
        self._end_text()
        self._emit(f"<!--{data}-->")

    def handle_decl(self, decl):
        self._end_text()
        self._emit(f"<!{decl}>")

    def handle_pi(self, data):
        self._end_text()
        self._emit(f"<?{data}>")

    def unknown_decl(self, data):
        self._end_text()
        self._emit(f"<![{data}]>")

    def close(self):
        super().close()
        self._end_text()


class HTMLRewriter:
    """Register handlers per tag name (or ``*``) and transform a document.

    Example:
        >>> doc = await HTMLRewriter().on("script", handler).transform(html)
        >>> doc.render()
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._handlers: list[tuple[str, ElementHandler]] = []
        self._chunk_size = chunk_size

    def on(self, selector: str, handler: ElementHandler) -> HTMLRewriter:
        self._handlers.append((selector.lower(), handler))
        return self

    async def transform(self, html: str) -> RewrittenDocument:
        """Walk ``html`` in chunks, yielding to the event loop between chunks."""
        walker = _Walker(self._handlers)
        for start in range(0, len(html), self._chunk_size):
            walker.feed(html[start:start + self._chunk_size])
            await asyncio.sleep(0)
        walker.close()
        return RewrittenDocument(walker.parts)
