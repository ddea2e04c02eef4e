"""Per-request CSP accumulator."""

from __future__ import annotations

import structlog

from autocsp.csp.directives import Directive, lookup
from autocsp.csp.sources import NONE, SELF, Origin, SourceExpression, parse_source, sort_key

logger = structlog.get_logger()


class PolicySet:
    """Directive -> source-expression sets for one document.

    - ``add`` seeds an empty directive with ``'self'`` and de-duplicates.
    - A root Origin (``https://a.example/``) subsumes every path-level Origin
      for the same scheme, host and port, whichever order they arrive in.
    - ``'none'`` is only honoured when it comes from ``parse``; once asserted
      it suppresses everything else for that directive.
    """

    def __init__(self, *, preserve_unknown: bool = False) -> None:
        self._sources: dict[Directive, set[SourceExpression]] = {}
        self._none: set[Directive] = set()
        self._verbatim: dict[Directive, list[str]] = {}
        self._unknown: dict[str, list[str]] = {}
        self._preserve_unknown = preserve_unknown

    def add(self, directive: Directive, expr: SourceExpression) -> bool:
        """Add ``expr`` under ``directive``. Returns True if the set changed."""
        if expr == NONE:
            return False
        if not directive.takes_sources:
            return self._add_verbatim(directive, expr.render())

        changed = False
        entries = self._sources.get(directive)
        if entries is None:
            entries = self._sources[directive] = {SELF}
            changed = True
        if expr in entries:
            return changed

        if isinstance(expr, Origin):
            same_origin = [e for e in entries if isinstance(e, Origin) and e.origin == expr.origin]
            if any(e.is_root for e in same_origin):
                return changed
            if expr.is_root:
                entries.difference_update(same_origin)

        entries.add(expr)
        return True

    def discard(self, directive: Directive, expr: SourceExpression) -> None:
        entries = self._sources.get(directive)
        if entries is not None:
            entries.discard(expr)

    def has(self, directive: Directive, expr: SourceExpression) -> bool:
        return expr in self._sources.get(directive, ())

    def sources(self, directive: Directive) -> frozenset[SourceExpression]:
        return frozenset(self._sources.get(directive, ()))

    def is_none(self, directive: Directive) -> bool:
        """True if an explicit ``'none'`` was parsed for ``directive``."""
        return directive in self._none

    def is_populated(self, directive: Directive) -> bool:
        if directive in self._none:
            return True
        if directive.takes_sources:
            return bool(self._sources.get(directive))
        return directive in self._verbatim

    def values(self, directive: Directive) -> list[str]:
        """Rendered values for ``directive`` in deterministic order."""
        if directive in self._none:
            return [NONE.render()]
        if not directive.takes_sources:
            return list(self._verbatim.get(directive, ()))
        return [e.render() for e in sorted(self._sources.get(directive, ()), key=sort_key)]

    def unknown_directives(self) -> dict[str, list[str]]:
        """Unrecognized directives kept verbatim, in first-seen order."""
        return {name: list(values) for name, values in self._unknown.items()}

    def parse(self, policy: str) -> None:
        """Merge an existing policy string (header or meta tag) into this set.

        Tokens that are neither quoted keywords, scheme sources nor absolute
        URLs are dropped.
        """
        if not policy or not policy.strip():
            return
        for part in policy.split(";"):
            tokens = part.split()
            if not tokens:
                continue
            name, values = tokens[0].lower(), tokens[1:]
            directive = lookup(name)
            if directive is None:
                if self._preserve_unknown:
                    kept = self._unknown.setdefault(name, [])
                    kept.extend(v for v in values if v not in kept)
                else:
                    logger.debug("csp_unknown_directive_dropped", directive=name)
                continue
            if not directive.takes_sources:
                self._verbatim.setdefault(directive, [])
                for value in values:
                    self._add_verbatim(directive, value)
                continue
            if not values:
                # An empty source list is equivalent to 'none'.
                self._none.add(directive)
                continue
            for value in values:
                expr = parse_source(value)
                if expr is None:
                    logger.debug("csp_source_dropped", directive=name, token=value)
                elif expr == NONE:
                    self._none.add(directive)
                else:
                    self.add(directive, expr)

    def serialize(self) -> str:
        from autocsp.csp.serializer import serialize_policy

        return serialize_policy(self)

    def _add_verbatim(self, directive: Directive, token: str) -> bool:
        kept = self._verbatim.setdefault(directive, [])
        if token in kept:
            return False
        kept.append(token)
        return True
