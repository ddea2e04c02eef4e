"""CSP directive registry.

The registry order is the serialization order. Directives ending in ``-src``
are fetch directives: when nothing was accumulated for one, the serializer
emits ``'none'`` for it instead of leaving it out.
"""

from __future__ import annotations

import enum


class Directive(str, enum.Enum):
    default_src = "default-src"
    script_src = "script-src"
    style_src = "style-src"
    img_src = "img-src"
    connect_src = "connect-src"
    font_src = "font-src"
    object_src = "object-src"
    media_src = "media-src"
    frame_src = "frame-src"
    child_src = "child-src"
    worker_src = "worker-src"
    manifest_src = "manifest-src"
    prefetch_src = "prefetch-src"
    form_action = "form-action"
    sandbox = "sandbox"
    report_uri = "report-uri"
    report_to = "report-to"
    base_uri = "base-uri"
    frame_ancestors = "frame-ancestors"
    navigate_to = "navigate-to"
    plugin_types = "plugin-types"

    @property
    def is_fetch(self) -> bool:
        return self.value.endswith("-src")

    @property
    def takes_sources(self) -> bool:
        """False for directives whose value is not a source list."""
        return self not in _VERBATIM_DIRECTIVES


# Values of these are tokens (sandbox flags, report endpoints, MIME types)
# rather than source expressions, so they are kept verbatim.
_VERBATIM_DIRECTIVES = frozenset({
    Directive.sandbox,
    Directive.report_uri,
    Directive.report_to,
    Directive.plugin_types,
})

# Enum definition order is the registry order.
REGISTRY: tuple[Directive, ...] = tuple(Directive)

_BY_NAME: dict[str, Directive] = {d.value: d for d in Directive}


def lookup(name: str) -> Directive | None:
    """Return the registry directive for a (case-insensitive) name."""
    return _BY_NAME.get(name.strip().lower())
