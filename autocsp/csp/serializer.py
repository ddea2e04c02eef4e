"""Render a PolicySet into a CSP string or meta element."""

from __future__ import annotations

from html import escape
from typing import TYPE_CHECKING

from autocsp.csp.directives import REGISTRY
from autocsp.csp.sources import NONE

if TYPE_CHECKING:
    from autocsp.csp.policy import PolicySet

META_HTTP_EQUIV = "Content-Security-Policy"


def serialize_policy(policy: PolicySet) -> str:
    """Build the policy string.

    Directives are emitted in registry order. A fetch directive with no
    entries is emitted as ``'none'``; other directives are left out when
    empty. ``default-src`` is therefore ``'none'`` unless something populated
    it.

    Example:
        >>> p = PolicySet(); p.add(Directive.script_src, Origin.from_url("https://a.example/x.js"))
        >>> serialize_policy(p).split("; ")[:2]
        ["default-src 'none'", "script-src 'self' https://a.example/x.js"]
    """
    parts: list[str] = []
    for directive in REGISTRY:
        if not policy.is_populated(directive):
            if directive.is_fetch:
                parts.append(f"{directive.value} {NONE.render()};")
            continue
        values = policy.values(directive)
        parts.append(_render(directive.value, values))

    for name, values in policy.unknown_directives().items():
        parts.append(_render(name, values))
    return " ".join(parts)


def _render(name: str, values: list[str]) -> str:
    if values:
        return f"{name} {' '.join(values)};"
    return f"{name};"


def build_meta_tag(policy_value: str) -> str:
    """Build the ``<meta http-equiv="Content-Security-Policy">`` element."""
    return f'<meta http-equiv="{META_HTTP_EQUIV}" content="{escape(policy_value, quote=True)}">'


def is_csp_meta(http_equiv: str | None) -> bool:
    return bool(http_equiv) and http_equiv.strip().lower() == META_HTTP_EQUIV.lower()

