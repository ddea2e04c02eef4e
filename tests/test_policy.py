"""PolicySet accumulation, conflict resolution and parsing tests."""

from __future__ import annotations

from autocsp.csp.directives import REGISTRY, Directive, lookup
from autocsp.csp.policy import PolicySet
from autocsp.csp.sources import (
    DATA,
    NONE,
    SELF,
    STRICT_DYNAMIC,
    UNSAFE_INLINE,
    Hash,
    Keyword,
    Nonce,
    Origin,
    Scheme,
    parse_source,
)


def _origin(url: str) -> Origin:
    origin = Origin.from_url(url)
    assert origin is not None
    return origin


# ── Directive registry ───────────────────────────────────────────────────


class TestDirectiveRegistry:
    def test_registry_order_starts_with_default_src(self):
        assert REGISTRY[0] is Directive.default_src
        assert REGISTRY[-1] is Directive.plugin_types
        assert len(REGISTRY) == 21

    def test_fetch_directives(self):
        assert Directive.img_src.is_fetch
        assert Directive.prefetch_src.is_fetch
        assert not Directive.form_action.is_fetch
        assert not Directive.base_uri.is_fetch

    def test_verbatim_directives_do_not_take_sources(self):
        assert not Directive.sandbox.takes_sources
        assert not Directive.report_uri.takes_sources
        assert Directive.frame_ancestors.takes_sources

    def test_lookup_is_case_insensitive(self):
        assert lookup("Script-Src") is Directive.script_src
        assert lookup(" img-src ") is Directive.img_src
        assert lookup("upgrade-insecure-requests") is None


# ── Source expressions ───────────────────────────────────────────────────


class TestSourceExpressions:
    def test_origin_drops_query_and_fragment(self):
        assert _origin("https://a.example/x.js?v=1#top").url == "https://a.example/x.js"

    def test_origin_lowercases_scheme_and_host(self):
        assert _origin("HTTPS://CDN.Example/Lib.js").url == "https://cdn.example/Lib.js"

    def test_origin_without_path_is_root(self):
        origin = _origin("https://a.example")
        assert origin.url == "https://a.example/"
        assert origin.is_root

    def test_origin_keeps_port(self):
        origin = _origin("http://a.example:8080/app.js")
        assert origin.origin == "http://a.example:8080"
        assert origin.root().url == "http://a.example:8080/"

    def test_relative_url_is_not_an_origin(self):
        assert Origin.from_url("/img/logo.png") is None
        assert Origin.from_url("cdn.example") is None

    def test_parse_keywords(self):
        assert parse_source("'self'") == SELF
        assert parse_source("'SELF'") == SELF
        assert parse_source("'none'") == NONE
        assert parse_source("'strict-dynamic'") == STRICT_DYNAMIC

    def test_parse_nonce_and_hash(self):
        assert parse_source("'nonce-abc123'") == Nonce("abc123")
        assert parse_source("'sha384-dGVzdA=='") == Hash("sha384", "dGVzdA==")

    def test_parse_scheme(self):
        assert parse_source("data:") == DATA
        assert parse_source("BLOB:") == Scheme("blob")

    def test_parse_drops_wildcards_and_bare_hosts(self):
        assert parse_source("*") is None
        assert parse_source("*.example.com") is None
        assert parse_source("cdn.example") is None

    def test_render(self):
        assert Keyword("unsafe-eval").render() == "'unsafe-eval'"
        assert Nonce("n").render() == "'nonce-n'"
        assert Hash("sha256", "d").render() == "'sha256-d'"
        assert DATA.render() == "data:"


# ── add ──────────────────────────────────────────────────────────────────


class TestPolicySetAdd:
    """Live discovery into the accumulator."""

    def test_first_add_seeds_self(self):
        policy = PolicySet()
        assert policy.add(Directive.script_src, _origin("https://a.example/x.js"))
        assert policy.values(Directive.script_src) == ["'self'", "https://a.example/x.js"]

    def test_adding_self_to_empty_directive(self):
        policy = PolicySet()
        assert policy.add(Directive.img_src, SELF)
        assert policy.values(Directive.img_src) == ["'self'"]

    def test_duplicate_add_is_noop(self):
        policy = PolicySet()
        policy.add(Directive.script_src, _origin("https://a.example/x.js"))
        assert not policy.add(Directive.script_src, _origin("https://a.example/x.js?v=2"))
        assert policy.values(Directive.script_src) == ["'self'", "https://a.example/x.js"]

    def test_none_is_ignored_during_discovery(self):
        policy = PolicySet()
        assert not policy.add(Directive.img_src, NONE)
        assert not policy.is_populated(Directive.img_src)

    def test_root_then_path_keeps_root(self):
        policy = PolicySet()
        policy.add(Directive.img_src, _origin("https://a.example/"))
        assert not policy.add(Directive.img_src, _origin("https://a.example/x.png"))
        assert policy.values(Directive.img_src) == ["'self'", "https://a.example/"]

    def test_path_then_root_collapses_to_root(self):
        policy = PolicySet()
        policy.add(Directive.img_src, _origin("https://a.example/x"))
        policy.add(Directive.img_src, _origin("https://a.example/y/z.png"))
        policy.add(Directive.img_src, _origin("https://a.example/"))
        assert policy.values(Directive.img_src) == ["'self'", "https://a.example/"]

    def test_root_does_not_subsume_other_origins(self):
        policy = PolicySet()
        policy.add(Directive.img_src, _origin("https://a.example/x.png"))
        policy.add(Directive.img_src, _origin("http://a.example/"))
        policy.add(Directive.img_src, _origin("https://a.example:8443/"))
        assert policy.values(Directive.img_src) == [
            "'self'",
            "http://a.example/",
            "https://a.example/x.png",
            "https://a.example:8443/",
        ]

    def test_discard(self):
        policy = PolicySet()
        policy.add(Directive.style_src, Nonce("abc"))
        policy.discard(Directive.style_src, Nonce("abc"))
        assert not policy.has(Directive.style_src, Nonce("abc"))
        assert policy.has(Directive.style_src, SELF)

    def test_values_are_sorted_by_kind(self):
        policy = PolicySet()
        policy.add(Directive.script_src, _origin("https://b.example/b.js"))
        policy.add(Directive.script_src, Hash("sha256", "abc"))
        policy.add(Directive.script_src, Nonce("zzz"))
        policy.add(Directive.script_src, DATA)
        policy.add(Directive.script_src, UNSAFE_INLINE)
        policy.add(Directive.script_src, _origin("https://a.example/a.js"))
        assert policy.values(Directive.script_src) == [
            "'self'",
            "'unsafe-inline'",
            "data:",
            "'nonce-zzz'",
            "'sha256-abc'",
            "https://a.example/a.js",
            "https://b.example/b.js",
        ]


# ── parse ────────────────────────────────────────────────────────────────


class TestPolicySetParse:
    """Merging pre-existing policies from headers and meta tags."""

    def test_parse_merges_sources(self):
        policy = PolicySet()
        policy.parse("script-src https://cdn.example/lib.js; img-src data:")
        assert policy.values(Directive.script_src) == ["'self'", "https://cdn.example/lib.js"]
        assert policy.values(Directive.img_src) == ["'self'", "data:"]

    def test_empty_and_whitespace(self):
        policy = PolicySet()
        policy.parse("")
        policy.parse("   ")
        assert not any(policy.is_populated(d) for d in REGISTRY)

    def test_explicit_none_suppresses_discoveries(self):
        policy = PolicySet()
        policy.parse("object-src 'none'")
        policy.add(Directive.object_src, _origin("https://plugins.example/x.swf"))
        assert policy.is_none(Directive.object_src)
        assert policy.values(Directive.object_src) == ["'none'"]

    def test_empty_source_list_is_none(self):
        policy = PolicySet()
        policy.parse("frame-src;")
        assert policy.is_none(Directive.frame_src)

    def test_unparseable_tokens_dropped(self):
        policy = PolicySet()
        policy.parse("img-src * cdn.example https://img.example/")
        assert policy.values(Directive.img_src) == ["'self'", "https://img.example/"]

    def test_trailing_and_repeated_semicolons(self):
        policy = PolicySet()
        policy.parse("default-src 'self';;; script-src 'unsafe-eval';")
        assert policy.values(Directive.default_src) == ["'self'"]
        assert policy.values(Directive.script_src) == ["'self'", "'unsafe-eval'"]

    def test_verbatim_directives_kept(self):
        policy = PolicySet()
        policy.parse("sandbox allow-scripts allow-forms; report-uri /csp-report")
        assert policy.values(Directive.sandbox) == ["allow-scripts", "allow-forms"]
        assert policy.values(Directive.report_uri) == ["/csp-report"]

    def test_bare_sandbox_is_populated(self):
        policy = PolicySet()
        policy.parse("sandbox")
        assert policy.is_populated(Directive.sandbox)
        assert policy.values(Directive.sandbox) == []

    def test_unknown_directive_dropped_by_default(self):
        policy = PolicySet()
        policy.parse("upgrade-insecure-requests; require-trusted-types-for 'script'")
        assert policy.unknown_directives() == {}

    def test_unknown_directive_preserved_when_configured(self):
        policy = PolicySet(preserve_unknown=True)
        policy.parse("upgrade-insecure-requests; require-trusted-types-for 'script'")
        assert policy.unknown_directives() == {
            "upgrade-insecure-requests": [],
            "require-trusted-types-for": ["'script'"],
        }

    def test_merging_two_policies_unions(self):
        policy = PolicySet()
        policy.parse("script-src https://a.example/a.js")
        policy.parse("script-src https://b.example/b.js 'strict-dynamic'")
        assert policy.has(Directive.script_src, STRICT_DYNAMIC)
        assert policy.has(Directive.script_src, _origin("https://a.example/a.js"))
        assert policy.has(Directive.script_src, _origin("https://b.example/b.js"))
