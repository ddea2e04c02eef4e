"""End-to-end CSP synthesis tests over whole documents."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from autocsp.csp.cache import ClassificationCache
from autocsp.csp.directives import REGISTRY
from autocsp.csp.engine import CSPEngine
from autocsp.csp.exceptions import CSPConfigError
from autocsp.csp.inline import digest
from autocsp.csp.session import EngineOptions
from tests.helpers.csp import (
    NONCE_ATTR_RE,
    NONCE_SOURCE_RE,
    PAGE_URL,
    FakeFetcher,
    css_response,
    directive_values,
    js_response,
)

PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>Shop</title>
  <link rel="stylesheet" href="/css/site.css">
  <link rel="icon" href="https://static.example/favicon.ico">
  <style>body { margin: 0 }</style>
</head>
<body>
  <img src="https://img.example/banner.jpg" srcset="https://img.example/banner@2x.jpg 2x">
  <iframe src="https://video.example/embed/42"></iframe>
  <script src="https://cdn.example/lib.js"></script>
  <script>fetch("https://api.example/cart")</script>
  <script type="application/json">{"not": "code"}</script>
</body>
</html>
"""


class TestEngineConfig:
    def test_rejects_unknown_injection_method(self):
        with pytest.raises(CSPConfigError):
            CSPEngine(EngineOptions(injection_method="cookies"), cache=ClassificationCache(), fetcher=FakeFetcher())

    def test_rejects_unknown_digest(self):
        with pytest.raises(CSPConfigError):
            CSPEngine(EngineOptions(inline_method="md5"), cache=ClassificationCache(), fetcher=FakeFetcher())


class TestSynthesis:
    @pytest.mark.asyncio
    async def test_full_page_policy(self, make_engine):
        result = await make_engine().process(PAGE, PAGE_URL)
        values = directive_values(result.policy)

        assert values["default-src"] == ["'none'"]
        assert values["img-src"] == [
            "'self'",
            "https://img.example/banner.jpg",
            "https://img.example/banner@2x.jpg",
            "https://static.example/favicon.ico",
        ]
        assert values["frame-src"] == ["'self'", "https://video.example/embed/42"]
        assert "https://cdn.example/lib.js" in values["script-src"]
        assert values["connect-src"] == ["'self'", "https://api.example/cart"]
        assert values["object-src"] == ["'none'"]
        assert "form-action" not in values

    @pytest.mark.asyncio
    async def test_absent_fetch_directives_are_none(self, make_engine):
        result = await make_engine().process("<p>hello</p>", PAGE_URL)
        expected = " ".join(f"{d.value} 'none';" for d in REGISTRY if d.is_fetch)
        assert result.policy == expected

    @pytest.mark.asyncio
    async def test_inline_script_nonce(self, make_engine):
        result = await make_engine().process("<html><body><script>console.log(1)</script></body></html>", PAGE_URL)
        nonces = NONCE_ATTR_RE.findall(result.html)
        assert len(nonces) == 1
        assert f"'nonce-{nonces[0]}'" in directive_values(result.policy)["script-src"]

    @pytest.mark.asyncio
    async def test_non_js_script_untouched(self, make_engine):
        html = '<script type="application/json">{"a": 1}</script>'
        result = await make_engine().process(html, PAGE_URL)
        assert result.html == html
        assert directive_values(result.policy)["script-src"] == ["'none'"]

    @pytest.mark.asyncio
    async def test_root_subsumes_path(self, make_engine):
        html = '<img src="https://a.example/x"><img src="https://a.example/">'
        result = await make_engine().process(html, PAGE_URL)
        assert directive_values(result.policy)["img-src"] == ["'self'", "https://a.example/"]

    @pytest.mark.asyncio
    async def test_external_stylesheet_scanned(self, make_engine, fetcher):
        fetcher.responses["https://cdn.example/app.css"] = css_response("body { background: url(img/logo.png) }")
        html = '<head><link rel="stylesheet" href="https://cdn.example/app.css"></head>'
        result = await make_engine(scan_external=True).process(html, PAGE_URL)
        values = directive_values(result.policy)
        assert "https://cdn.example/img/logo.png" in values["img-src"]
        assert "https://cdn.example/app.css" in values["style-src"]

    @pytest.mark.asyncio
    async def test_base_href(self, make_engine):
        html = '<head><base href="https://static.example/assets/"></head><body><img src="logo.png"></body>'
        result = await make_engine().process(html, PAGE_URL)
        values = directive_values(result.policy)
        assert values["img-src"] == ["'self'", "https://static.example/assets/logo.png"]
        assert values["base-uri"] == ["'self'", "https://static.example/assets/"]

    @pytest.mark.asyncio
    async def test_same_origin_files_fetched_from_upstream(self, make_engine, fetcher):
        fetcher.responses["http://upstream:3000/js/app.js"] = js_response('fetch("https://api.example/v2")')
        result = await make_engine(upstream_url="http://upstream:3000").process(
            '<script src="/js/app.js"></script>', PAGE_URL
        )
        assert fetcher.calls == ["http://upstream:3000/js/app.js"]
        assert directive_values(result.policy)["connect-src"] == ["'self'", "https://api.example/v2"]

    @pytest.mark.asyncio
    async def test_untrusted_origin_leaves_cache_empty(self, make_engine, fetcher):
        fetcher.responses["http://upstream:3000/js/app.js"] = js_response('fetch("https://api.example/v2")')
        cache = ClassificationCache("all")
        engine = make_engine(cache=cache, upstream_url="http://upstream:3000")

        result = await engine.process('<script src="/js/app.js"></script>', PAGE_URL, origin_trusted=False)

        assert "https://api.example/v2" in directive_values(result.policy)["connect-src"]
        assert cache.get_contents("https://site.example/js/app.js") is None

        await engine.process('<script src="/js/app.js"></script>', PAGE_URL)
        assert cache.get_contents("https://site.example/js/app.js") is not None


class TestDeterminism:
    @pytest.mark.asyncio
    async def test_digest_runs_identical(self):
        async def run():
            engine = CSPEngine(
                EngineOptions(inline_method="sha256"),
                cache=ClassificationCache("none"),
                fetcher=FakeFetcher(),
            )
            return await engine.process(PAGE, PAGE_URL)

        first, second = await run(), await run()
        assert first.policy == second.policy
        assert first.html == second.html
        expected = f"'sha256-{digest('body { margin: 0 }', 'sha256')}'"
        assert expected in directive_values(first.policy)["style-src"]

    @pytest.mark.asyncio
    async def test_nonce_runs_differ_only_in_nonces(self, make_engine):
        first = await make_engine().process(PAGE, PAGE_URL)
        second = await make_engine().process(PAGE, PAGE_URL)
        assert first.policy != second.policy
        assert NONCE_SOURCE_RE.sub("'nonce-X'", first.policy) == NONCE_SOURCE_RE.sub("'nonce-X'", second.policy)


class TestInlineStyleAttribute:
    """A style attribute anywhere forces 'unsafe-inline' for styles."""

    HTML = (
        "<html><head><style>h1 { color: blue }</style></head>"
        '<body><p style="color:red">x</p><style>p { margin: 0 }</style>'
        "<script>run()</script></body></html>"
    )

    @pytest.mark.asyncio
    async def test_nonce_mode(self, make_engine):
        result = await make_engine().process(self.HTML, PAGE_URL)
        values = directive_values(result.policy)
        assert values["style-src"] == ["'self'", "'unsafe-inline'"]
        # Only the script keeps a nonce
        assert len(NONCE_ATTR_RE.findall(result.html)) == 1
        assert "<style>h1" in result.html
        assert any(v.startswith("'nonce-") for v in values["script-src"])

    @pytest.mark.asyncio
    async def test_digest_mode(self, make_engine):
        result = await make_engine(inline_method="sha384").process(self.HTML, PAGE_URL)
        values = directive_values(result.policy)
        assert values["style-src"] == ["'self'", "'unsafe-inline'"]
        assert f"'sha384-{digest('run()', 'sha384')}'" in values["script-src"]


class TestStrictDynamic:
    @pytest.mark.asyncio
    async def test_nonce_mode_blesses_external_script(self, make_engine):
        result = await make_engine().process(
            '<script src="a.js"></script>', PAGE_URL, inbound_policies=["script-src 'strict-dynamic'"]
        )
        nonces = NONCE_ATTR_RE.findall(result.html)
        values = directive_values(result.policy)["script-src"]
        assert len(nonces) == 1
        assert f"'nonce-{nonces[0]}'" in values
        assert "'strict-dynamic'" in values

    @pytest.mark.asyncio
    async def test_digest_mode_hashes_external_file(self, make_engine, fetcher):
        fetcher.responses["https://cdn.example/a.js"] = js_response("boot()")
        result = await make_engine(inline_method="sha256").process(
            '<script src="https://cdn.example/a.js"></script>',
            PAGE_URL,
            inbound_policies=["script-src 'strict-dynamic'"],
        )
        assert f"'sha256-{digest('boot()', 'sha256')}'" in directive_values(result.policy)["script-src"]
        assert "nonce=" not in result.html

    @pytest.mark.asyncio
    async def test_without_strict_dynamic_external_script_not_nonced(self, make_engine):
        result = await make_engine().process('<script src="https://cdn.example/a.js"></script>', PAGE_URL)
        assert "nonce=" not in result.html


class TestInjection:
    @pytest.mark.asyncio
    async def test_headers_mode_leaves_markup(self, make_engine):
        result = await make_engine().process("<html><head></head><body></body></html>", PAGE_URL)
        assert result.needs_header
        assert "http-equiv" not in result.html

    @pytest.mark.asyncio
    async def test_meta_tag_first_in_head(self, make_engine):
        html = (
            "<html><head><title>t</title>"
            '<meta http-equiv="Content-Security-Policy" content="img-src https://img.example/">'
            '</head><body><img src="/a.png"></body></html>'
        )
        result = await make_engine(injection_method="meta-tags").process(html, PAGE_URL)

        assert not result.needs_header
        assert result.html.startswith('<html><head><meta http-equiv="Content-Security-Policy" content="')
        assert result.html.count("http-equiv") == 1
        assert directive_values(result.policy)["img-src"] == ["'self'", "https://img.example/"]

    @pytest.mark.asyncio
    async def test_meta_without_head_falls_back_to_header(self, make_engine):
        result = await make_engine(injection_method="meta-tags").process("<p>no head</p>", PAGE_URL)
        assert result.injection_method == "headers"
        assert result.needs_header
        assert result.html == "<p>no head</p>"

    @pytest.mark.asyncio
    async def test_inbound_policy_merged(self, make_engine):
        result = await make_engine().process(
            "<p>x</p>", PAGE_URL, inbound_policies=["frame-ancestors 'none'; report-uri /csp"]
        )
        assert "frame-ancestors 'none';" in result.policy
        assert "report-uri /csp;" in result.policy


class TestFailures:
    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self):
        fetcher = FakeFetcher()
        fetcher.fetch = AsyncMock(side_effect=RuntimeError("fetcher bug"))
        engine = CSPEngine(EngineOptions(), cache=ClassificationCache("none"), fetcher=fetcher)
        with pytest.raises(RuntimeError, match="fetcher bug"):
            await engine.process('<script>const u = "https://img.example/photo";</script>', PAGE_URL)

    @pytest.mark.asyncio
    async def test_unclassifiable_resources_dropped(self, make_engine, fetcher):
        result = await make_engine().process('<script>const u = "https://img.example/photo";</script>', PAGE_URL)
        assert fetcher.calls == ["https://img.example/photo"]
        assert directive_values(result.policy)["img-src"] == ["'none'"]
