"""Shared test fixtures."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from autocsp.csp.cache import ClassificationCache
from autocsp.csp.engine import CSPEngine
from autocsp.csp.session import EngineOptions, ScanSession
from tests.helpers.csp import PAGE_URL, FakeFetcher


@pytest.fixture(autouse=True)
def _mock_settings(monkeypatch):
    """Provide default settings for all tests."""
    monkeypatch.setenv("AUTOCSP_UPSTREAM_URL", "http://mock-upstream:3000")
    monkeypatch.setenv("AUTOCSP_LOG_JSON", "false")
    monkeypatch.setenv("AUTOCSP_LOG_LEVEL", "debug")

    # Reset cached settings
    import autocsp.config.loader as loader
    loader._settings = None
    yield
    loader._settings = None


@pytest.fixture
def fetcher():
    """Fake resource fetcher; tests fill ``fetcher.responses``."""
    return FakeFetcher()


@pytest.fixture
def make_session(fetcher):
    """Factory for a ScanSession around the shared fake fetcher."""

    def _make(page_url: str = PAGE_URL, cache: ClassificationCache | None = None, **options) -> ScanSession:
        return ScanSession(
            page_url,
            EngineOptions(**options),
            cache=cache or ClassificationCache("none"),
            fetcher=fetcher,
        )

    return _make


@pytest.fixture
def make_engine(fetcher):
    """Factory for a CSPEngine around the shared fake fetcher."""

    def _make(cache: ClassificationCache | None = None, **options) -> CSPEngine:
        return CSPEngine(
            EngineOptions(**options),
            cache=cache or ClassificationCache("none"),
            fetcher=fetcher,
        )

    return _make


@pytest.fixture
def client():
    """Create a FastAPI test client."""
    # Reset module state before creating client
    import autocsp.main as main_module
    main_module._pipeline = None
    main_module._http_client = None

    from autocsp.main import app
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
