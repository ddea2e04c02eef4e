"""YAML + env var config loading with pydantic-settings."""

from __future__ import annotations

import signal
from pathlib import Path
from typing import Any, Callable, Literal

import structlog
import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from autocsp.csp.session import EngineOptions

logger = structlog.get_logger()

_DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def _load_yaml_defaults(path: Path) -> dict[str, Any]:
    """Load YAML config file, returning empty dict if it does not exist."""
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


class CSPSettings(BaseSettings):
    """Proxy and CSP engine configuration, overridden by AUTOCSP_* env vars."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOCSP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    upstream_url: str = "http://localhost:3000"
    listen_port: int = 8080
    log_level: str = "info"
    log_json: bool = True
    config_file: str = str(_DEFAULTS_PATH)

    # Proxy settings
    proxy_timeout: float = 30.0
    max_body_bytes: int = 10 * 1024 * 1024
    upstream_max_connections: int = 100
    upstream_max_keepalive: int = 20
    upstream_follow_redirects: bool = False
    # Origin clients reach the proxy on; without it the Host header is used.
    public_origin: str | None = None
    # Honour X-Forwarded-Proto / X-Forwarded-Host from a fronting proxy.
    trust_forwarded_headers: bool = False

    # CSP synthesis
    injection_method: Literal["headers", "meta-tags"] = "headers"
    inline_method: Literal["nonce", "sha256", "sha384", "sha512"] = "nonce"
    cache_method: Literal["none", "same-origin-only", "all"] = "same-origin-only"
    scan_external: bool = False
    recurse_into_referenced_files: bool = False
    treat_same_origin_as_self: bool = True
    preserve_unknown_directives: bool = False

    # Resource fetching for classification and scanning
    fetch_timeout: float = 10.0
    fetch_follow_redirects: bool = True
    max_resource_bytes: int = 5 * 1024 * 1024

    def engine_options(self) -> EngineOptions:
        return EngineOptions(
            injection_method=self.injection_method,
            inline_method=self.inline_method,
            scan_external=self.scan_external,
            recurse_into_referenced_files=self.recurse_into_referenced_files,
            treat_same_origin_as_self=self.treat_same_origin_as_self,
            preserve_unknown_directives=self.preserve_unknown_directives,
            upstream_url=self.upstream_url,
        )


_settings: CSPSettings | None = None


def get_settings() -> CSPSettings:
    """Get or create the singleton settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def load_settings() -> CSPSettings:
    """Load settings: YAML file values first, env vars override them."""
    global _settings
    env_only = CSPSettings()
    overrides = {
        key: value
        for key, value in _load_yaml_defaults(Path(env_only.config_file)).items()
        if key in CSPSettings.model_fields and key not in env_only.model_fields_set
    }
    _settings = CSPSettings(**overrides) if overrides else env_only
    logger.info(
        "config_loaded",
        upstream_url=_settings.upstream_url,
        port=_settings.listen_port,
        injection_method=_settings.injection_method,
        inline_method=_settings.inline_method,
        cache_method=_settings.cache_method,
    )
    return _settings


def register_reload_handler(on_reload: Callable[[], None] | None = None) -> None:
    """Register SIGHUP handler for hot-reload of configuration.

    ``on_reload`` runs after the new settings are loaded, so objects built
    from the old settings can be replaced.
    """
    import threading

    if threading.current_thread() is not threading.main_thread():
        logger.debug("skipping_sighup_handler", reason="not main thread")
        return

    def _reload(signum, frame):
        logger.info("config_reload_triggered")
        try:
            load_settings()
        except ValidationError as exc:
            logger.error("config_reload_failed", error=str(exc))
            return
        if on_reload is not None:
            on_reload()

    try:
        signal.signal(signal.SIGHUP, _reload)
    except (ValueError, AttributeError):
        logger.debug("skipping_sighup_handler", reason="signal not supported")
