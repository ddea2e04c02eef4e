"""HTTP fetch capability used by the classifier and scanners."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

import httpx
import structlog

logger = structlog.get_logger()

DEFAULT_MAX_RESOURCE_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class FetchResult:
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str | None:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value or None
        return None


class ResourceFetcher:
    """Fetch referenced resources over a shared ``httpx.AsyncClient``.

    Bodies are streamed and abandoned as soon as they exceed ``max_bytes``.
    Transport errors, invalid URLs and oversized bodies return None; the
    caller drops that resource's contribution.
    """

    def __init__(self, client: httpx.AsyncClient, *, max_bytes: int = DEFAULT_MAX_RESOURCE_BYTES) -> None:
        self._client = client
        self._max_bytes = max_bytes

    async def fetch(self, url: str) -> FetchResult | None:
        try:
            async with self._client.stream("GET", url) as resp:
                if self._declared_too_large(resp):
                    logger.debug("csp_fetch_too_large", url=url, content_length=resp.headers["content-length"])
                    return None
                body = bytearray()
                async for chunk in resp.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > self._max_bytes:
                        logger.debug("csp_fetch_too_large", url=url, read_bytes=len(body))
                        return None
        except httpx.InvalidURL as exc:
            logger.debug("csp_fetch_invalid_url", url=url, error=str(exc))
            return None
        except httpx.HTTPError as exc:
            logger.debug("csp_fetch_failed", url=url, error=str(exc))
            return None

        text = bytes(body).decode(resp.encoding or "utf-8", errors="replace")
        return FetchResult(status_code=resp.status_code, headers=dict(resp.headers), text=text)

    def _declared_too_large(self, resp: httpx.Response) -> bool:
        content_length = resp.headers.get("content-length")
        if not content_length:
            return False
        try:
            return int(content_length) > self._max_bytes
        except (ValueError, OverflowError):
            return False
