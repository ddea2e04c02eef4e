"""CSP synthesis engine: scan pass, barrier, serialization, injection pass."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable

import structlog

from autocsp.csp.cache import ClassificationCache
from autocsp.csp.exceptions import CSPConfigError
from autocsp.csp.fetcher import ResourceFetcher
from autocsp.csp.handlers import InsertMetaTagHandler, scan_handlers
from autocsp.csp.inline import check_inline_method
from autocsp.csp.rewriter import DEFAULT_CHUNK_SIZE, HTMLRewriter
from autocsp.csp.session import EngineOptions, InjectionMethod, ScanSession

logger = structlog.get_logger()

INJECTION_METHODS = ("headers", "meta-tags")


@dataclass
class CSPResult:
    """Rewritten document plus the policy and how it must be delivered."""

    html: str
    policy: str
    # "meta-tags" falls back to "headers" when the document has no <head>
    injection_method: InjectionMethod

    @property
    def needs_header(self) -> bool:
        return self.injection_method == "headers"


class CSPEngine:
    """Synthesizes a policy for each HTML document it is given.

    One engine serves every request of a process; it owns the shared
    ClassificationCache and ResourceFetcher. Per request it creates a
    ScanSession and:

    1. seeds the PolicySet from inbound policies,
    2. walks the document once (handlers write into the PolicySet and spawn
       classification / scanning work),
    3. joins every spawned task,
    4. serializes, and for meta-tag injection walks the output a second time.
    """

    def __init__(
        self,
        options: EngineOptions,
        *,
        cache: ClassificationCache,
        fetcher: ResourceFetcher,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if options.injection_method not in INJECTION_METHODS:
            raise CSPConfigError(f"unsupported injection method: {options.injection_method!r}")
        check_inline_method(options.inline_method)
        self.options = options
        self.cache = cache
        self.fetcher = fetcher
        self._chunk_size = chunk_size

    def new_session(self, page_url: str, *, origin_trusted: bool = True) -> ScanSession:
        return ScanSession(
            page_url,
            self.options,
            cache=self.cache,
            fetcher=self.fetcher,
            origin_trusted=origin_trusted,
        )

    async def process(
        self,
        html: str,
        page_url: str,
        *,
        inbound_policies: Iterable[str] = (),
        origin_trusted: bool = True,
    ) -> CSPResult:
        session = self.new_session(page_url, origin_trusted=origin_trusted)
        for policy in inbound_policies:
            session.policy.parse(policy)

        rewriter = HTMLRewriter(self._chunk_size)
        for selector, handler in scan_handlers(session):
            rewriter.on(selector, handler)

        try:
            document = await rewriter.transform(html)
            await session.pending.join()
        except asyncio.CancelledError:
            session.pending.cancel()
            logger.info("csp_scan_cancelled", url=page_url)
            raise
        except BaseException:
            session.pending.cancel()
            raise

        policy = session.policy.serialize()
        output = document.render()
        injection: InjectionMethod = self.options.injection_method

        if injection == "meta-tags":
            inserter = InsertMetaTagHandler(policy)
            injected = await HTMLRewriter(self._chunk_size).on("head", inserter).transform(output)
            if inserter.inserted:
                output = injected.render()
            else:
                logger.warning("csp_meta_no_head", url=page_url)
                injection = "headers"

        logger.info(
            "csp_policy_built",
            url=page_url,
            injection=injection,
            inline_method=self.options.inline_method,
            policy_length=len(policy),
        )
        return CSPResult(html=output, policy=policy, injection_method=injection)
