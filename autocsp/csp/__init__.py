"""Content-Security-Policy synthesis engine."""

from autocsp.csp.cache import ClassificationCache
from autocsp.csp.directives import Directive
from autocsp.csp.engine import CSPEngine, CSPResult
from autocsp.csp.exceptions import CSPConfigError, CSPError
from autocsp.csp.fetcher import FetchResult, ResourceFetcher
from autocsp.csp.policy import PolicySet
from autocsp.csp.session import EngineOptions

__all__ = [
    "CSPConfigError",
    "CSPEngine",
    "CSPError",
    "CSPResult",
    "ClassificationCache",
    "Directive",
    "EngineOptions",
    "FetchResult",
    "PolicySet",
    "ResourceFetcher",
]
