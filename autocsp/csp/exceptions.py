"""CSP engine exceptions."""

from __future__ import annotations


class CSPError(Exception):
    """Base class for CSP engine errors."""
    pass


class CSPConfigError(CSPError):
    """Raised at setup time when the engine is misconfigured."""
    pass
