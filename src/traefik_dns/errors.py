"""Exception taxonomy for traefik-dns.

Failures are scoped to the smallest unit that can absorb them:

    RuleParseError       one router rule (rule excluded, cycle continues)
    ProxySourceError     the whole cycle (aborted before any provider call)
    RecordConflictError  one (name, type) (excluded from the cycle)
    ProviderError        one change operation (retried or reported)
    ConfigError          startup only (fatal)
"""

from __future__ import annotations

from typing import Optional, Sequence


class TraefikDnsError(Exception):
    """Base class for all errors raised by traefik-dns."""


# =============================================================================
# Rule / proxy errors
# =============================================================================


class RuleParseError(TraefikDnsError):
    """A router rule could not be parsed into hostnames."""

    def __init__(self, rule: str, reason: str, router: str = ""):
        self.rule = rule
        self.reason = reason
        self.router = router
        where = f" (router '{router}')" if router else ""
        super().__init__(f"Cannot parse rule {rule!r}{where}: {reason}")


class ProxySourceError(TraefikDnsError):
    """Fetching routers from a proxy instance failed.

    Always aborts the cycle: a partial hostname list is indistinguishable
    from "nothing should exist".
    """

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Proxy source '{source}': {message}")


class ProxyUnreachable(ProxySourceError):
    """Network failure or timeout talking to the proxy API."""


class ProxyUnauthorized(ProxySourceError):
    """The proxy API rejected our credentials."""


class ProxyMalformedResponse(ProxySourceError):
    """The proxy API answered with something that is not a router listing."""


class RecordConflictError(TraefikDnsError):
    """Two routes want the same name with different targets."""

    def __init__(self, name: str, record_type: str, values: Sequence[str]):
        self.name = name
        self.record_type = record_type
        self.values = tuple(sorted(values))
        super().__init__(
            f"Conflicting targets for {name} ({record_type}): {', '.join(self.values)}; "
            "name excluded from this cycle"
        )


# =============================================================================
# Provider errors
# =============================================================================


class ProviderError(TraefikDnsError):
    """A DNS provider call failed."""

    retryable = False
    kind = "error"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        self.attempts = 0
        super().__init__(message)


class RateLimitedError(ProviderError):
    """The provider asked us to slow down; retry_after is honored exactly."""

    retryable = True
    kind = "rate_limited"


class TransientProviderError(ProviderError):
    """Timeouts, connection resets and 5xx responses."""

    retryable = True
    kind = "transient"


class RecordNotFoundError(ProviderError):
    kind = "not_found"


class ProviderConflictError(ProviderError):
    """The provider rejected the change because of existing state."""

    kind = "conflict"


class ProviderUnauthorizedError(ProviderError):
    kind = "unauthorized"


class InvalidRecordError(ProviderError):
    kind = "invalid"


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigError(TraefikDnsError):
    """Configuration is missing or invalid. Fatal at startup."""


class ZoneConfigError(ConfigError):
    """Zone suffixes cannot be mapped unambiguously."""
