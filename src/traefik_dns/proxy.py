"""Reverse proxy sources.

A proxy source answers one question: which router rules are live right now?
Where DNS should point comes from configuration (the instance or zone
target), never from the proxy itself.
"""

from __future__ import annotations

import fnmatch
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.auth import HTTPBasicAuth

from .errors import ProxyMalformedResponse, ProxyUnauthorized, ProxyUnreachable
from .models import HostRule
from .rules import RULE_SYNTAX_V2, RULE_SYNTAX_V3

logger = logging.getLogger(__name__)

ROUTERS_PER_PAGE = 100
# Hard stop in case a proxy keeps advertising a next page.
MAX_ROUTER_PAGES = 1000

SourceEntry = Tuple[HostRule, str]


@dataclass(frozen=True)
class ProxyInstance:
    """Configuration for a reverse proxy instance."""

    name: str
    url: str
    target: str = ""
    api_version: str = RULE_SYNTAX_V3
    verify_tls: bool = True
    username: str = ""
    password: str = ""
    router_filter: str = ""
    middleware_filter: str = ""
    timeout: float = 5.0


class ProxySource(ABC):
    """Abstract base class for reverse proxy sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""

    @property
    def target(self) -> str:
        """Default DNS target for this source's routes, or "" if it has none."""
        return ""

    @abstractmethod
    def fetch(self) -> List[SourceEntry]:
        """Return (rule, fallback target) pairs for every live router.

        Raises ProxySourceError; never returns a partial listing.
        """


class TraefikProxySource(ProxySource):
    """Traefik HTTP routers read from the API (``/api/http/routers``)."""

    api_version = ""

    def __init__(self, instance: ProxyInstance, session: Optional[requests.Session] = None):
        self.instance = instance
        self._base = instance.url.rstrip("/")
        self._session = session or requests.Session()
        if instance.username and instance.password:
            self._session.auth = HTTPBasicAuth(instance.username, instance.password)

    @property
    def name(self) -> str:
        return self.instance.name

    @property
    def target(self) -> str:
        return self.instance.target

    def fetch(self) -> List[SourceEntry]:
        routers = self._get_routers()
        entries: List[SourceEntry] = []
        for router in routers:
            if not isinstance(router, dict):
                logger.debug(f"Skipping non-dict router entry: {router}")
                continue
            router_name = str(router.get("name") or "")

            if str(router.get("status") or "").lower() == "disabled":
                logger.debug(f"Router '{router_name}' is disabled, skipping")
                continue

            if self.instance.router_filter and not self._matches_filter(
                router_name, self.instance.router_filter
            ):
                logger.debug(
                    f"Router '{router_name}' filtered out by name pattern "
                    f"'{self.instance.router_filter}'"
                )
                continue

            if self.instance.middleware_filter and not self._has_middleware(
                router, self.instance.middleware_filter
            ):
                logger.debug(
                    f"Router '{router_name}' filtered out by middleware "
                    f"'{self.instance.middleware_filter}'"
                )
                continue

            rule = router.get("rule")
            if not isinstance(rule, str) or not rule.strip():
                logger.debug(f"Router '{router_name}' has no rule, skipping")
                continue

            host_rule = HostRule(
                rule=rule,
                router=router_name,
                source=self.name,
                rule_syntax=self._rule_syntax(router),
            )
            entries.append((host_rule, self.instance.target))

        logger.debug(f"Proxy instance '{self.name}': {len(entries)} router rule(s)")
        return entries

    @abstractmethod
    def _rule_syntax(self, router: Dict[str, Any]) -> str:
        """Rule syntax the router's expression is written in."""

    def _get_routers(self) -> List[Any]:
        routers: List[Any] = []
        page = 1
        while page <= MAX_ROUTER_PAGES:
            response = self._request(page)
            try:
                data = response.json()
            except (ValueError, json.JSONDecodeError) as e:
                raise ProxyMalformedResponse(self.name, f"invalid JSON: {e}") from e
            if not isinstance(data, list):
                raise ProxyMalformedResponse(
                    self.name, f"expected list, got {type(data).__name__}"
                )
            routers.extend(data)

            next_page = self._next_page(response)
            if not data or next_page <= page:
                return routers
            page = next_page
        raise ProxyMalformedResponse(self.name, f"router listing exceeded {MAX_ROUTER_PAGES} pages")

    def _request(self, page: int) -> requests.Response:
        url = f"{self._base}/api/http/routers"
        try:
            response = self._session.get(
                url,
                params={"page": page, "per_page": ROUTERS_PER_PAGE},
                timeout=self.instance.timeout,
                verify=self.instance.verify_tls,
            )
        except requests.exceptions.Timeout as e:
            raise ProxyUnreachable(self.name, f"timed out fetching {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProxyUnreachable(self.name, f"cannot reach {url}: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise ProxyUnauthorized(self.name, f"HTTP {status} from {url}")
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise ProxyUnreachable(self.name, str(e)) from e
        return response

    @staticmethod
    def _next_page(response: requests.Response) -> int:
        # Traefik sets X-Next-Page to 1 once the last page has been served.
        try:
            return int(response.headers.get("X-Next-Page", 1))
        except (TypeError, ValueError):
            return 1

    def _matches_filter(self, router_name: str, pattern: str) -> bool:
        """Check if router name matches the filter pattern.

        Supports wildcards (* and ?) using fnmatch.
        Example patterns: "*-internal", "app-*", "*-public-*"
        """
        if not pattern:
            return True
        return fnmatch.fnmatch(router_name, pattern)

    def _has_middleware(self, router: Dict[str, Any], middleware_name: str) -> bool:
        """Check if router uses the middleware, ignoring any @provider suffix."""
        if not middleware_name:
            return True

        middlewares = router.get("middlewares", [])
        if not isinstance(middlewares, list):
            return False

        wanted = middleware_name.lower()
        for mw in middlewares:
            if isinstance(mw, str) and mw.split("@")[0].lower() == wanted:
                return True
        return False


class TraefikV2Source(TraefikProxySource):
    """Traefik 2.x: every rule uses v2 syntax (multi-host Host(), HostHeader)."""

    api_version = RULE_SYNTAX_V2

    def _rule_syntax(self, router: Dict[str, Any]) -> str:
        return RULE_SYNTAX_V2


class TraefikV3Source(TraefikProxySource):
    """Traefik 3.x: routers may opt back into v2 syntax via ``ruleSyntax``."""

    api_version = RULE_SYNTAX_V3

    def _rule_syntax(self, router: Dict[str, Any]) -> str:
        syntax = str(router.get("ruleSyntax") or "").strip().lower()
        return RULE_SYNTAX_V2 if syntax == RULE_SYNTAX_V2 else RULE_SYNTAX_V3


def create_proxy_source(instance: ProxyInstance) -> ProxySource:
    """Factory function to create the source matching the instance's API version."""
    version = (instance.api_version or RULE_SYNTAX_V3).lower()
    if version == RULE_SYNTAX_V2:
        return TraefikV2Source(instance)
    if version == RULE_SYNTAX_V3:
        return TraefikV3Source(instance)
    raise ValueError(
        f"Unsupported Traefik API version: '{instance.api_version}'. Supported: v2, v3"
    )
