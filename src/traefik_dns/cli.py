#!/usr/bin/env python3
"""traefik-dns - Traefik to DNS synchronization

Watches the host rules of Traefik HTTP routers and keeps matching A, AAAA or
CNAME records in Route53 and Cloudflare zones, similar in spirit to
Kubernetes external-dns. Only records carrying this installation's ownership
marker are ever changed or deleted.

Supported DNS Providers:
    - route53: Amazon Route53 hosted zones
    - cloudflare: Cloudflare zones

Supported Reverse Proxies:
    - traefik: Traefik v2 and v3 HTTP routers

Configuration file:
    CONFIG_PATH            YAML file, or directory of *.yaml files (*.template ignored)
                           (default: /config/traefik-dns.yaml)
                           Example:
                             owner_id: "homelab"
                             poll_interval: "1m"
                             traefik:
                               instances:
                                 - name: "edge"
                                   url: "http://traefik:8080"
                                   target: "203.0.113.10"
                                   api_version: "v3"
                                   router_filter: "*-public"
                             providers:
                               - name: "cf"
                                 type: "cloudflare"
                                 credentials:
                                   api_token: "..."
                                 zones:
                                   - suffix: "example.com"
                                     zone_id: "023e105f4ecef8ad9ca31a8372d0c353"
                                     proxied: true
                               - name: "aws"
                                 type: "route53"
                                 zones:
                                   - suffix: "internal.example.org"
                                     zone_id: "Z0123456789ABCDEFGHIJ"
                                     target: "lb.example.org"
                                     ttl: 300

Environment variables (used when the config file leaves a setting out):

    Traefik (single instance):
        TRAEFIK_URL            Traefik API base URL (default: http://traefik:8080)
        TRAEFIK_TARGET         Address or hostname records point at
        TRAEFIK_API_VERSION    "v2" or "v3" rule syntax (default: v3)

    DNS (single provider, single zone):
        DNS_PROVIDER           "route53" or "cloudflare"
        DNS_ZONE               Zone suffix, e.g. example.com
        DNS_ZONE_ID            Provider zone id
        DNS_RECORD_TYPE        A, AAAA or CNAME (default: inferred from the target)
        DNS_TTL                Record TTL (default: provider default)

    Cloudflare:
        CLOUDFLARE_API_TOKEN   API token, or
        CLOUDFLARE_EMAIL       account email plus
        CLOUDFLARE_API_KEY     global API key
        CLOUDFLARE_PROXIED     Proxy records through Cloudflare (true/false)

    Route53:
        AWS_REGION             Region for the Route53 client; credentials come from
                               the standard AWS chain when not configured

    Runtime:
        OWNER_ID               Ownership token written into markers (default: traefik-dns)
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS  Poll interval in watch mode (default: 60)
        EXCLUDE_DOMAINS        Comma-separated exact names, wildcards or ~regex patterns
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        LOG_FORMAT             "text" or "json" (default: text)

Signals:
    SIGTERM, SIGINT            Finish in-flight provider calls, then exit
    SIGHUP                     Reconcile now (dropped if a cycle is running)
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from typing import Dict, List, Optional

from .config import ProviderSettings, Settings, load_settings
from .desired import DesiredStateBuilder, parse_exclude_patterns
from .errors import ConfigError
from .logging_setup import configure_logging
from .ownership import OwnershipTracker
from .providers import CloudflareDNSProvider, DNSProvider, RateLimit, Route53DNSProvider
from .proxy import ProxySource, create_proxy_source
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 1
EXIT_CYCLE_FAILED = 2

# =============================================================================
# Provider Registry
# =============================================================================


def create_dns_provider(settings: ProviderSettings) -> DNSProvider:
    """Factory function to create a configured DNS provider."""
    rate_limit = RateLimit(*settings.rate_limit) if settings.rate_limit else None
    creds = settings.credentials
    if settings.type == "route53":
        return Route53DNSProvider(
            settings.name,
            settings.zones,
            region=creds.get("region", ""),
            access_key_id=creds.get("access_key_id", ""),
            secret_access_key=creds.get("secret_access_key", ""),
            timeout=settings.timeout,
            rate_limit=rate_limit,
        )
    if settings.type == "cloudflare":
        return CloudflareDNSProvider(
            settings.name,
            settings.zones,
            api_token=creds.get("api_token", ""),
            email=creds.get("email", ""),
            api_key=creds.get("api_key", ""),
            timeout=settings.timeout,
            rate_limit=rate_limit,
        )
    raise ValueError(
        f"Unsupported DNS provider: '{settings.type}'. Supported providers: route53, cloudflare"
    )


def create_proxy_sources(settings: Settings) -> List[ProxySource]:
    """Factory function to create one source per configured Traefik instance."""
    return [create_proxy_source(instance) for instance in settings.instances]


def build_reconciler(
    settings: Settings,
    providers: Optional[Dict[str, DNSProvider]] = None,
    sources: Optional[List[ProxySource]] = None,
) -> Reconciler:
    """Wire a Reconciler from settings; providers and sources may be injected."""
    if providers is None:
        providers = {p.name: create_dns_provider(p) for p in settings.providers}
    if sources is None:
        sources = create_proxy_sources(settings)
    tracker = OwnershipTracker(settings.owner_id, settings.marker_prefix)
    builder = DesiredStateBuilder(settings.zones, parse_exclude_patterns(settings.exclude_domains))
    return Reconciler(
        sources=sources,
        providers=providers,
        builder=builder,
        tracker=tracker,
        policy=settings.retry,
        interval=settings.poll_interval,
        max_workers=settings.max_concurrency,
    )


def check_connections(providers: Dict[str, DNSProvider]) -> None:
    """Check every provider once; failures are reported but not fatal."""
    for provider in providers.values():
        if not provider.test_connection():
            logger.warning(
                f"Cannot reach {provider.kind} provider '{provider.name}'; "
                "its zones will be retried every cycle"
            )


def install_signal_handlers(reconciler: Reconciler) -> None:
    def _shutdown(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down gracefully...")
        reconciler.shutdown()

    def _reconcile_now(signum, frame):
        logger.info("Received SIGHUP, reconciling now")
        # The handler runs on the main thread, which may be mid-cycle.
        threading.Thread(target=reconciler.trigger, name="sighup", daemon=True).start()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reconcile_now)


# =============================================================================
# Main
# =============================================================================


def main() -> None:
    """Main entry point."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "text").lower())

    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    providers = {p.name: create_dns_provider(p) for p in settings.providers}
    reconciler = build_reconciler(settings, providers=providers)

    logger.info(f"traefik-dns: traefik -> {', '.join(f'{p.type}:{p.name}' for p in settings.providers)}")
    logger.info(f"Proxy instances: {', '.join(i.name for i in settings.instances)}")
    logger.info(f"Zones: {', '.join(str(z) for z in settings.zones)}")
    logger.info(f"Owner id: {settings.owner_id}")
    if settings.exclude_domains:
        logger.info(f"Domain exclusions: {len(settings.exclude_domains)} pattern(s) configured")
    logger.info(f"Sync mode: {settings.sync_mode}")

    check_connections(providers)

    if settings.sync_mode == "once":
        result = reconciler.trigger()
        sys.exit(0 if result is not None and result.ok else EXIT_CYCLE_FAILED)

    install_signal_handlers(reconciler)
    reconciler.run()


if __name__ == "__main__":
    main()
