"""DNS provider backends."""

from .base import DNSProvider
from .cloudflare import CloudflareDNSProvider
from .rate_limit import RateLimit
from .route53 import Route53DNSProvider

__all__ = ["DNSProvider", "CloudflareDNSProvider", "RateLimit", "Route53DNSProvider"]
