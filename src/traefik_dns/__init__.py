"""traefik-dns: keep DNS zones in sync with Traefik router rules."""

__version__ = "1.0.0"
