"""Configuration loading.

Settings come from YAML (one file, or a directory of *.yaml files whose
top-level lists are merged), with environment variables filling anything
the YAML leaves out. Everything is validated here, once, at startup: a bad
configuration raises ConfigError and never reaches the reconciliation loop.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError
from .models import RecordType, Zone, ZoneMap, normalize_name
from .ownership import DEFAULT_MARKER_PREFIX
from .proxy import ProxyInstance
from .retry import RetryPolicy
from .rules import RULE_SYNTAX_V2, RULE_SYNTAX_V3

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/config/traefik-dns.yaml"
DEFAULT_TRAEFIK_URL = "http://traefik:8080"
DEFAULT_POLL_INTERVAL = 60.0
PROVIDER_TYPES = ("route53", "cloudflare")
SYNC_MODES = ("once", "watch")

_OWNER_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


# =============================================================================
# Settings
# =============================================================================


@dataclass
class ProviderSettings:
    name: str
    type: str
    zones: List[Zone] = field(default_factory=list)
    credentials: Dict[str, str] = field(default_factory=dict)
    timeout: float = 10.0
    # (requests, period seconds); None keeps the backend default
    rate_limit: Optional[Tuple[int, float]] = None


@dataclass
class Settings:
    instances: List[ProxyInstance]
    providers: List[ProviderSettings]
    owner_id: str = "traefik-dns"
    marker_prefix: str = DEFAULT_MARKER_PREFIX
    poll_interval: float = DEFAULT_POLL_INTERVAL
    sync_mode: str = "watch"
    max_concurrency: int = 4
    exclude_domains: List[str] = field(default_factory=list)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    config_files: List[str] = field(default_factory=list)

    @property
    def zones(self) -> ZoneMap:
        return ZoneMap(z for p in self.providers for z in p.zones)


# =============================================================================
# Parsing helpers
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    # Path doesn't exist yet
    return []


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    return _parse_bool(value)


def parse_duration(value: Any) -> float:
    """Seconds from a number or a string such as "90", "30s", "5m" or "1h30m"."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower().replace(" ", "")
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ConfigError(f"Invalid duration: {value!r}") from None
            seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


def _parse_int(value: Any, what: str, *, minimum: int = 1) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what} must be an integer, got {value!r}") from None
    if number < minimum:
        raise ConfigError(f"{what} must be >= {minimum}, got {number}")
    return number


def _parse_float(value: Any, what: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what} must be a number, got {value!r}") from None
    if number <= 0:
        raise ConfigError(f"{what} must be positive, got {number}")
    return number


def _str(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _load_yaml(config_files: List[str]) -> Dict[str, Any]:
    """Read and merge config files: lists concatenate, scalars from later files win."""
    merged: Dict[str, Any] = {"instances": [], "providers": [], "exclude_domains": []}
    for config_file in config_files:
        try:
            with open(config_file, "r") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {config_file}: {e}") from e

        if data is None:
            logger.warning(f"Config file {config_file} is empty")
            continue
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_file} must contain a mapping")

        for key, value in data.items():
            if key == "traefik":
                if not isinstance(value, dict):
                    raise ConfigError(f"{config_file}: 'traefik' must be a mapping")
                merged["instances"].extend(_as_list(value.get("instances"), f"{config_file}: traefik.instances"))
            elif key in ("providers", "exclude_domains"):
                if isinstance(value, str) and key == "exclude_domains":
                    value = value.split(",")
                merged[key].extend(_as_list(value, f"{config_file}: {key}"))
            else:
                merged[key] = value
    return merged


def _as_list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{what} must be a list")
    return value


# =============================================================================
# Sections
# =============================================================================


def _instance(item: Any, index: int) -> ProxyInstance:
    if not isinstance(item, dict):
        raise ConfigError(f"traefik.instances[{index}] must be a mapping")
    name = _str(item.get("name")) or f"traefik-{index}"
    url = _str(item.get("url"))
    if not url:
        raise ConfigError(f"Traefik instance '{name}' has no url")
    api_version = _str(item.get("api_version")).lower() or RULE_SYNTAX_V3
    if api_version not in (RULE_SYNTAX_V2, RULE_SYNTAX_V3):
        raise ConfigError(f"Traefik instance '{name}': api_version must be v2 or v3, got {api_version!r}")
    return ProxyInstance(
        name=name,
        url=url,
        target=_str(item.get("target") or item.get("target_ip")),
        api_version=api_version,
        verify_tls=_parse_bool(item.get("verify_tls"), default=True),
        username=_str(item.get("username")),
        password=_str(item.get("password")),
        router_filter=_str(item.get("router_filter")),
        middleware_filter=_str(item.get("middleware_filter")),
        timeout=_parse_float(item.get("timeout", 5.0), f"Traefik instance '{name}' timeout"),
    )


def _zone(provider: str, provider_type: str, item: Any) -> Zone:
    if not isinstance(item, dict):
        raise ConfigError(f"Provider '{provider}': each zone must be a mapping")
    suffix = normalize_name(_str(item.get("suffix")))
    zone_id = _str(item.get("zone_id"))
    if not suffix or not zone_id:
        raise ConfigError(f"Provider '{provider}': every zone needs a suffix and a zone_id")

    record_type = None
    type_name = _str(item.get("type")).upper()
    if type_name:
        try:
            record_type = RecordType(type_name)
        except ValueError:
            raise ConfigError(f"Zone {suffix}: unsupported record type {type_name!r}") from None
        if record_type == RecordType.TXT:
            raise ConfigError(f"Zone {suffix}: TXT is reserved for ownership markers")

    ttl = item.get("ttl")
    ttl = _parse_int(ttl, f"Zone {suffix} ttl") if ttl not in (None, "") else None

    proxied = _optional_bool(item.get("proxied"))
    if proxied is not None and provider_type != "cloudflare":
        raise ConfigError(f"Zone {suffix}: 'proxied' is only supported by Cloudflare")

    return Zone(
        provider=provider,
        zone_id=zone_id,
        suffix=suffix,
        target=_str(item.get("target")),
        record_type=record_type,
        ttl=ttl,
        proxied=proxied,
    )


def _credentials(provider_type: str, item: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, str]:
    raw = item.get("credentials") or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Provider '{item.get('name')}': credentials must be a mapping")
    given = {k: _str(v) for k, v in raw.items() if _str(v)}
    for key in ("api_token", "email", "api_key", "region", "access_key_id", "secret_access_key"):
        if key not in given and _str(item.get(key)):
            given[key] = _str(item.get(key))

    if provider_type == "cloudflare":
        given.setdefault("api_token", _str(env.get("CLOUDFLARE_API_TOKEN")))
        given.setdefault("email", _str(env.get("CLOUDFLARE_EMAIL")))
        given.setdefault("api_key", _str(env.get("CLOUDFLARE_API_KEY")))
        if not given["api_token"] and not (given["email"] and given["api_key"]):
            raise ConfigError(
                f"Cloudflare provider '{item.get('name')}' needs api_token or email + api_key "
                "(CLOUDFLARE_API_TOKEN, or CLOUDFLARE_EMAIL + CLOUDFLARE_API_KEY)"
            )
    else:
        # Keys left empty fall through to boto3's default credential chain.
        given.setdefault("region", _str(env.get("AWS_REGION")))
    return {k: v for k, v in given.items() if v}


def _provider(item: Any, index: int, env: Mapping[str, str]) -> ProviderSettings:
    if not isinstance(item, dict):
        raise ConfigError(f"providers[{index}] must be a mapping")
    provider_type = _str(item.get("type")).lower()
    if provider_type not in PROVIDER_TYPES:
        raise ConfigError(
            f"Unsupported DNS provider type: {provider_type!r}. Supported: {', '.join(PROVIDER_TYPES)}"
        )
    name = _str(item.get("name")) or provider_type

    zones = [_zone(name, provider_type, z) for z in _as_list(item.get("zones"), f"Provider '{name}' zones")]
    if not zones:
        raise ConfigError(f"Provider '{name}' has no zones")

    rate_limit = None
    raw_limit = item.get("rate_limit")
    if raw_limit is not None:
        if not isinstance(raw_limit, dict):
            raise ConfigError(f"Provider '{name}': rate_limit must be a mapping")
        rate_limit = (
            _parse_int(raw_limit.get("requests"), f"Provider '{name}' rate_limit.requests"),
            parse_duration(raw_limit.get("period", 1)),
        )

    return ProviderSettings(
        name=name,
        type=provider_type,
        zones=zones,
        credentials=_credentials(provider_type, item, env),
        timeout=_parse_float(item.get("timeout", 10.0), f"Provider '{name}' timeout"),
        rate_limit=rate_limit,
    )


def _env_provider(env: Mapping[str, str]) -> Optional[Dict[str, Any]]:
    """Single-provider, single-zone configuration from environment variables."""
    provider_type = _str(env.get("DNS_PROVIDER")).lower()
    if not provider_type:
        return None
    zone: Dict[str, Any] = {
        "suffix": env.get("DNS_ZONE"),
        "zone_id": env.get("DNS_ZONE_ID"),
        "type": env.get("DNS_RECORD_TYPE"),
        "ttl": env.get("DNS_TTL"),
    }
    if provider_type == "cloudflare":
        zone["proxied"] = env.get("CLOUDFLARE_PROXIED")
    return {"name": provider_type, "type": provider_type, "zones": [zone]}


def _retry_policy(raw: Any) -> RetryPolicy:
    if raw is None:
        return RetryPolicy()
    if not isinstance(raw, dict):
        raise ConfigError("retry must be a mapping")
    defaults = RetryPolicy()
    return RetryPolicy(
        max_attempts=_parse_int(raw.get("max_attempts", defaults.max_attempts), "retry.max_attempts"),
        base_delay=parse_duration(raw.get("base_delay", defaults.base_delay)),
        max_delay=parse_duration(raw.get("max_delay", defaults.max_delay)),
        max_total_wait=parse_duration(raw.get("max_total_wait", defaults.max_total_wait)),
    )


def _check_unique(names: List[str], what: str) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ConfigError(f"Duplicate {what} name: '{name}'")
        seen.add(name)


# =============================================================================
# Loader
# =============================================================================


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build validated Settings from CONFIG_PATH and the environment.

    Raises:
        ConfigError: on any invalid or missing setting.
        ZoneConfigError: when zone suffixes are ambiguous across providers.
    """
    env = os.environ if env is None else env
    config_path = _str(env.get("CONFIG_PATH")) or DEFAULT_CONFIG_PATH
    config_files = find_config_files(config_path)
    raw = _load_yaml(config_files)
    if config_files:
        logger.info(f"Loaded configuration from {len(config_files)} file(s) at {config_path}")
    else:
        logger.info(f"No config file at {config_path}, using environment variables")

    raw_instances = raw["instances"]
    if not raw_instances:
        raw_instances = [
            {
                "name": "traefik",
                "url": env.get("TRAEFIK_URL") or DEFAULT_TRAEFIK_URL,
                "target": env.get("TRAEFIK_TARGET"),
                "api_version": env.get("TRAEFIK_API_VERSION"),
            }
        ]
    instances = [_instance(item, i) for i, item in enumerate(raw_instances)]
    _check_unique([i.name for i in instances], "Traefik instance")

    raw_providers = raw["providers"]
    if not raw_providers:
        env_provider = _env_provider(env)
        if env_provider is None:
            raise ConfigError("No DNS provider configured (set 'providers' in the config file or DNS_PROVIDER)")
        raw_providers = [env_provider]
    providers = [_provider(item, i, env) for i, item in enumerate(raw_providers)]
    _check_unique([p.name for p in providers], "provider")

    owner_id = _str(raw.get("owner_id") or env.get("OWNER_ID")) or "traefik-dns"
    if not _OWNER_ID.match(owner_id):
        raise ConfigError(f"owner_id may only contain letters, digits, '.', '_' and '-': {owner_id!r}")

    marker_prefix = normalize_name(_str(raw.get("marker_prefix")) or DEFAULT_MARKER_PREFIX)

    sync_mode = (_str(raw.get("sync_mode") or env.get("SYNC_MODE")) or "watch").lower()
    if sync_mode not in SYNC_MODES:
        raise ConfigError(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")

    exclude_domains = [_str(d) for d in raw["exclude_domains"] if _str(d)]
    if not exclude_domains:
        exclude_domains = [d.strip() for d in _str(env.get("EXCLUDE_DOMAINS")).split(",") if d.strip()]

    settings = Settings(
        instances=instances,
        providers=providers,
        owner_id=owner_id,
        marker_prefix=marker_prefix,
        poll_interval=parse_duration(
            raw.get("poll_interval") or env.get("POLL_INTERVAL_SECONDS") or DEFAULT_POLL_INTERVAL
        ),
        sync_mode=sync_mode,
        max_concurrency=_parse_int(raw.get("max_concurrency", 4), "max_concurrency"),
        exclude_domains=exclude_domains,
        retry=_retry_policy(raw.get("retry")),
        config_files=config_files,
    )

    zones = settings.zones  # raises ZoneConfigError on ambiguous suffixes
    for zone in zones:
        if not zone.target and not any(i.target for i in instances):
            raise ConfigError(
                f"Zone {zone} has no target and no Traefik instance defines one "
                "(set zones[].target, traefik.instances[].target or TRAEFIK_TARGET)"
            )
    return settings
