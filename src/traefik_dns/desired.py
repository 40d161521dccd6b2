"""Desired-state builder: proxy routes + zone configuration -> records."""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .errors import RecordConflictError
from .models import DesiredRecord, HostRule, RecordKey, RecordType, Zone, ZoneMap, normalize_name
from .rules import try_parse_hosts

logger = logging.getLogger(__name__)


def infer_record_type(target: str) -> RecordType:
    """A for IPv4, AAAA for IPv6, CNAME for anything else."""
    try:
        address = ipaddress.ip_address(target)
    except ValueError:
        return RecordType.CNAME
    return RecordType.AAAA if address.version == 6 else RecordType.A


def parse_exclude_patterns(value: Union[str, Sequence[str]]) -> List[re.Pattern]:
    """Parse domain exclusion patterns.

    Accepts a comma-separated string or a list. Supports three formats:
    exact names, fnmatch-style wildcards, and regexes prefixed with "~".
    """
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    items = value.split(",") if isinstance(value, str) else list(value)
    for raw_item in items:
        item = str(raw_item).strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                regex_str = re.escape(item)
                regex_str = regex_str.replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added exclusion pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid exclusion pattern '{item}': {e}")

    return patterns


def is_domain_excluded(domain: str, patterns: List[re.Pattern]) -> bool:
    """Check if a domain matches any exclusion pattern."""
    return any(pattern.search(domain) for pattern in patterns)


@dataclass
class DesiredState:
    """Result of one build.

    excluded holds names that must see no change at all this cycle
    (conflicting targets); they are absent from records as well.
    """

    records: Dict[RecordKey, DesiredRecord] = field(default_factory=dict)
    excluded: Set[str] = field(default_factory=set)
    errors: List[Exception] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def for_zone(self, zone: Zone) -> List[DesiredRecord]:
        return [r for _, r in sorted(self.records.items()) if r.zone == zone]

    @property
    def names(self) -> Set[str]:
        return {name for name, _ in self.records}


class DesiredStateBuilder:
    def __init__(self, zones: ZoneMap, exclude_patterns: Iterable[re.Pattern] = ()):
        self._zones = zones
        self._exclude = list(exclude_patterns)

    def build(self, entries: Iterable[Tuple[HostRule, str]]) -> DesiredState:
        state = DesiredState()
        # name -> (type, value) -> routes asking for it
        candidates: Dict[str, Dict[Tuple[RecordType, str], List[DesiredRecord]]] = {}

        for rule, fallback_target in entries:
            hosts, error = try_parse_hosts(rule.rule, rule.rule_syntax, rule.router)
            if error is not None:
                logger.warning(f"Skipping router '{rule.router}' from '{rule.source}': {error}")
                state.errors.append(error)
                continue

            for host in sorted(hosts):
                record = self._materialize(host, fallback_target, rule, state)
                if record is None:
                    continue
                by_target = candidates.setdefault(record.name, {})
                by_target.setdefault((record.type, record.value), []).append(record)

        # A name gets exactly one target; anything else freezes it for the cycle.
        for name, by_target in sorted(candidates.items()):
            if len(by_target) > 1:
                types = sorted({record_type.value for record_type, _ in by_target})
                values = [value for _, value in by_target]
                conflict = RecordConflictError(name, "/".join(types), values)
                logger.error(str(conflict))
                state.errors.append(conflict)
                state.excluded.add(name)
                continue
            record = next(iter(by_target.values()))[0]
            state.records[record.key] = record
        return state

    def _materialize(
        self, host: str, fallback_target: str, rule: HostRule, state: DesiredState
    ) -> Optional[DesiredRecord]:
        if is_domain_excluded(host, self._exclude):
            logger.debug(f"Excluding domain '{host}' (matches exclusion pattern)")
            return None

        zone = self._zones.resolve(host)
        if zone is None:
            logger.debug(f"Hostname '{host}' is outside every managed zone, ignoring")
            return None

        target = zone.target or fallback_target
        if not target:
            state.warnings.append(
                f"No target for {host}: zone {zone} and source '{rule.source}' define none"
            )
            return None

        record_type = zone.record_type or infer_record_type(target)
        value = normalize_name(target) if record_type == RecordType.CNAME else target.strip()
        if record_type == RecordType.CNAME and (host == zone.suffix or host == value):
            message = f"Cannot place a CNAME at {host} -> {value} in zone {zone}"
            logger.warning(message)
            state.warnings.append(message)
            return None

        return DesiredRecord(
            name=host,
            type=record_type,
            value=value,
            zone=zone,
            ttl=zone.ttl,
            proxied=zone.proxied,
        )
