"""Ownership markers.

Every name this controller manages carries a sibling TXT record at
``<prefix>.<name>`` whose value identifies this installation. Ownership is
read from the provider every cycle and never inferred from a record's name
or value: an unmarked record is foreign, however familiar it looks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import MANAGED_TYPES, ActualRecord, DesiredRecord, RecordType, Zone, normalize_name

DEFAULT_MARKER_PREFIX = "_traefik-dns"
HERITAGE = "heritage=traefik-dns"


@dataclass
class ZoneState:
    """A zone's records split by ownership."""

    owned: Dict[Tuple[str, str], ActualRecord] = field(default_factory=dict)
    markers: Dict[str, ActualRecord] = field(default_factory=dict)
    foreign: Dict[Tuple[str, str], ActualRecord] = field(default_factory=dict)

    def owned_at(self, name: str) -> List[ActualRecord]:
        return [r for (n, _), r in sorted(self.owned.items()) if n == name]

    def foreign_at(self, name: str) -> List[ActualRecord]:
        return [r for (n, _), r in sorted(self.foreign.items()) if n == name]


class OwnershipTracker:
    def __init__(self, owner_id: str, prefix: str = DEFAULT_MARKER_PREFIX):
        if not owner_id:
            raise ValueError("owner_id must not be empty")
        self.owner_id = owner_id
        self.prefix = normalize_name(prefix)
        self.token = f"{HERITAGE},traefik-dns/owner={owner_id}"

    def marker_name(self, name: str) -> str:
        return f"{self.prefix}.{normalize_name(name)}"

    def managed_name(self, marker_name: str) -> Optional[str]:
        """Inverse of marker_name; None if marker_name is not a marker name."""
        marker_name = normalize_name(marker_name)
        head = self.prefix + "."
        if marker_name.startswith(head) and len(marker_name) > len(head):
            return marker_name[len(head):]
        return None

    def marker_for(self, name: str, zone: Zone, ttl: Optional[int] = None) -> DesiredRecord:
        """The TXT record to create alongside a new managed record."""
        return DesiredRecord(
            name=self.marker_name(name),
            type=RecordType.TXT,
            value=self.token,
            zone=zone,
            ttl=ttl,
        )

    def is_marker(self, record: ActualRecord) -> bool:
        """True for a TXT marker carrying this installation's token."""
        return (
            record.type == RecordType.TXT.value
            and self.managed_name(record.name) is not None
            and self.token in record.values
        )

    def is_owned(self, name: str, actual_records: Iterable[ActualRecord]) -> bool:
        marker = self.marker_name(name)
        return any(r.name == marker and self.is_marker(r) for r in actual_records)

    def partition(self, actual_records: Iterable[ActualRecord]) -> ZoneState:
        records = list(actual_records)
        state = ZoneState()
        owned_names: Set[str] = set()
        for record in records:
            if self.is_marker(record):
                managed = self.managed_name(record.name)
                state.markers[managed] = record
                owned_names.add(managed)

        for record in records:
            if self.is_marker(record):
                continue
            if (
                record.name in owned_names
                and record.type in {t.value for t in MANAGED_TYPES}
                and not record.alias
            ):
                state.owned[record.key] = record
            else:
                state.foreign[record.key] = record
        return state
