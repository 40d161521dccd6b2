"""Data model shared by the reconciliation engine."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .errors import ZoneConfigError

# =============================================================================
# Names
# =============================================================================


def normalize_name(name: str) -> str:
    """Canonical form used for every comparison: lowercase, no trailing dot."""
    return (name or "").strip().lower().rstrip(".")


def in_suffix(name: str, suffix: str) -> bool:
    """True when name is suffix itself or a subdomain of it."""
    return name == suffix or name.endswith("." + suffix)


# =============================================================================
# Enums
# =============================================================================


class RecordType(str, Enum):
    """Record types the engine knows how to manage."""

    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"
    TXT = "TXT"


MANAGED_TYPES = frozenset({RecordType.A, RecordType.AAAA, RecordType.CNAME})


class OpStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


# =============================================================================
# Zones
# =============================================================================


@dataclass(frozen=True)
class Zone:
    """A provider-scoped zone and the defaults for records created in it."""

    provider: str
    zone_id: str
    suffix: str
    target: str = ""
    record_type: Optional[RecordType] = None
    ttl: Optional[int] = None
    proxied: Optional[bool] = None

    def contains(self, name: str) -> bool:
        return in_suffix(normalize_name(name), self.suffix)

    def __str__(self) -> str:
        return f"{self.provider}:{self.suffix}"


class ZoneMap:
    """Longest-suffix lookup over every configured zone.

    Two zones serving the same suffix make lookups ambiguous, so that is
    rejected here, when configuration is loaded.
    """

    def __init__(self, zones: Iterable[Zone]):
        self._zones: List[Zone] = list(zones)
        by_suffix: Dict[str, List[Zone]] = {}
        for zone in self._zones:
            if not zone.suffix:
                raise ZoneConfigError(f"Zone {zone.zone_id!r} on '{zone.provider}' has no suffix")
            by_suffix.setdefault(zone.suffix, []).append(zone)
        duplicates = {s: zs for s, zs in by_suffix.items() if len(zs) > 1}
        if duplicates:
            details = "; ".join(
                f"{suffix} -> {', '.join(f'{z.provider}/{z.zone_id}' for z in zs)}"
                for suffix, zs in sorted(duplicates.items())
            )
            raise ZoneConfigError(f"Ambiguous zone suffixes: {details}")
        # Longest suffix first so the first hit is the most specific zone.
        self._ordered = sorted(self._zones, key=lambda z: len(z.suffix), reverse=True)

    def __iter__(self):
        return iter(self._zones)

    def __len__(self) -> int:
        return len(self._zones)

    def resolve(self, name: str) -> Optional[Zone]:
        name = normalize_name(name)
        for zone in self._ordered:
            if in_suffix(name, zone.suffix):
                return zone
        return None

    def for_provider(self, provider: str) -> List[Zone]:
        return [z for z in self._zones if z.provider == provider]

    def targets(self) -> Dict[Zone, str]:
        return {z: z.target for z in self._zones if z.target}


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class HostRule:
    """A raw router rule as fetched from a proxy instance."""

    rule: str
    router: str
    source: str = ""
    rule_syntax: str = ""


RecordKey = Tuple[str, RecordType]


@dataclass(frozen=True)
class DesiredRecord:
    """A record that should exist. ttl/proxied of None mean "don't care"."""

    name: str
    type: RecordType
    value: str
    zone: Zone
    ttl: Optional[int] = None
    proxied: Optional[bool] = None

    @property
    def key(self) -> RecordKey:
        return (self.name, self.type)

    def __str__(self) -> str:
        return f"{self.name} {self.type.value} {self.value}"


@dataclass(frozen=True)
class ActualRecord:
    """A record set as read from a provider.

    Route53 returns one record set per (name, type); flat providers group
    their per-value records into one ActualRecord, keeping each native id.
    """

    name: str
    type: str
    values: Tuple[str, ...]
    ttl: Optional[int] = None
    native_ids: Tuple[str, ...] = ()
    proxied: Optional[bool] = None
    alias: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.type)

    def matches(self, desired: DesiredRecord) -> bool:
        """No-op equality: value always, ttl/proxied only when configured."""
        if self.type != desired.type.value or self.alias:
            return False
        if self.values != (desired.value,):
            return False
        if desired.ttl is not None and self.ttl != desired.ttl:
            return False
        if desired.proxied is not None and self.proxied is not None:
            return self.proxied == desired.proxied
        return True

    def __str__(self) -> str:
        return f"{self.name} {self.type} {','.join(self.values)}"


# =============================================================================
# Change operations
# =============================================================================


@dataclass(frozen=True)
class CreateOp:
    """Create a record; marker, when set, is created first."""

    zone: Zone
    record: DesiredRecord
    marker: Optional[DesiredRecord] = None

    kind = "create"

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def record_type(self) -> str:
        return self.record.type.value

    def __str__(self) -> str:
        return f"create {self.record}"


@dataclass(frozen=True)
class UpdateOp:
    zone: Zone
    current: ActualRecord
    record: DesiredRecord

    kind = "update"

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def record_type(self) -> str:
        return self.record.type.value

    def __str__(self) -> str:
        return f"update {self.current} -> {self.record}"


@dataclass(frozen=True)
class DeleteOp:
    """Delete a record.

    marker_of is set when the record is the ownership marker of that name;
    such deletes are skipped if anything else for the name failed.
    """

    zone: Zone
    record: ActualRecord
    marker_of: Optional[str] = None

    kind = "delete"

    @property
    def name(self) -> str:
        return self.marker_of or self.record.name

    @property
    def record_type(self) -> str:
        return self.record.type

    def __str__(self) -> str:
        return f"delete {self.record}"


ChangeOp = Union[CreateOp, UpdateOp, DeleteOp]


@dataclass
class OpOutcome:
    op: ChangeOp
    status: OpStatus
    error: Optional[Exception] = None
    attempts: int = 0


# =============================================================================
# Cycle result
# =============================================================================


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation cycle."""

    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    aborted: bool = False
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Exception] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    outcomes: List[OpOutcome] = field(default_factory=list)

    def record(self, outcome: OpOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == OpStatus.SKIPPED:
            self.skipped += 1
        elif outcome.status == OpStatus.FAILED:
            self.failed += 1
            if outcome.error is not None:
                self.errors.append(outcome.error)
        elif isinstance(outcome.op, CreateOp):
            self.created += 1
        elif isinstance(outcome.op, UpdateOp):
            self.updated += 1
        elif isinstance(outcome.op, DeleteOp):
            self.deleted += 1

    def finish(self) -> "ReconciliationResult":
        self.finished_at = time.time()
        return self

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.failed and not self.errors

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deleted

    def as_event(self) -> Dict[str, object]:
        duration = (self.finished_at or time.time()) - self.started_at
        error_kinds = Counter(type(e).__name__ for e in self.errors)
        return {
            "event": "reconcile_cycle",
            "aborted": self.aborted,
            "records_created": self.created,
            "records_updated": self.updated,
            "records_deleted": self.deleted,
            "records_skipped": self.skipped,
            "records_failed": self.failed,
            "error_count": len(self.errors),
            "error_kinds": dict(error_kinds),
            "errors": [str(e) for e in self.errors],
            "warnings": list(self.warnings),
            "duration_seconds": round(duration, 3),
        }
