"""Differencer: desired records vs. a zone's live, ownership-partitioned state.

Output order is creates, then updates, then deletes, so a host that moves
between names always has a record somewhere. Marker deletes come last of
all, after every record delete they guard.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Collection, Dict, Iterable, List, Set, Tuple

from .models import (
    MANAGED_TYPES,
    ActualRecord,
    ChangeOp,
    CreateOp,
    DeleteOp,
    DesiredRecord,
    RecordType,
    UpdateOp,
    Zone,
)
from .ownership import OwnershipTracker, ZoneState

logger = logging.getLogger(__name__)

_MANAGED_TYPE_NAMES = {t.value for t in MANAGED_TYPES}
_CNAME = RecordType.CNAME.value


@dataclass
class DiffResult:
    ops: List[ChangeOp] = field(default_factory=list)
    # Desired records left alone because an unowned record holds the name.
    skipped: List[DesiredRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _blocks(existing: ActualRecord, wanted: DesiredRecord) -> bool:
    """True if existing prevents creating wanted at the same name.

    Any unowned address record does: marking the name would silently adopt it.
    """
    if existing.type == wanted.type.value or existing.type in _MANAGED_TYPE_NAMES:
        return True
    # A CNAME cannot share its name with any other record.
    return existing.type == _CNAME or wanted.type == RecordType.CNAME


class Differencer:
    def __init__(self, tracker: OwnershipTracker):
        self._tracker = tracker

    def diff(
        self,
        zone: Zone,
        desired: Iterable[DesiredRecord],
        state: ZoneState,
        *,
        excluded: Collection[str] = (),
        known_targets: Collection[str] = (),
    ) -> DiffResult:
        result = DiffResult()
        wanted: Dict[Tuple[str, str], DesiredRecord] = {
            (d.name, d.type.value): d for d in desired if d.name not in excluded
        }
        desired_names = {name for name, _ in wanted}

        creates: List[ChangeOp] = []
        updates: List[ChangeOp] = []
        deletes: List[ChangeOp] = []
        consumed: Set[Tuple[str, str]] = set()
        marked: Set[str] = set(state.markers)

        for key, record in sorted(wanted.items()):
            owned = state.owned.get(key)
            if owned is not None:
                consumed.add(key)
                if not owned.matches(record):
                    updates.append(UpdateOp(zone, owned, record))
                continue

            blockers = [r for r in state.foreign_at(record.name) if _blocks(r, record)]
            if blockers:
                result.skipped.append(record)
                if any(r.matches(record) for r in blockers):
                    logger.debug(f"{record} already exists unowned in {zone}, leaving it")
                else:
                    result.warnings.append(
                        f"{record.name} in {zone} is held by unowned "
                        f"{', '.join(str(r) for r in blockers)}; not touching it"
                    )
                continue

            replaceable = [
                r
                for r in state.owned_at(record.name)
                if r.key not in wanted and r.key not in consumed and _blocks(r, record)
            ]
            if replaceable:
                # Type change at a managed name: swap in place. A create next
                # to the old record would be rejected when either is a CNAME.
                victim = replaceable[0]
                consumed.add(victim.key)
                updates.append(UpdateOp(zone, victim, record))
                continue

            marker = None
            if record.name not in marked:
                marker = self._tracker.marker_for(record.name, zone, record.ttl)
                marked.add(record.name)
            creates.append(CreateOp(zone, record, marker))

        for key, owned in sorted(state.owned.items()):
            if key in consumed or key in wanted or owned.name in excluded:
                continue
            deletes.append(DeleteOp(zone, owned))

        for name, marker in sorted(state.markers.items()):
            if name in desired_names or name in excluded:
                continue
            deletes.append(DeleteOp(zone, marker, marker_of=name))

        result.warnings.extend(self._orphan_warnings(zone, state, desired_names, excluded, known_targets))
        result.ops = creates + updates + deletes
        return result

    def _orphan_warnings(
        self,
        zone: Zone,
        state: ZoneState,
        desired_names: Set[str],
        excluded: Collection[str],
        known_targets: Collection[str],
    ) -> List[str]:
        warnings = []
        if not known_targets:
            return warnings
        for (name, record_type), record in sorted(state.foreign.items()):
            if record_type not in _MANAGED_TYPE_NAMES or record.alias:
                continue
            if name in desired_names or name in excluded:
                continue
            if any(value in known_targets for value in record.values):
                warnings.append(
                    f"{record} in {zone} points at a managed target but has no ownership "
                    f"marker ({self._tracker.marker_name(name)}); leaving it untouched"
                )
        return warnings
