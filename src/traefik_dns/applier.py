"""Applier: executes change operations against providers.

Zones are independent and run concurrently on a bounded worker pool. Within
one zone, ops run strictly in order (creates and updates, then deletes), so
a zone's record set never sees two of our writes at once.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import ProviderError
from .models import ChangeOp, CreateOp, DeleteOp, OpOutcome, OpStatus, UpdateOp, Zone
from .providers.base import DNSProvider
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

ZoneKey = Tuple[str, str]


class Applier:
    def __init__(
        self,
        providers: Mapping[str, DNSProvider],
        policy: RetryPolicy,
        *,
        max_workers: int = 4,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self._providers = dict(providers)
        self._policy = policy
        self._max_workers = max(1, max_workers)
        self._stop = stop_event or threading.Event()
        # Waiting on the stop event lets a shutdown cut a backoff short.
        self._sleep = sleep or self._stop.wait

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def apply(self, ops: Sequence[ChangeOp]) -> List[OpOutcome]:
        """Apply ops; one outcome per op, grouped by zone in first-seen order."""
        groups: Dict[ZoneKey, List[ChangeOp]] = {}
        zones: Dict[ZoneKey, Zone] = {}
        for op in ops:
            key = (op.zone.provider, op.zone.zone_id)
            groups.setdefault(key, []).append(op)
            zones.setdefault(key, op.zone)

        if len(groups) <= 1 or self._max_workers == 1:
            outcomes: List[OpOutcome] = []
            for key, zone_ops in groups.items():
                outcomes.extend(self._apply_zone(zones[key], zone_ops))
            return outcomes

        workers = min(self._max_workers, len(groups))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="apply") as pool:
            futures = [
                pool.submit(self._apply_zone, zones[key], zone_ops)
                for key, zone_ops in groups.items()
            ]
            outcomes = []
            for future in futures:
                outcomes.extend(future.result())
        return outcomes

    def apply_op(self, op: ChangeOp) -> OpOutcome:
        """Apply a single op with bounded retries."""
        provider = self._provider(op.zone)
        attempts = 0
        try:
            if isinstance(op, CreateOp):
                if op.marker is not None:
                    attempts += self._call(
                        lambda: provider.create_record(op.zone, op.marker), f"create marker {op.marker.name}"
                    )
                attempts += self._call(lambda: provider.create_record(op.zone, op.record), str(op))
            elif isinstance(op, UpdateOp):
                attempts += self._call(
                    lambda: provider.update_record(op.zone, op.current, op.record), str(op)
                )
            elif isinstance(op, DeleteOp):
                attempts += self._call(lambda: provider.delete_record(op.zone, op.record), str(op))
            else:
                raise TypeError(f"Unknown change op: {op!r}")
        except ProviderError as e:
            outcome = OpOutcome(op, OpStatus.FAILED, error=e, attempts=attempts + e.attempts)
            self._report_failure(outcome)
            return outcome
        return OpOutcome(op, OpStatus.APPLIED, attempts=attempts)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _provider(self, zone: Zone) -> DNSProvider:
        try:
            return self._providers[zone.provider]
        except KeyError:
            raise KeyError(f"No provider named '{zone.provider}' for zone {zone}") from None

    def _call(self, fn: Callable[[], object], what: str) -> int:
        _, attempts = call_with_retry(
            fn, self._policy, sleep=self._sleep, should_stop=self._stop.is_set, what=what
        )
        return attempts

    def _apply_zone(self, zone: Zone, ops: Sequence[ChangeOp]) -> List[OpOutcome]:
        provider = self._provider(zone)
        outcomes: List[OpOutcome] = []
        failed_names: Set[str] = set()

        writes = [op for op in ops if not isinstance(op, DeleteOp)]
        deletes = [op for op in ops if isinstance(op, DeleteOp)]
        # Deletes only start once every create/update of the zone has settled.
        for phase in (writes, deletes):
            pending = list(phase)
            while pending:
                if self._stop.is_set():
                    for op in pending:
                        logger.info(f"Shutdown requested, not starting: {op}")
                        outcomes.append(OpOutcome(op, OpStatus.SKIPPED))
                    pending = []
                    break
                chunk, pending = self._next_chunk(pending, provider.max_batch_size, failed_names, outcomes)
                if not chunk:
                    continue
                if len(chunk) == 1:
                    results = [self.apply_op(chunk[0])]
                else:
                    results = self._apply_batch(provider, zone, chunk)
                for outcome in results:
                    if outcome.status == OpStatus.FAILED:
                        failed_names.add(outcome.op.name)
                outcomes.extend(results)
        return outcomes

    @staticmethod
    def _next_chunk(
        pending: List[ChangeOp],
        size: int,
        failed_names: Set[str],
        outcomes: List[OpOutcome],
    ) -> Tuple[List[ChangeOp], List[ChangeOp]]:
        chunk: List[ChangeOp] = []
        rest = list(pending)
        while rest and len(chunk) < max(1, size):
            op = rest.pop(0)
            if isinstance(op, DeleteOp) and op.marker_of and op.marker_of in failed_names:
                logger.warning(
                    f"Keeping ownership marker of {op.marker_of} in {op.zone}: "
                    "another change for that name failed"
                )
                outcomes.append(OpOutcome(op, OpStatus.SKIPPED))
                continue
            chunk.append(op)
        return chunk, rest

    def _apply_batch(self, provider: DNSProvider, zone: Zone, chunk: List[ChangeOp]) -> List[OpOutcome]:
        try:
            attempts = self._call(
                lambda: provider.apply_batch(zone, chunk), f"batch of {len(chunk)} change(s) to {zone}"
            )
        except ProviderError as e:
            outcomes = [OpOutcome(op, OpStatus.FAILED, error=e, attempts=e.attempts) for op in chunk]
            for outcome in outcomes:
                self._report_failure(outcome)
            return outcomes
        return [OpOutcome(op, OpStatus.APPLIED, attempts=attempts) for op in chunk]

    @staticmethod
    def _report_failure(outcome: OpOutcome) -> None:
        op = outcome.op
        error = outcome.error
        logger.error(
            f"Failed to {op} in {op.zone} after {outcome.attempts} attempt(s): {error}",
            extra={
                "event": "reconcile_op_failed",
                "op": op.kind,
                "zone": str(op.zone),
                "record_name": op.name,
                "record_type": op.record_type,
                "attempts": outcome.attempts,
                "error_kind": getattr(error, "kind", type(error).__name__),
                "error": str(error),
            },
        )
