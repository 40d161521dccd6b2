"""Reconciliation loop.

    Idle -> Polling -> Diffing -> Applying -> Idle

One cycle at a time: a tick or trigger that arrives while a cycle is active
is dropped and logged, never queued. shutdown() drains: the active cycle
finishes the provider calls it already dispatched, starts nothing new, and
run() returns.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, List, Mapping, Optional, Sequence, Set

from .applier import Applier
from .desired import DesiredState, DesiredStateBuilder
from .differ import Differencer
from .errors import ProviderError, ProxySourceError
from .models import ChangeOp, DesiredRecord, ReconciliationResult, Zone, normalize_name
from .ownership import OwnershipTracker
from .providers.base import DNSProvider
from .proxy import ProxySource, SourceEntry
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    DIFFING = "diffing"
    APPLYING = "applying"
    STOPPED = "stopped"


class Reconciler:
    def __init__(
        self,
        *,
        sources: Sequence[ProxySource],
        providers: Mapping[str, DNSProvider],
        builder: DesiredStateBuilder,
        tracker: OwnershipTracker,
        policy: RetryPolicy,
        interval: float = 60.0,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.sources = list(sources)
        self.providers = dict(providers)
        self.builder = builder
        self.tracker = tracker
        self.policy = policy
        self.interval = interval
        self._clock = clock
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._cycle_lock = threading.Lock()
        self._state = LoopState.IDLE
        self._differ = Differencer(tracker)
        self._applier = Applier(
            self.providers,
            policy,
            max_workers=max_workers,
            stop_event=self._stop,
            sleep=self._sleep,
        )
        self.last_result: Optional[ReconciliationResult] = None
        self.dropped_ticks = 0

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def draining(self) -> bool:
        return self._stop.is_set()

    def shutdown(self) -> None:
        """Request a drain; safe to call from a signal handler."""
        if not self._stop.is_set():
            logger.info("Shutdown requested, draining the active cycle")
        self._stop.set()

    def trigger(self) -> Optional[ReconciliationResult]:
        """Run one cycle now unless one is active or shutdown was requested.

        Returns None when the trigger was dropped.
        """
        if self._stop.is_set():
            logger.debug("Not starting a cycle: shutting down")
            return None
        if not self._cycle_lock.acquire(blocking=False):
            self.dropped_ticks += 1
            logger.warning(f"Reconciliation cycle still {self._state.value}; dropping trigger")
            return None
        try:
            return self._run_cycle()
        finally:
            self._state = LoopState.STOPPED if self._stop.is_set() else LoopState.IDLE
            self._cycle_lock.release()

    def run(self) -> None:
        """Run cycles every interval until shutdown() is called."""
        logger.info(f"Reconciling every {self.interval:g}s")
        next_tick = self._clock()
        while not self._stop.is_set():
            try:
                self.trigger()
            except Exception as e:
                # Unexpected errors are logged; the loop keeps ticking.
                logger.error(f"Reconciliation cycle crashed: {e}", exc_info=True)

            next_tick += self.interval
            now = self._clock()
            if now > next_tick:
                missed = int((now - next_tick) // self.interval) + 1
                self.dropped_ticks += missed
                logger.warning(
                    f"Cycle overran the {self.interval:g}s interval; dropping {missed} tick(s)"
                )
                next_tick += missed * self.interval
            self._stop.wait(max(0.0, next_tick - self._clock()))
        # A SIGHUP-triggered cycle may still be running on another thread.
        with self._cycle_lock:
            pass
        self._state = LoopState.STOPPED
        logger.info("Reconciliation loop stopped")

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def _run_cycle(self) -> ReconciliationResult:
        result = ReconciliationResult()
        try:
            self._state = LoopState.POLLING
            try:
                entries = self._fetch()
            except ProxySourceError as e:
                logger.error(f"Aborting cycle, no changes applied: {e}")
                result.aborted = True
                result.errors.append(e)
                return result

            desired = self.builder.build(entries)
            result.errors.extend(desired.errors)
            result.warnings.extend(desired.warnings)

            self._state = LoopState.DIFFING
            ops = self._plan(desired, result)

            if self._stop.is_set():
                logger.info(f"Shutdown requested before applying; {len(ops)} change(s) not started")
                result.skipped += len(ops)
                return result

            self._state = LoopState.APPLYING
            for op in ops:
                logger.info(f"Planned: {op} in {op.zone}")
            for outcome in self._applier.apply(ops):
                result.record(outcome)
            return result
        finally:
            self.last_result = result.finish()
            self._emit(result)

    def _fetch(self) -> List[SourceEntry]:
        entries: List[SourceEntry] = []
        for source in self.sources:
            # Any unreachable source aborts: a partial listing reads as deletions.
            source_entries = source.fetch()
            logger.info(f"Proxy source '{source.name}': {len(source_entries)} router rule(s)")
            entries.extend(source_entries)
        return entries

    def _plan(self, desired: DesiredState, result: ReconciliationResult) -> List[ChangeOp]:
        ops: List[ChangeOp] = []
        for provider in self.providers.values():
            for zone in provider.zones:
                try:
                    actual, _ = call_with_retry(
                        lambda: provider.list_records(zone),
                        self.policy,
                        sleep=self._sleep,
                        should_stop=self._stop.is_set,
                        what=f"list {zone}",
                    )
                except ProviderError as e:
                    logger.error(f"Cannot list {zone}, skipping it this cycle: {e}")
                    result.errors.append(e)
                    continue

                state = self.tracker.partition(actual)
                zone_desired = desired.for_zone(zone)
                diff = self._differ.diff(
                    zone,
                    zone_desired,
                    state,
                    excluded=desired.excluded,
                    known_targets=self._known_targets(zone, zone_desired),
                )
                for warning in diff.warnings:
                    logger.warning(warning)
                result.warnings.extend(diff.warnings)
                result.skipped += len(diff.skipped)
                logger.debug(
                    f"{zone}: {len(zone_desired)} desired, {len(state.owned)} owned, "
                    f"{len(diff.ops)} change(s)"
                )
                ops.extend(diff.ops)
        return ops

    def _known_targets(self, zone: Zone, zone_desired: List[DesiredRecord]) -> Set[str]:
        targets = {r.value for r in zone_desired}
        configured = [zone.target] + [source.target for source in self.sources]
        for target in configured:
            if target:
                targets.update({target.strip(), normalize_name(target)})
        return targets

    @staticmethod
    def _emit(result: ReconciliationResult) -> None:
        event = result.as_event()
        message = (
            f"Reconciliation cycle {'aborted' if result.aborted else 'finished'}: "
            f"{result.created} created, {result.updated} updated, {result.deleted} deleted, "
            f"{result.skipped} skipped, {result.failed} failed, {len(result.errors)} error(s)"
        )
        if result.aborted or result.failed:
            logger.error(message, extra=event)
        elif result.errors:
            logger.warning(message, extra=event)
        else:
            logger.info(message, extra=event)
