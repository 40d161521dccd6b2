"""DNS provider capability shared by every backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..models import ActualRecord, ChangeOp, DesiredRecord, Zone, ZoneMap
from .rate_limit import RateLimit


class DNSProvider(ABC):
    """Abstract base class for DNS providers.

    Implementations translate their transport errors into ProviderError
    subclasses and never retry on their own; retries belong to the Applier.
    Instances are shared across worker threads and must not keep mutable
    per-request state.
    """

    # Ops a single apply_batch() call may carry. 1 means no batching.
    max_batch_size = 1

    def __init__(self, name: str, zones: Sequence[Zone], rate_limit: Optional[RateLimit] = None):
        self._name = name
        self._zones = ZoneMap(zones)
        self._rate_limit = rate_limit

    @property
    def name(self) -> str:
        """Return the provider name for logging."""
        return self._name

    @property
    @abstractmethod
    def kind(self) -> str:
        """Backend type, e.g. "route53"."""

    @property
    def zones(self) -> List[Zone]:
        return list(self._zones)

    def zone_for(self, name: str) -> Optional[Zone]:
        """Most specific configured zone serving name, if any."""
        return self._zones.resolve(name)

    def _throttle(self) -> None:
        if self._rate_limit is not None:
            self._rate_limit.acquire()

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""

    @abstractmethod
    def list_records(self, zone: Zone) -> List[ActualRecord]:
        """Every record in the zone; pagination is exhausted internally."""

    @abstractmethod
    def create_record(self, zone: Zone, record: DesiredRecord) -> ActualRecord:
        """Create a record. Re-creating an identical record is not an error."""

    @abstractmethod
    def update_record(self, zone: Zone, current: ActualRecord, record: DesiredRecord) -> ActualRecord:
        """Replace current with record (possibly changing its type)."""

    @abstractmethod
    def delete_record(self, zone: Zone, current: ActualRecord) -> None:
        """Delete every value of the record set."""

    def apply_batch(self, zone: Zone, ops: Sequence[ChangeOp]) -> None:
        """Apply several ops atomically. Only for max_batch_size > 1."""
        raise NotImplementedError(f"{self.kind} provider does not batch changes")
