"""Unit tests for ownership markers."""

import pytest

from traefik_dns.models import ActualRecord, RecordType, Zone
from traefik_dns.ownership import OwnershipTracker

ZONE = Zone(provider="cf", zone_id="z1", suffix="example.com")
TOKEN = "heritage=traefik-dns,traefik-dns/owner=homelab"


def marker(name: str, token: str = TOKEN) -> ActualRecord:
    return ActualRecord(name=f"_traefik-dns.{name}", type="TXT", values=(token,))


class TestOwnershipTracker:
    """Tests for marker naming and recognition."""

    def test_marker_name_round_trip(self) -> None:
        """Test marker_name and managed_name are inverses."""
        tracker = OwnershipTracker("homelab")
        assert tracker.marker_name("App.Example.com.") == "_traefik-dns.app.example.com"
        assert tracker.managed_name("_traefik-dns.app.example.com") == "app.example.com"
        assert tracker.managed_name("app.example.com") is None
        assert tracker.managed_name("_traefik-dns.") is None

    def test_marker_for_builds_txt_record(self) -> None:
        """Test the desired marker is a TXT carrying the owner token."""
        record = OwnershipTracker("homelab").marker_for("app.example.com", ZONE, 300)
        assert record.type == RecordType.TXT
        assert record.name == "_traefik-dns.app.example.com"
        assert record.value == TOKEN
        assert record.ttl == 300

    def test_other_owner_marker_is_not_ours(self) -> None:
        """Test a marker written by another installation is ignored."""
        tracker = OwnershipTracker("homelab")
        other = marker("app.example.com", "heritage=traefik-dns,traefik-dns/owner=office")
        assert not tracker.is_marker(other)
        assert not tracker.is_owned("app.example.com", [other])

    def test_is_owned(self) -> None:
        """Test a name is owned only when our marker exists for it."""
        tracker = OwnershipTracker("homelab")
        assert tracker.is_owned("app.example.com", [marker("app.example.com")])
        assert not tracker.is_owned("other.example.com", [marker("app.example.com")])

    def test_empty_owner_rejected(self) -> None:
        """Test an empty owner id is refused."""
        with pytest.raises(ValueError):
            OwnershipTracker("")


class TestPartition:
    """Tests for splitting a zone's records by ownership."""

    def test_partition_owned_markers_and_foreign(self) -> None:
        """Test marked names are owned and everything else is foreign."""
        tracker = OwnershipTracker("homelab")
        owned = ActualRecord("app.example.com", "A", ("10.0.0.1",))
        foreign = ActualRecord("www.example.com", "A", ("10.0.0.1",))
        state = tracker.partition([owned, foreign, marker("app.example.com")])

        assert state.owned == {owned.key: owned}
        assert set(state.markers) == {"app.example.com"}
        assert state.foreign == {foreign.key: foreign}

    def test_unmarked_record_is_foreign_even_if_it_looks_managed(self) -> None:
        """Test ownership never comes from a record's value."""
        tracker = OwnershipTracker("homelab")
        record = ActualRecord("app.example.com", "A", ("203.0.113.10",))
        state = tracker.partition([record])
        assert state.owned == {}
        assert state.foreign_at("app.example.com") == [record]

    def test_non_managed_types_at_marked_name_stay_foreign(self) -> None:
        """Test an MX or alias at a marked name is never owned."""
        tracker = OwnershipTracker("homelab")
        mx = ActualRecord("app.example.com", "MX", ("10 mail.example.com",))
        alias = ActualRecord("app.example.com", "AAAA", ("dualstack.elb.amazonaws.com",), alias=True)
        state = tracker.partition([mx, alias, marker("app.example.com")])
        assert state.owned == {}
        assert len(state.foreign) == 2

    def test_custom_prefix(self) -> None:
        """Test a configured marker prefix is honored."""
        tracker = OwnershipTracker("homelab", prefix="_owner")
        record = ActualRecord("_owner.app.example.com", "TXT", (TOKEN,))
        assert tracker.is_marker(record)
        assert not tracker.is_marker(marker("app.example.com"))
