"""Unit tests for desired-state building and domain exclusions."""

from typing import List, Tuple

from traefik_dns.desired import (
    DesiredStateBuilder,
    infer_record_type,
    is_domain_excluded,
    parse_exclude_patterns,
)
from traefik_dns.errors import RecordConflictError, RuleParseError
from traefik_dns.models import HostRule, RecordType, Zone, ZoneMap

ZONE = Zone(provider="cf", zone_id="z1", suffix="example.com")
SUB_ZONE = Zone(provider="aws", zone_id="z2", suffix="internal.example.com", target="lb.example.org")


def entry(rule: str, target: str = "203.0.113.10", source: str = "edge", router: str = "r") -> Tuple[HostRule, str]:
    return HostRule(rule=rule, router=router, source=source), target


def builder(*zones: Zone, exclude: str = "") -> DesiredStateBuilder:
    return DesiredStateBuilder(ZoneMap(zones or [ZONE]), parse_exclude_patterns(exclude))


# =============================================================================
# Exclude Pattern Parsing Tests
# =============================================================================


def test_parse_exclude_patterns_empty() -> None:
    """Empty string returns empty list."""
    assert parse_exclude_patterns("") == []


def test_parse_exclude_patterns_exact_match() -> None:
    """Exact domain creates anchored pattern."""
    patterns = parse_exclude_patterns("auth.example.com")
    assert is_domain_excluded("auth.example.com", patterns)
    assert not is_domain_excluded("other.auth.example.com", patterns)


def test_parse_exclude_patterns_wildcard() -> None:
    """Wildcard pattern (fnmatch-style) is converted to regex."""
    patterns = parse_exclude_patterns("*.internal.*")
    assert is_domain_excluded("app.internal.example.com", patterns)
    assert not is_domain_excluded("app.example.com", patterns)


def test_parse_exclude_patterns_regex() -> None:
    """Pattern prefixed with ~ is used as raw regex."""
    patterns = parse_exclude_patterns(r"~^staging-\d+\.example\.com$")
    assert is_domain_excluded("staging-42.example.com", patterns)
    assert not is_domain_excluded("staging-x.example.com", patterns)


def test_parse_exclude_patterns_accepts_list() -> None:
    """A list of patterns works like the comma-separated form."""
    patterns = parse_exclude_patterns(["a.example.com", " ", "b-*"])
    assert len(patterns) == 2
    assert is_domain_excluded("b-1.example.com", patterns)


def test_parse_exclude_patterns_skips_invalid_regex() -> None:
    """Invalid regex is skipped, the rest still apply."""
    patterns = parse_exclude_patterns("~[unclosed,a.example.com")
    assert len(patterns) == 1


def test_is_domain_excluded_case_insensitive() -> None:
    """Matching ignores case."""
    assert is_domain_excluded("AUTH.example.com", parse_exclude_patterns("auth.example.com"))


# =============================================================================
# Record Type Inference
# =============================================================================


def test_infer_record_type() -> None:
    """IPv4 gives A, IPv6 gives AAAA, anything else CNAME."""
    assert infer_record_type("10.0.0.1") == RecordType.A
    assert infer_record_type("2001:db8::1") == RecordType.AAAA
    assert infer_record_type("lb.example.org") == RecordType.CNAME


# =============================================================================
# Builder
# =============================================================================


class TestDesiredStateBuilder:
    """Tests for turning router rules into desired records."""

    def test_builds_record_from_instance_target(self) -> None:
        """Test a host in a zone becomes an A record at the instance target."""
        state = builder().build([entry("Host(`svc.example.com`)")])

        record = state.records[("svc.example.com", RecordType.A)]
        assert record.value == "203.0.113.10"
        assert record.zone == ZONE
        assert state.errors == []

    def test_zone_target_overrides_instance_target(self) -> None:
        """Test a zone's target wins and its CNAME type is inferred."""
        state = builder(ZONE, SUB_ZONE).build([entry("Host(`app.internal.example.com`)")])

        record = state.records[("app.internal.example.com", RecordType.CNAME)]
        assert record.value == "lb.example.org"
        assert record.zone == SUB_ZONE

    def test_longest_suffix_zone_wins(self) -> None:
        """Test a name under two suffixes resolves to the most specific zone."""
        state = builder(ZONE, SUB_ZONE).build(
            [entry("Host(`a.internal.example.com`) || Host(`b.example.com`)")]
        )
        zones = {name: r.zone for (name, _), r in state.records.items()}
        assert zones == {"a.internal.example.com": SUB_ZONE, "b.example.com": ZONE}

    def test_host_outside_every_zone_is_ignored(self) -> None:
        """Test names with no managing zone produce nothing."""
        state = builder().build([entry("Host(`app.other.org`)")])
        assert state.records == {}
        assert state.errors == []

    def test_rule_parse_error_is_collected(self) -> None:
        """Test a broken rule is reported and other rules still build."""
        state = builder().build(
            [entry("Host(`broken.example.com`", router="bad"), entry("Host(`ok.example.com`)")]
        )
        assert list(state.names) == ["ok.example.com"]
        assert len(state.errors) == 1
        assert isinstance(state.errors[0], RuleParseError)

    def test_excluded_domain_is_skipped(self) -> None:
        """Test exclusion patterns drop matching hosts."""
        state = builder(exclude="skip.example.com").build(
            [entry("Host(`skip.example.com`) || Host(`keep.example.com`)")]
        )
        assert state.names == {"keep.example.com"}

    def test_duplicate_routers_same_target_are_merged(self) -> None:
        """Test two routers routing the same host to the same target agree."""
        state = builder().build(
            [entry("Host(`a.example.com`)", source="core"), entry("Host(`a.example.com`)", source="edge")]
        )
        assert len(state.records) == 1
        assert state.errors == []

    def test_conflicting_targets_fail_closed(self) -> None:
        """Test two targets for one name exclude that name entirely."""
        entries: List[Tuple[HostRule, str]] = [
            entry("Host(`a.example.com`)", target="10.0.0.1", source="core"),
            entry("Host(`a.example.com`)", target="10.0.0.2", source="edge"),
            entry("Host(`b.example.com`)", target="10.0.0.1"),
        ]
        state = builder().build(entries)

        assert state.names == {"b.example.com"}
        assert "a.example.com" in state.excluded
        conflicts = [e for e in state.errors if isinstance(e, RecordConflictError)]
        assert len(conflicts) == 1
        assert conflicts[0].name == "a.example.com"

    def test_conflict_across_types_freezes_whole_name(self) -> None:
        """Test a conflict on one type also drops the name's other types."""
        entries = [
            entry("Host(`a.example.com`)", target="10.0.0.1", source="core"),
            entry("Host(`a.example.com`)", target="10.0.0.2", source="edge"),
            entry("Host(`a.example.com`)", target="2001:db8::1", source="v6"),
        ]
        state = builder().build(entries)
        assert state.records == {}
        assert state.excluded == {"a.example.com"}

    def test_address_and_cname_targets_conflict(self) -> None:
        """Test an IP target and a hostname target for one name are one conflict."""
        entries = [
            entry("Host(`svc.example.com`)", target="1.2.3.4", source="core"),
            entry("Host(`svc.example.com`)", target="lb.example.net", source="edge"),
        ]
        state = builder().build(entries)

        assert state.records == {}
        assert state.excluded == {"svc.example.com"}
        conflicts = [e for e in state.errors if isinstance(e, RecordConflictError)]
        assert len(conflicts) == 1
        assert conflicts[0].record_type == "A/CNAME"
        assert conflicts[0].values == ("1.2.3.4", "lb.example.net")

    def test_cname_at_zone_apex_is_rejected(self) -> None:
        """Test a CNAME cannot be placed at the zone apex."""
        state = builder().build([entry("Host(`example.com`)", target="lb.example.org")])
        assert state.records == {}
        assert state.warnings

    def test_missing_target_is_a_warning(self) -> None:
        """Test a host with no zone or instance target is skipped with a warning."""
        state = builder().build([entry("Host(`a.example.com`)", target="")])
        assert state.records == {}
        assert any("No target" in w for w in state.warnings)

    def test_zone_ttl_and_proxied_are_carried(self) -> None:
        """Test zone defaults flow onto desired records."""
        zone = Zone(provider="cf", zone_id="z1", suffix="example.com", ttl=120, proxied=True)
        state = builder(zone).build([entry("Host(`a.example.com`)")])
        record = state.records[("a.example.com", RecordType.A)]
        assert record.ttl == 120
        assert record.proxied is True

    def test_for_zone_filters_records(self) -> None:
        """Test for_zone returns only that zone's records."""
        state = builder(ZONE, SUB_ZONE).build(
            [entry("Host(`a.internal.example.com`) || Host(`b.example.com`)")]
        )
        assert [r.name for r in state.for_zone(SUB_ZONE)] == ["a.internal.example.com"]
