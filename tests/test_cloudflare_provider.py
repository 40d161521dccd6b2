"""Unit tests for CloudflareDNSProvider."""

from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest
import requests

from traefik_dns.errors import (
    InvalidRecordError,
    ProviderConflictError,
    ProviderUnauthorizedError,
    RateLimitedError,
    RecordNotFoundError,
    TransientProviderError,
)
from traefik_dns.models import ActualRecord, DesiredRecord, RecordType, Zone
from traefik_dns.providers.cloudflare import CloudflareDNSProvider

ZONE = Zone(provider="cf", zone_id="zone123", suffix="example.com")
API = "https://api.cloudflare.com/client/v4"


def make_response(
    result: Any = None,
    status: int = 200,
    errors: Optional[List[Dict[str, Any]]] = None,
    result_info: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> MagicMock:
    """Create a mocked Cloudflare API response."""
    body: Dict[str, Any] = {"success": status < 400 and not errors, "errors": errors or [], "result": result}
    if result_info is not None:
        body["result_info"] = result_info
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = body
    return response


def cf_record(record_id: str, name: str, content: str, rtype: str = "A", **extra: Any) -> Dict[str, Any]:
    record = {"id": record_id, "name": name, "type": rtype, "content": content, "ttl": 1, "proxied": False}
    record.update(extra)
    return record


def desired(name: str = "app.example.com", value: str = "10.0.0.1", **kwargs: Any) -> DesiredRecord:
    return DesiredRecord(name=name, type=kwargs.pop("type", RecordType.A), value=value, zone=ZONE, **kwargs)


@pytest.fixture
def provider() -> CloudflareDNSProvider:
    return CloudflareDNSProvider("cf", [ZONE], api_token="token")


class TestCloudflareAuth:
    """Tests for authentication headers."""

    def test_api_token_uses_bearer(self) -> None:
        """Test an API token is sent as a bearer token."""
        cf = CloudflareDNSProvider("cf", [ZONE], api_token="tok")
        assert cf._session.headers["Authorization"] == "Bearer tok"

    def test_email_and_key(self) -> None:
        """Test the legacy email + global key headers."""
        cf = CloudflareDNSProvider("cf", [ZONE], email="me@example.com", api_key="key")
        assert cf._session.headers["X-Auth-Email"] == "me@example.com"
        assert cf._session.headers["X-Auth-Key"] == "key"

    def test_missing_credentials(self) -> None:
        """Test construction fails without credentials."""
        with pytest.raises(ValueError):
            CloudflareDNSProvider("cf", [ZONE])

    def test_connection_check(self, provider: CloudflareDNSProvider) -> None:
        """Test test_connection reports success and failure."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"id": "zone123"})
            assert provider.test_connection() is True
            mock_request.return_value = make_response(None, status=403)
            assert provider.test_connection() is False


class TestCloudflareListing:
    """Tests for listing and grouping records."""

    def test_list_groups_records_by_name_and_type(self, provider: CloudflareDNSProvider) -> None:
        """Test values of one (name, type) become one record with several ids."""
        records = [
            cf_record("2", "app.example.com", "10.0.0.2"),
            cf_record("1", "app.example.com", "10.0.0.1"),
            cf_record("3", "www.example.com", "App.Example.com.", rtype="CNAME"),
        ]
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(records, result_info={"page": 1, "total_pages": 1})
            listed = provider.list_records(ZONE)

        by_key = {r.key: r for r in listed}
        app = by_key[("app.example.com", "A")]
        assert app.values == ("10.0.0.1", "10.0.0.2")
        assert app.native_ids == ("1", "2")
        assert app.proxied is False
        assert by_key[("www.example.com", "CNAME")].values == ("app.example.com",)

    def test_list_follows_pages(self, provider: CloudflareDNSProvider) -> None:
        """Test every page of the listing is read."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [
                make_response([cf_record("1", "a.example.com", "10.0.0.1")], result_info={"total_pages": 2}),
                make_response([cf_record("2", "b.example.com", "10.0.0.2")], result_info={"total_pages": 2}),
            ]
            listed = provider.list_records(ZONE)

        assert {r.name for r in listed} == {"a.example.com", "b.example.com"}
        assert mock_request.call_args_list[1].kwargs["params"]["page"] == 2

    def test_list_requests_records_endpoint(self, provider: CloudflareDNSProvider) -> None:
        """Test the listing URL and paging parameters."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response([], result_info={"total_pages": 1})
            provider.list_records(ZONE)

        args, kwargs = mock_request.call_args
        assert args == ("GET", f"{API}/zones/zone123/dns_records")
        assert kwargs["params"] == {"page": 1, "per_page": 100}


class TestCloudflareWrites:
    """Tests for create, update and delete."""

    def test_create_posts_payload(self, provider: CloudflareDNSProvider) -> None:
        """Test create sends type, name, content and automatic TTL."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(cf_record("9", "app.example.com", "10.0.0.1"))
            created = provider.create_record(ZONE, desired())

        args, kwargs = mock_request.call_args
        assert args == ("POST", f"{API}/zones/zone123/dns_records")
        assert kwargs["json"] == {"type": "A", "name": "app.example.com", "content": "10.0.0.1", "ttl": 1}
        assert created.native_ids == ("9",)

    def test_create_sends_proxied_when_configured(self, provider: CloudflareDNSProvider) -> None:
        """Test the proxied flag is sent only when set."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(cf_record("9", "app.example.com", "10.0.0.1", proxied=True))
            provider.create_record(ZONE, desired(proxied=True, ttl=300))

        payload = mock_request.call_args.kwargs["json"]
        assert payload["proxied"] is True
        assert payload["ttl"] == 300

    def test_create_existing_identical_record_is_noop(self, provider: CloudflareDNSProvider) -> None:
        """Test 'already exists' with identical content is treated as success."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [
                make_response(None, status=400, errors=[{"code": 81057, "message": "Record already exists."}]),
                make_response([cf_record("5", "app.example.com", "10.0.0.1")], result_info={"total_pages": 1}),
            ]
            record = provider.create_record(ZONE, desired())

        assert record.native_ids == ("5",)
        assert mock_request.call_args_list[1].kwargs["params"]["name"] == "app.example.com"

    def test_create_existing_different_record_is_conflict(self, provider: CloudflareDNSProvider) -> None:
        """Test 'already exists' with other content stays a conflict."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [
                make_response(None, status=400, errors=[{"code": 81057, "message": "Record already exists."}]),
                make_response([cf_record("5", "app.example.com", "10.9.9.9")], result_info={"total_pages": 1}),
            ]
            with pytest.raises(ProviderConflictError):
                provider.create_record(ZONE, desired())

    def test_update_puts_first_id_and_deletes_rest(self, provider: CloudflareDNSProvider) -> None:
        """Test a multi-value record collapses to the desired single value."""
        current = ActualRecord("app.example.com", "A", ("10.0.0.1", "10.0.0.2"), native_ids=("1", "2"))
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [
                make_response(cf_record("1", "app.example.com", "10.0.0.3")),
                make_response({"id": "2"}),
            ]
            provider.update_record(ZONE, current, desired(value="10.0.0.3"))

        calls = [c.args for c in mock_request.call_args_list]
        assert calls == [
            ("PUT", f"{API}/zones/zone123/dns_records/1"),
            ("DELETE", f"{API}/zones/zone123/dns_records/2"),
        ]

    def test_update_can_change_type(self, provider: CloudflareDNSProvider) -> None:
        """Test an A record is turned into a CNAME by PUT."""
        current = ActualRecord("app.example.com", "A", ("10.0.0.1",), native_ids=("1",))
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(cf_record("1", "app.example.com", "lb.example.org", rtype="CNAME"))
            updated = provider.update_record(ZONE, current, desired(value="lb.example.org", type=RecordType.CNAME))

        assert mock_request.call_args.kwargs["json"]["type"] == "CNAME"
        assert updated.type == "CNAME"

    def test_delete_removes_every_id(self, provider: CloudflareDNSProvider) -> None:
        """Test delete issues one DELETE per grouped value."""
        current = ActualRecord("app.example.com", "A", ("10.0.0.1", "10.0.0.2"), native_ids=("1", "2"))
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"id": "x"})
            provider.delete_record(ZONE, current)

        assert [c.args[0] for c in mock_request.call_args_list] == ["DELETE", "DELETE"]


class TestCloudflareErrors:
    """Tests for HTTP error translation."""

    @pytest.mark.parametrize(
        "status,error",
        [
            (401, ProviderUnauthorizedError),
            (403, ProviderUnauthorizedError),
            (404, RecordNotFoundError),
            (500, TransientProviderError),
            (503, TransientProviderError),
            (400, InvalidRecordError),
        ],
    )
    def test_status_mapping(self, provider: CloudflareDNSProvider, status: int, error: type) -> None:
        """Test HTTP status codes map onto the provider error taxonomy."""
        current = ActualRecord("app.example.com", "A", ("10.0.0.1",), native_ids=("1",))
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(None, status=status, errors=[{"code": 1000, "message": "x"}])
            with pytest.raises(error):
                provider.delete_record(ZONE, current)

    def test_rate_limit_carries_retry_after(self, provider: CloudflareDNSProvider) -> None:
        """Test 429 becomes RateLimitedError with the Retry-After seconds."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(None, status=429, headers={"Retry-After": "12"})
            with pytest.raises(RateLimitedError) as exc:
                provider.create_record(ZONE, desired())
        assert exc.value.retry_after == 12.0
        assert exc.value.retryable

    def test_timeout_is_transient(self, provider: CloudflareDNSProvider) -> None:
        """Test request timeouts are retryable transient errors."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.Timeout("slow")
            with pytest.raises(TransientProviderError):
                provider.list_records(ZONE)

    def test_success_false_is_invalid(self, provider: CloudflareDNSProvider) -> None:
        """Test a 200 with success false is not treated as success."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(None, status=200, errors=[{"code": 9005, "message": "bad"}])
            with pytest.raises(InvalidRecordError):
                provider.create_record(ZONE, desired())

    def test_null_result_on_create_is_transient(self, provider: CloudflareDNSProvider) -> None:
        """Test a successful create with no record in the body is a retryable error."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(None)
            with pytest.raises(TransientProviderError):
                provider.create_record(ZONE, desired())

    def test_null_result_on_update_keeps_extra_values(self, provider: CloudflareDNSProvider) -> None:
        """Test an update with no record in the body fails before deleting extra values."""
        current = ActualRecord("app.example.com", "A", ("10.0.0.1", "10.0.0.2"), native_ids=("1", "2"))
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(None)
            with pytest.raises(TransientProviderError):
                provider.update_record(ZONE, current, desired(value="10.0.0.3"))

        assert [c.args[0] for c in mock_request.call_args_list] == ["PUT"]
