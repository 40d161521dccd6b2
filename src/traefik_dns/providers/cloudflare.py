"""Cloudflare DNS provider (v4 REST API over requests)."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from ..errors import (
    InvalidRecordError,
    ProviderConflictError,
    ProviderError,
    ProviderUnauthorizedError,
    RateLimitedError,
    RecordNotFoundError,
    TransientProviderError,
)
from ..models import MANAGED_TYPES, ActualRecord, DesiredRecord, Zone, normalize_name
from .base import DNSProvider
from .rate_limit import RateLimit

logger = logging.getLogger(__name__)

API_URL = "https://api.cloudflare.com/client/v4"
RECORDS_PER_PAGE = 100
# TTL 1 means "automatic" to Cloudflare.
AUTO_TTL = 1
# Cloudflare allows 1200 requests per five minutes per user.
DEFAULT_RATE_LIMIT = (1200, 300.0)
# "record already exists" / "identical record already exists"
ALREADY_EXISTS_CODES = {81053, 81057, 81058}


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare provider: a flat record list, one request per record."""

    def __init__(
        self,
        name: str,
        zones: Sequence[Zone],
        *,
        api_token: str = "",
        email: str = "",
        api_key: str = "",
        timeout: float = 10.0,
        rate_limit: Optional[RateLimit] = None,
        api_url: str = API_URL,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(name, zones, rate_limit or RateLimit(*DEFAULT_RATE_LIMIT))
        self._url = api_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        if api_token:
            self._session.headers["Authorization"] = f"Bearer {api_token}"
        elif email and api_key:
            self._session.headers["X-Auth-Email"] = email
            self._session.headers["X-Auth-Key"] = api_key
        else:
            raise ValueError("Cloudflare needs an API token or an email + API key")

    @property
    def kind(self) -> str:
        return "cloudflare"

    def test_connection(self) -> bool:
        try:
            for zone in self.zones:
                self._request("GET", f"/zones/{zone.zone_id}")
            logger.info(f"{self.name} (Cloudflare) connection successful")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name} (Cloudflare): {e}")
            return False

    # -------------------------------------------------------------------------
    # Capability
    # -------------------------------------------------------------------------

    def list_records(self, zone: Zone) -> List[ActualRecord]:
        return self._group(self._list(zone, {}))

    def create_record(self, zone: Zone, record: DesiredRecord) -> ActualRecord:
        try:
            data = self._request(
                "POST", f"/zones/{zone.zone_id}/dns_records", json=self._payload(record)
            )
        except ProviderConflictError:
            existing = self._find(zone, record.name, record.type.value)
            if existing is not None and existing.matches(record):
                logger.debug(f"{record} already exists in {zone}, treating create as no-op")
                return existing
            raise
        created = self._record_result(data, f"create of {record}")
        logger.info(f"Created {record} in {zone}")
        return created

    def update_record(self, zone: Zone, current: ActualRecord, record: DesiredRecord) -> ActualRecord:
        if not current.native_ids:
            raise InvalidRecordError(f"{current} has no Cloudflare record id")
        first, extra = current.native_ids[0], current.native_ids[1:]
        data = self._request(
            "PUT", f"/zones/{zone.zone_id}/dns_records/{first}", json=self._payload(record)
        )
        updated = self._record_result(data, f"update of {current}")
        for record_id in extra:
            self._request("DELETE", f"/zones/{zone.zone_id}/dns_records/{record_id}")
        logger.info(f"Updated {current} -> {record} in {zone}")
        return updated

    def delete_record(self, zone: Zone, current: ActualRecord) -> None:
        if not current.native_ids:
            raise InvalidRecordError(f"{current} has no Cloudflare record id")
        for record_id in current.native_ids:
            self._request("DELETE", f"/zones/{zone.zone_id}/dns_records/{record_id}")
        logger.info(f"Deleted {current} from {zone}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _payload(self, record: DesiredRecord) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": record.type.value,
            "name": record.name,
            "content": record.value,
            "ttl": record.ttl if record.ttl is not None else AUTO_TTL,
        }
        if record.type in MANAGED_TYPES and record.proxied is not None:
            payload["proxied"] = record.proxied
        return payload

    def _find(self, zone: Zone, name: str, record_type: str) -> Optional[ActualRecord]:
        records = self._group(self._list(zone, {"name": name, "type": record_type}))
        return records[0] if records else None

    def _list(self, zone: Zone, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        page = 1
        while True:
            body = self._request(
                "GET",
                f"/zones/{zone.zone_id}/dns_records",
                params={**params, "page": page, "per_page": RECORDS_PER_PAGE},
                full_body=True,
            )
            batch = body.get("result")
            if not isinstance(batch, list):
                raise TransientProviderError(f"Cloudflare listing for {zone} has no result list")
            results.extend(r for r in batch if isinstance(r, dict))

            info = body.get("result_info") or {}
            total_pages = info.get("total_pages")
            if total_pages is None:
                # Without paging info a full page may hide more records.
                if len(batch) >= RECORDS_PER_PAGE:
                    raise TransientProviderError(
                        f"Cloudflare listing for {zone} is missing result_info"
                    )
                return results
            if page >= int(total_pages):
                return results
            page += 1

    def _group(self, raw: List[Dict[str, Any]]) -> List[ActualRecord]:
        grouped: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        for item in raw:
            name = normalize_name(str(item.get("name") or ""))
            record_type = str(item.get("type") or "").upper()
            if not name or not record_type:
                logger.warning(f"Skipping malformed Cloudflare record: {item}")
                continue
            grouped.setdefault((name, record_type), []).append(item)
        return [self._to_actual(items) for _, items in sorted(grouped.items())]

    @classmethod
    def _record_result(cls, data: Any, what: str) -> ActualRecord:
        if not isinstance(data, dict):
            raise TransientProviderError(f"Cloudflare {what} returned no record")
        return cls._to_actual([data])

    @staticmethod
    def _to_actual(items: List[Dict[str, Any]]) -> ActualRecord:
        items = sorted(items, key=lambda i: (str(i.get("content", "")), str(i.get("id", ""))))
        first = items[0]
        record_type = str(first.get("type") or "").upper()
        values = tuple(
            normalize_name(str(i.get("content", ""))) if record_type == "CNAME"
            else str(i.get("content", ""))
            for i in items
        )
        ttl = first.get("ttl")
        proxied = first.get("proxied")
        return ActualRecord(
            name=normalize_name(str(first.get("name") or "")),
            type=record_type,
            values=values,
            ttl=int(ttl) if isinstance(ttl, int) else None,
            native_ids=tuple(str(i.get("id", "")) for i in items),
            proxied=proxied if isinstance(proxied, bool) else None,
        )

    def _request(self, method: str, path: str, full_body: bool = False, **kwargs: Any) -> Any:
        self._throttle()
        url = f"{self._url}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(f"Cloudflare {method} {path} timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f"Cloudflare {method} {path} failed: {e}") from e

        try:
            body = response.json()
        except (ValueError, json.JSONDecodeError):
            body = {}
        if not isinstance(body, dict):
            body = {}

        _raise_for_response(response, body, f"{method} {path}")
        return body if full_body else body.get("result")


def _error_codes(body: Dict[str, Any]) -> Tuple[set, str]:
    codes = set()
    messages = []
    for err in body.get("errors") or []:
        if isinstance(err, dict):
            if isinstance(err.get("code"), int):
                codes.add(err["code"])
            if err.get("message"):
                messages.append(str(err["message"]))
    return codes, "; ".join(messages)


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return max(0.0, float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def _raise_for_response(response: requests.Response, body: Dict[str, Any], what: str) -> None:
    status = response.status_code
    codes, message = _error_codes(body)
    detail = f"Cloudflare {what}: HTTP {status}" + (f" ({message})" if message else "")

    if status == 429:
        raise RateLimitedError(detail, retry_after=_retry_after(response))
    if status in (401, 403):
        raise ProviderUnauthorizedError(detail)
    if status == 404:
        raise RecordNotFoundError(detail)
    if status >= 500:
        raise TransientProviderError(detail)
    if codes & ALREADY_EXISTS_CODES:
        raise ProviderConflictError(detail)
    if status >= 400:
        raise InvalidRecordError(detail)
    if body.get("success") is False:
        raise InvalidRecordError(detail)
