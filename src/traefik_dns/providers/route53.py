"""Amazon Route53 DNS provider (boto3)."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    ParamValidationError,
)

from ..errors import (
    InvalidRecordError,
    ProviderConflictError,
    ProviderError,
    ProviderUnauthorizedError,
    RateLimitedError,
    RecordNotFoundError,
    TransientProviderError,
)
from ..models import (
    ActualRecord,
    ChangeOp,
    CreateOp,
    DeleteOp,
    DesiredRecord,
    UpdateOp,
    Zone,
    normalize_name,
)
from .base import DNSProvider
from .rate_limit import RateLimit

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300
# Route53 allows five API requests per second per account.
DEFAULT_RATE_LIMIT = (5, 1.0)
# Route53 accepts up to 1000 changes per batch; an op is at most two changes.
MAX_BATCH_OPS = 100

THROTTLE_CODES = {
    "Throttling",
    "ThrottlingException",
    "PriorRequestNotComplete",
    "TooManyRequestsException",
    "RequestLimitExceeded",
}
AUTH_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "InvalidClientTokenId",
    "ExpiredToken",
    "SignatureDoesNotMatch",
    "UnrecognizedClientException",
}
NOT_FOUND_CODES = {"NoSuchHostedZone", "NoSuchChange"}
CONFLICT_CODES = {"InvalidChangeBatch"}
INVALID_CODES = {"InvalidInput", "InvalidArgument", "InvalidDomainName"}

_OCTAL_ESCAPE_RE = re.compile(r"\\(\d{3})")


def _unescape(name: str) -> str:
    """Undo Route53's octal escaping (``\\052`` is ``*``)."""
    return _OCTAL_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 8)), name)


def _quote_txt(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote_txt(value: str) -> str:
    # Long TXT values come back split into several quoted strings.
    parts = re.findall(r'"((?:[^"\\]|\\.)*)"', value)
    if not parts:
        return value
    return "".join(p.replace('\\"', '"').replace("\\\\", "\\") for p in parts)


def translate_error(error: Exception, what: str) -> ProviderError:
    """Map a botocore exception onto the provider error taxonomy."""
    if isinstance(error, ClientError):
        info = error.response.get("Error", {})
        code = info.get("Code", "")
        message = f"Route53 {what}: {code}: {info.get('Message', '')}"
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if code in THROTTLE_CODES or status == 429:
            return RateLimitedError(message)
        if code in AUTH_CODES or status in (401, 403):
            return ProviderUnauthorizedError(message)
        if code in NOT_FOUND_CODES:
            return RecordNotFoundError(message)
        if code in CONFLICT_CODES:
            return ProviderConflictError(message)
        if code in INVALID_CODES:
            return InvalidRecordError(message)
        if status >= 500 or status == 0:
            return TransientProviderError(message)
        return InvalidRecordError(message)
    if isinstance(error, NoCredentialsError):
        return ProviderUnauthorizedError(f"Route53 {what}: {error}")
    if isinstance(error, ParamValidationError):
        return InvalidRecordError(f"Route53 {what}: {error}")
    return TransientProviderError(f"Route53 {what}: {error}")


class Route53DNSProvider(DNSProvider):
    """Route53 provider: per-zone record sets, changes batched per zone."""

    max_batch_size = MAX_BATCH_OPS

    def __init__(
        self,
        name: str,
        zones: Sequence[Zone],
        *,
        client: Any = None,
        region: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        timeout: float = 10.0,
        rate_limit: Optional[RateLimit] = None,
    ):
        super().__init__(name, zones, rate_limit or RateLimit(*DEFAULT_RATE_LIMIT))
        if client is None:
            # botocore's own retries are disabled; the Applier owns retrying.
            client = boto3.client(
                "route53",
                region_name=region or None,
                aws_access_key_id=access_key_id or None,
                aws_secret_access_key=secret_access_key or None,
                config=BotoConfig(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={"total_max_attempts": 1, "mode": "standard"},
                ),
            )
        self._client = client

    @property
    def kind(self) -> str:
        return "route53"

    def test_connection(self) -> bool:
        try:
            for zone in self.zones:
                self._call("get_hosted_zone", f"get zone {zone.zone_id}", Id=zone.zone_id)
            logger.info(f"{self.name} (Route53) connection successful")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name} (Route53): {e}")
            return False

    # -------------------------------------------------------------------------
    # Capability
    # -------------------------------------------------------------------------

    def list_records(self, zone: Zone) -> List[ActualRecord]:
        records: List[ActualRecord] = []
        paginator = self._client.get_paginator("list_resource_record_sets")
        try:
            for page in paginator.paginate(HostedZoneId=zone.zone_id):
                self._throttle()
                for rrset in page.get("ResourceRecordSets", []):
                    records.append(self._to_actual(rrset))
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, f"list {zone}") from e
        return records

    def create_record(self, zone: Zone, record: DesiredRecord) -> ActualRecord:
        try:
            self._submit(zone, [self._change("CREATE", self._desired_rrset(record))], str(record))
        except ProviderConflictError:
            existing = self._find(zone, record.name, record.type.value)
            if existing is not None and existing.matches(record):
                logger.debug(f"{record} already exists in {zone}, treating create as no-op")
                return existing
            raise
        logger.info(f"Created {record} in {zone}")
        return self._from_desired(record)

    def update_record(self, zone: Zone, current: ActualRecord, record: DesiredRecord) -> ActualRecord:
        self._submit(zone, self._update_changes(current, record), f"{current} -> {record}")
        logger.info(f"Updated {current} -> {record} in {zone}")
        return self._from_desired(record)

    def delete_record(self, zone: Zone, current: ActualRecord) -> None:
        self._submit(zone, [self._change("DELETE", self._actual_rrset(current))], str(current))
        logger.info(f"Deleted {current} from {zone}")

    def apply_batch(self, zone: Zone, ops: Sequence[ChangeOp]) -> None:
        """Submit ops as one all-or-nothing change batch.

        Route53 rejects the whole batch when one CREATE target already
        exists. On that conflict every create is re-read; creates already in
        place are dropped and the remainder is submitted once more.
        """
        changes: List[Dict[str, Any]] = []
        for op in ops:
            changes.extend(self._changes_for(op))
        try:
            self._submit(zone, changes, f"{len(ops)} change(s)")
        except ProviderConflictError:
            remaining = self._drop_existing_creates(zone, ops)
            if remaining is None:
                raise
            if remaining:
                self._submit(zone, remaining, f"{len(ops)} change(s), resubmitted")
            else:
                logger.debug(f"Every change in the batch already exists in {zone}")
        logger.info(f"Applied batch of {len(ops)} change(s) to {zone}")

    def _drop_existing_creates(self, zone: Zone, ops: Sequence[ChangeOp]) -> Optional[List[Dict[str, Any]]]:
        """Changes still needed after a rejected batch, or None to keep the conflict."""
        remaining: List[Dict[str, Any]] = []
        dropped = 0
        for op in ops:
            if not isinstance(op, CreateOp):
                remaining.extend(self._changes_for(op))
                continue
            records = [op.marker, op.record] if op.marker is not None else [op.record]
            for record in records:
                existing = self._find(zone, record.name, record.type.value)
                if existing is None:
                    remaining.append(self._change("CREATE", self._desired_rrset(record)))
                elif existing.matches(record):
                    logger.debug(f"{record} already exists in {zone}, dropping it from the batch")
                    dropped += 1
                else:
                    return None
        return remaining if dropped else None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _changes_for(self, op: ChangeOp) -> List[Dict[str, Any]]:
        if isinstance(op, CreateOp):
            changes = []
            if op.marker is not None:
                changes.append(self._change("CREATE", self._desired_rrset(op.marker)))
            changes.append(self._change("CREATE", self._desired_rrset(op.record)))
            return changes
        if isinstance(op, UpdateOp):
            return self._update_changes(op.current, op.record)
        if isinstance(op, DeleteOp):
            return [self._change("DELETE", self._actual_rrset(op.record))]
        raise TypeError(f"Unknown change op: {op!r}")

    def _update_changes(self, current: ActualRecord, record: DesiredRecord) -> List[Dict[str, Any]]:
        return [
            self._change("DELETE", self._actual_rrset(current)),
            self._change("CREATE", self._desired_rrset(record)),
        ]

    @staticmethod
    def _change(action: str, rrset: Dict[str, Any]) -> Dict[str, Any]:
        return {"Action": action, "ResourceRecordSet": rrset}

    @staticmethod
    def _rrset(name: str, record_type: str, values: Sequence[str], ttl: Optional[int]) -> Dict[str, Any]:
        if record_type == "TXT":
            values = [_quote_txt(v) for v in values]
        return {
            "Name": f"{name}.",
            "Type": record_type,
            "TTL": ttl if ttl is not None else DEFAULT_TTL,
            "ResourceRecords": [{"Value": v} for v in values],
        }

    def _desired_rrset(self, record: DesiredRecord) -> Dict[str, Any]:
        return self._rrset(record.name, record.type.value, [record.value], record.ttl)

    def _actual_rrset(self, record: ActualRecord) -> Dict[str, Any]:
        # DELETE must match the live record set exactly.
        if record.alias:
            raise InvalidRecordError(f"Refusing to change alias/routing-policy record {record}")
        return self._rrset(record.name, record.type, record.values, record.ttl)

    @staticmethod
    def _from_desired(record: DesiredRecord) -> ActualRecord:
        return ActualRecord(
            name=record.name,
            type=record.type.value,
            values=(record.value,),
            ttl=record.ttl if record.ttl is not None else DEFAULT_TTL,
        )

    @staticmethod
    def _to_actual(rrset: Dict[str, Any]) -> ActualRecord:
        name = normalize_name(_unescape(str(rrset.get("Name", ""))))
        record_type = str(rrset.get("Type", "")).upper()
        alias_target = rrset.get("AliasTarget")
        if alias_target:
            values = (normalize_name(str(alias_target.get("DNSName", ""))),)
        else:
            raw = [str(r.get("Value", "")) for r in rrset.get("ResourceRecords", [])]
            if record_type == "TXT":
                raw = [_unquote_txt(v) for v in raw]
            elif record_type == "CNAME":
                raw = [normalize_name(v) for v in raw]
            values = tuple(sorted(raw))
        ttl = rrset.get("TTL")
        return ActualRecord(
            name=name,
            type=record_type,
            values=tuple(values),
            ttl=int(ttl) if ttl is not None else None,
            alias=bool(alias_target) or "SetIdentifier" in rrset,
        )

    def _find(self, zone: Zone, name: str, record_type: str) -> Optional[ActualRecord]:
        response = self._call(
            "list_resource_record_sets",
            f"find {name} {record_type}",
            HostedZoneId=zone.zone_id,
            StartRecordName=f"{name}.",
            StartRecordType=record_type,
            MaxItems="1",
        )
        for rrset in response.get("ResourceRecordSets", []):
            record = self._to_actual(rrset)
            if record.name == name and record.type == record_type:
                return record
        return None

    def _submit(self, zone: Zone, changes: List[Dict[str, Any]], what: str) -> None:
        self._call(
            "change_resource_record_sets",
            f"change {zone} ({what})",
            HostedZoneId=zone.zone_id,
            ChangeBatch={"Comment": "managed by traefik-dns", "Changes": changes},
        )

    def _call(self, method: str, what: str, **kwargs: Any) -> Dict[str, Any]:
        self._throttle()
        try:
            return getattr(self._client, method)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, what) from e
