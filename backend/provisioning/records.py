"""
Provisioning Records — immutable PS request facts fetched from the source system.

A record is re-fetched on every run; its `id` and `created_at` never change
across fetches. Everything downstream (snapshot diffing, expiration analysis)
works from this shape rather than from raw source rows.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

PROVISIONING_FAILED_STATUS = "Provisioning Failed"


class RecordMappingError(ValueError):
    """A source row could not be mapped to a ProvisioningRecord."""


@dataclass(frozen=True)
class ProvisioningRecord:
    id: str
    name: str
    account_id: str | None
    account_name: str | None
    status: str | None
    request_action: str | None
    created_at: datetime
    last_modified_at: datetime | None = None
    raw_payload: str | None = None
    account_site: str | None = None
    deployment_id: str | None = None
    deployment_name: str | None = None
    tenant_name: str | None = None
    billing_status: str | None = None
    sml_error_message: str | None = None
    created_by: str | None = None

    @property
    def effective_status(self) -> str | None:
        """A non-blank SML error overrides the reported status."""
        if self.sml_error_message and self.sml_error_message.strip():
            return PROVISIONING_FAILED_STATUS
        return self.status

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Creation order, ties broken by record id."""
        return (self.created_at, self.id)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a source timestamp into a naive UTC datetime.

    Accepts datetimes and ISO-8601 strings, including the `+0000` offset
    form the Salesforce REST API emits.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        elif len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
            text = f"{text[:-2]}:{text[-2:]}"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise RecordMappingError(f"Unparsable timestamp: {value!r}") from exc
    else:
        raise RecordMappingError(f"Unsupported timestamp type: {type(value).__name__}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _payload_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _nested_name(row: dict[str, Any], key: str) -> str | None:
    related = row.get(key)
    if isinstance(related, dict):
        return related.get("Name")
    return None


def from_salesforce_row(row: dict[str, Any]) -> ProvisioningRecord:
    """Map a Prof_Services_Request__c row to a ProvisioningRecord."""
    record_id = row.get("Id")
    if not record_id:
        raise RecordMappingError("Source row is missing Id")

    created_at = parse_timestamp(row.get("CreatedDate"))
    if created_at is None:
        raise RecordMappingError(f"Record {record_id} is missing CreatedDate")

    account = row.get("Account__c") or None
    return ProvisioningRecord(
        id=record_id,
        name=row.get("Name") or record_id,
        # Account__c carries the account name; it is also the grouping key
        account_id=account,
        account_name=account,
        status=row.get("Status__c") or None,
        request_action=row.get("TenantRequestAction__c") or None,
        created_at=created_at,
        last_modified_at=parse_timestamp(row.get("LastModifiedDate")),
        raw_payload=_payload_text(row.get("Payload_Data__c")),
        account_site=row.get("Account_Site__c") or None,
        deployment_id=row.get("Deployment__c") or None,
        deployment_name=_nested_name(row, "Deployment__r"),
        tenant_name=row.get("Tenant_Name__c") or None,
        billing_status=row.get("Billing_Status__c") or None,
        sml_error_message=row.get("SMLErrorMessage__c") or None,
        created_by=_nested_name(row, "CreatedBy"),
    )


def group_by_account(records: list[ProvisioningRecord]) -> dict[str | None, list[ProvisioningRecord]]:
    """Group records by account, each group sorted by creation order."""
    groups: dict[str | None, list[ProvisioningRecord]] = {}
    for record in records:
        groups.setdefault(record.account_id, []).append(record)
    for group in groups.values():
        group.sort(key=lambda r: r.sort_key)
    return groups


def dedupe_records(records: list[ProvisioningRecord]) -> tuple[list[ProvisioningRecord], int]:
    """One record per id; the most recently modified copy wins. Returns (records, dropped)."""
    by_id: dict[str, ProvisioningRecord] = {}
    for record in records:
        existing = by_id.get(record.id)
        if existing is None or (record.last_modified_at or datetime.min) >= (existing.last_modified_at or datetime.min):
            by_id[record.id] = record
    return list(by_id.values()), len(records) - len(by_id)
