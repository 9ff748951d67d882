"""
Snapshot Differ — turn a full fetch of PS records into the minimal set of new audit snapshots.

For every fetched record the latest persisted snapshot is compared against
the record's current tracked fields:
  - no snapshot yet            → `initial`
  - status differs             → `status_change` (wins over any other difference)
  - another tracked field      → `field_change`
  - nothing differs            → no write

`last_modified_date` is carried onto each snapshot but is not itself a
tracked field: a record touched without a tracked-field difference writes
nothing, so re-running against unchanged source data writes zero rows.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import structlog

from db.models import ProvisioningSnapshot
from provisioning.entitlements import PayloadParseResult, parse_payload
from provisioning.records import ProvisioningRecord, dedupe_records

logger = structlog.get_logger()


class ChangeKind(str, Enum):
    INITIAL = "initial"
    STATUS_CHANGE = "status_change"
    FIELD_CHANGE = "field_change"


# snapshot column -> ProvisioningRecord attribute
TRACKED_FIELDS: dict[str, str] = {
    "status": "status",
    "account_id": "account_id",
    "account_name": "account_name",
    "account_site": "account_site",
    "request_type": "request_action",
    "deployment_id": "deployment_id",
    "deployment_name": "deployment_name",
    "tenant_name": "tenant_name",
    "billing_status": "billing_status",
    "sml_error_message": "sml_error_message",
    "payload_data": "raw_payload",
}

MIN_CAPTURE_STEP = timedelta(microseconds=1)


class SnapshotStore(Protocol):
    async def load_latest(self, record_ids: list[str]) -> dict[str, ProvisioningSnapshot]: ...

    def add(self, snapshot: ProvisioningSnapshot) -> None: ...


@dataclass(frozen=True)
class StatusChangeEvent:
    ps_record_id: str
    ps_record_name: str
    account_name: str | None
    previous_status: str | None
    status: str | None
    captured_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "ps_record_id": self.ps_record_id,
            "ps_record_name": self.ps_record_name,
            "account_name": self.account_name,
            "previous_status": self.previous_status,
            "status": self.status,
            "captured_at": self.captured_at.isoformat(),
        }


@dataclass
class CaptureSummary:
    total_records: int = 0
    new_snapshots: int = 0
    initial_snapshots: int = 0
    status_changes: int = 0
    other_changes: int = 0
    no_changes: int = 0
    duplicates_dropped: int = 0
    parse_failures: int = 0
    events: list[StatusChangeEvent] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "records_scanned": self.total_records,
            "new_snapshots": self.new_snapshots,
            "status_changes": self.status_changes,
            "other_changes": self.other_changes,
        }


def tracked_values(record: ProvisioningRecord, parsed: PayloadParseResult | None = None) -> dict[str, Any]:
    """Current tracked-field values for a record, keyed by snapshot column."""
    values = {column: getattr(record, attr) for column, attr in TRACKED_FIELDS.items()}
    if values["tenant_name"] is None:
        if parsed is None:
            parsed = parse_payload(record.raw_payload)
        values["tenant_name"] = parsed.tenant_name
    return values


def snapshot_values(snapshot: ProvisioningSnapshot) -> dict[str, Any]:
    return {column: getattr(snapshot, column) for column in TRACKED_FIELDS}


def classify_change(previous: dict[str, Any] | None, current: dict[str, Any]) -> ChangeKind | None:
    """Classify the difference between two tracked-field states; None means unchanged."""
    if previous is None:
        return ChangeKind.INITIAL
    if previous["status"] != current["status"]:
        return ChangeKind.STATUS_CHANGE
    if any(previous[column] != current[column] for column in TRACKED_FIELDS if column != "status"):
        return ChangeKind.FIELD_CHANGE
    return None


def next_capture_time(captured_at: datetime, previous: ProvisioningSnapshot | None) -> datetime:
    """Keep captures for a record strictly increasing even if the clock has not moved."""
    if previous is not None and captured_at <= previous.captured_at:
        return previous.captured_at + MIN_CAPTURE_STEP
    return captured_at


def build_snapshot(
    record: ProvisioningRecord,
    values: dict[str, Any],
    kind: ChangeKind,
    *,
    captured_at: datetime,
    previous_status: str | None,
    run_id=None,
) -> ProvisioningSnapshot:
    return ProvisioningSnapshot(
        ps_record_id=record.id,
        ps_record_name=record.name,
        created_date=record.created_at,
        created_by=record.created_by,
        last_modified_date=record.last_modified_at,
        captured_at=captured_at,
        change_type=kind.value,
        previous_status=previous_status,
        run_id=run_id,
        **values,
    )


async def detect_and_capture(
    store: SnapshotStore,
    records: list[ProvisioningRecord],
    *,
    captured_at: datetime,
    run_id=None,
) -> CaptureSummary:
    """
    Compare every fetched record with its latest snapshot and stage the needed writes.

    Snapshots are added to `store` but not committed; the caller commits them
    together with the run's ledger entry.
    """
    unique_records, duplicates = dedupe_records(records)
    if duplicates:
        logger.warning("audit.capture.duplicate_records", dropped=duplicates)

    summary = CaptureSummary(total_records=len(unique_records), duplicates_dropped=duplicates)
    baseline = await store.load_latest([r.id for r in unique_records])

    for record in unique_records:
        previous = baseline.get(record.id)
        parsed = parse_payload(record.raw_payload)
        if parsed.failed:
            # Raw payload text is still compared and stored as-is
            summary.parse_failures += 1
            logger.warning("audit.capture.payload_unparsable", ps_record=record.name, error=parsed.parse_error)
        values = tracked_values(record, parsed)
        kind = classify_change(snapshot_values(previous) if previous is not None else None, values)

        if kind is None:
            summary.no_changes += 1
            continue

        capture_time = next_capture_time(captured_at, previous)
        previous_status = previous.status if kind is ChangeKind.STATUS_CHANGE else None
        store.add(
            build_snapshot(
                record,
                values,
                kind,
                captured_at=capture_time,
                previous_status=previous_status,
                run_id=run_id,
            )
        )
        summary.new_snapshots += 1

        if kind is ChangeKind.INITIAL:
            summary.initial_snapshots += 1
        elif kind is ChangeKind.STATUS_CHANGE:
            summary.status_changes += 1
            summary.events.append(
                StatusChangeEvent(
                    ps_record_id=record.id,
                    ps_record_name=record.name,
                    account_name=record.account_name,
                    previous_status=previous_status,
                    status=record.status,
                    captured_at=capture_time,
                )
            )
            logger.info(
                "audit.capture.status_change",
                ps_record=record.name,
                previous_status=previous_status,
                status=record.status,
            )
        else:
            summary.other_changes += 1

    if summary.parse_failures:
        logger.warning("audit.capture.parse_failures", count=summary.parse_failures)
    return summary
