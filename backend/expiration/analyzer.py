"""
Expiration Analyzer — separate genuine upcoming expirations from ones already handled.

For every account, records are ordered by (created_at, id) and each dated
entitlement ending inside [today, today + window_days] is annotated:

  extended    A later record carries the same product with a strictly later
              end date. The later record with the latest such end date is
              the extender. Checked first: re-granting is evidence the
              account is still active for the product.
  superseded  Otherwise, at least one later record omits the product. It was
              intentionally dropped, so the expiration is not actionable.
  reportable  No later record, or every later record still carries the
              product without extending it.

Only records created after the lookback cutoff are finding subjects. Every
record, however old, remains evidence for the records ahead of it, including
one that lists no products or has no payload at all: such a record omits
every product. Only a record whose payload cannot be parsed is left out as
evidence, so one malformed submission never rewrites other findings.

Each account's records are swept once from newest to oldest while keeping,
per product code, how many later records carry it and the best later end
date. That makes the per-account cost linear in its entitlements after the
initial sort instead of rescanning later records for every subject.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum

import structlog

from provisioning.entitlements import (
    Entitlement,
    EntitlementCategory,
    ProductKey,
    find_removed_products,
    latest_by_code,
    latest_by_product,
    parse_payload,
)
from provisioning.records import ProvisioningRecord

logger = structlog.get_logger()


class Disposition(str, Enum):
    REPORTABLE = "reportable"
    EXTENDED = "extended"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class ExpirationFindingData:
    account_id: str | None
    account_name: str | None
    source_record_id: str
    source_record_name: str
    product_code: str
    product_name: str | None
    category: EntitlementCategory
    end_date: date
    days_until_expiry: int
    disposition: Disposition
    extending_record_id: str | None = None
    extending_record_name: str | None = None
    extending_end_date: date | None = None


@dataclass
class AnalysisCounts:
    accounts: int = 0
    records_scanned: int = 0
    entitlements_scanned: int = 0
    parse_failures: int = 0
    findings_reportable: int = 0
    findings_extended: int = 0
    findings_superseded: int = 0

    def ledger_counts(self) -> dict[str, int]:
        return {
            "records_scanned": self.records_scanned,
            "entitlements_scanned": self.entitlements_scanned,
            "findings_reportable": self.findings_reportable,
            "findings_extended": self.findings_extended,
            "findings_superseded": self.findings_superseded,
        }


@dataclass
class AnalysisResult:
    findings: list[ExpirationFindingData] = field(default_factory=list)
    counts: AnalysisCounts = field(default_factory=AnalysisCounts)

    @property
    def reportable(self) -> list[ExpirationFindingData]:
        return [f for f in self.findings if f.disposition is Disposition.REPORTABLE]


# ── Time helpers ──────────────────────────────────────────────────────────


def lookback_cutoff(now: datetime, lookback_years: int) -> datetime:
    """`now` shifted back by whole calendar years (Feb 29 falls back to Feb 28)."""
    try:
        return now.replace(year=now.year - lookback_years)
    except ValueError:
        return now.replace(year=now.year - lookback_years, day=28)


def days_until(end_date: date, now: datetime) -> int:
    """Whole days from `now` to the start of `end_date`, truncated toward zero."""
    delta = datetime.combine(end_date, time.min) - now
    return int(delta / timedelta(days=1))


# ── Per-account sweep ─────────────────────────────────────────────────────


@dataclass
class _LaterState:
    """What the records after the current sweep position say about each product."""

    records: int = 0
    carrying: dict[str, int] = field(default_factory=dict)
    best: dict[str, tuple[Entitlement, ProvisioningRecord]] = field(default_factory=dict)

    def fold(self, record: ProvisioningRecord, products: dict[str, Entitlement]) -> None:
        self.records += 1
        for code, ent in products.items():
            self.carrying[code] = self.carrying.get(code, 0) + 1
            if ent.end_date is None:
                continue
            current = self.best.get(code)
            # Strictly later only: on equal dates the more recent record, folded first, stays
            if current is None or ent.end_date > current[0].end_date:
                self.best[code] = (ent, record)

    def omitting(self, code: str) -> int:
        return self.records - self.carrying.get(code, 0)


def analyze_account(
    records: list[ProvisioningRecord],
    *,
    now: datetime,
    window_days: int,
    cutoff: datetime,
    counts: AnalysisCounts,
) -> list[ExpirationFindingData]:
    """Annotate every in-window expiration for one account's records."""
    ordered = sorted(records, key=lambda r: r.sort_key)
    today = now.date()
    window_end = today + timedelta(days=window_days)

    arena: list[tuple[ProvisioningRecord, dict[ProductKey, Entitlement], dict[str, Entitlement] | None]] = []
    for record in ordered:
        parsed = parse_payload(record.raw_payload)
        if parsed.failed:
            counts.parse_failures += 1
            logger.warning("expiration.analysis.payload_unparsable", ps_record=record.name, error=parsed.parse_error)
        counts.entitlements_scanned += len(parsed.entitlements)
        evidence = None if parsed.failed else latest_by_code(parsed.entitlements)
        arena.append((record, latest_by_product(parsed.entitlements), evidence))

    findings: list[ExpirationFindingData] = []
    later = _LaterState()

    for record, subjects, evidence in reversed(arena):
        if record.created_at > cutoff:
            for ent in subjects.values():
                if ent.end_date is None or not (today <= ent.end_date <= window_end):
                    continue
                findings.append(_annotate(record, ent, later, now))
        if evidence is not None:
            later.fold(record, evidence)

    for finding in findings:
        if finding.disposition is Disposition.REPORTABLE:
            counts.findings_reportable += 1
        elif finding.disposition is Disposition.EXTENDED:
            counts.findings_extended += 1
        else:
            counts.findings_superseded += 1

    return findings


def _annotate(
    record: ProvisioningRecord,
    ent: Entitlement,
    later: _LaterState,
    now: datetime,
) -> ExpirationFindingData:
    disposition = Disposition.REPORTABLE
    extender: tuple[Entitlement, ProvisioningRecord] | None = None

    best = later.best.get(ent.product_code)
    if best is not None and best[0].end_date > ent.end_date:
        disposition = Disposition.EXTENDED
        extender = best
    elif later.omitting(ent.product_code) > 0:
        disposition = Disposition.SUPERSEDED

    return ExpirationFindingData(
        account_id=record.account_id,
        account_name=record.account_name,
        source_record_id=record.id,
        source_record_name=record.name,
        product_code=ent.product_code,
        product_name=ent.product_name,
        category=ent.category,
        end_date=ent.end_date,
        days_until_expiry=days_until(ent.end_date, now),
        disposition=disposition,
        extending_record_id=extender[1].id if extender else None,
        extending_record_name=extender[1].name if extender else None,
        extending_end_date=extender[0].end_date if extender else None,
    )


# ── Entry point ───────────────────────────────────────────────────────────


def analyze(
    account_groups: Mapping[str | None, list[ProvisioningRecord]],
    lookback_years: int,
    window_days: int,
    now: datetime | None = None,
) -> AnalysisResult:
    """
    Analyze every account's records for upcoming expirations.

    `now` is the run's start timestamp (naive UTC); all day arithmetic and
    the lookback cutoff derive from it.
    """
    if lookback_years < 0:
        raise ValueError("lookback_years must be >= 0")
    if window_days < 0:
        raise ValueError("window_days must be >= 0")

    now = now or datetime.utcnow()
    cutoff = lookback_cutoff(now, lookback_years)
    result = AnalysisResult()

    for account_id, records in account_groups.items():
        result.counts.accounts += 1
        result.counts.records_scanned += len(records)
        result.findings.extend(
            analyze_account(
                records,
                now=now,
                window_days=window_days,
                cutoff=cutoff,
                counts=result.counts,
            )
        )

    logger.info(
        "expiration.analysis.summary",
        accounts=result.counts.accounts,
        records=result.counts.records_scanned,
        reportable=result.counts.findings_reportable,
        extended=result.counts.findings_extended,
        superseded=result.counts.findings_superseded,
        parse_failures=result.counts.parse_failures,
    )
    return result


# ── Removals view ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RemovalEvent:
    account_id: str | None
    record_id: str
    record_name: str
    previous_record_id: str
    previous_record_name: str
    removed: dict[str, list[Entitlement]]

    @property
    def total(self) -> int:
        return sum(len(items) for items in self.removed.values())


def account_removals(records: list[ProvisioningRecord]) -> list[RemovalEvent]:
    """
    Products dropped between consecutive records of one account.

    Records with unparsable or empty payloads are skipped as comparison
    points so a broken submission does not look like a mass removal.
    """
    ordered = sorted(records, key=lambda r: r.sort_key)
    events: list[RemovalEvent] = []
    previous: tuple[ProvisioningRecord, list[Entitlement]] | None = None

    for record in ordered:
        parsed = parse_payload(record.raw_payload)
        if not parsed.has_details:
            continue
        if previous is not None:
            removed = find_removed_products(previous[1], parsed.entitlements)
            event = RemovalEvent(
                account_id=record.account_id,
                record_id=record.id,
                record_name=record.name,
                previous_record_id=previous[0].id,
                previous_record_name=previous[0].name,
                removed=removed,
            )
            if event.total:
                events.append(event)
        previous = (record, parsed.entitlements)

    return events
