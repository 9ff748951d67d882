"""
Expiration findings persistence and the grouped read model served to consumers.
"""

import uuid
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ExpirationFinding
from expiration.analyzer import Disposition, ExpirationFindingData
from ledger.runs import RunLedger, describe_age

AT_RISK_DAYS = 7
UPCOMING_DAYS = 30

_CATEGORY_BUCKETS = {"Model": "models", "Data": "data", "App": "apps"}


def to_row(run_id: uuid.UUID, finding: ExpirationFindingData, analyzed_at: datetime) -> ExpirationFinding:
    return ExpirationFinding(
        run_id=run_id,
        account_id=finding.account_id,
        account_name=finding.account_name,
        ps_record_id=finding.source_record_id,
        ps_record_name=finding.source_record_name,
        product_code=finding.product_code,
        product_name=finding.product_name,
        product_type=finding.category.value,
        end_date=finding.end_date,
        days_until_expiry=finding.days_until_expiry,
        disposition=finding.disposition.value,
        extending_ps_record_id=finding.extending_record_id,
        extending_ps_record_name=finding.extending_record_name,
        extending_end_date=finding.extending_end_date,
        analyzed_at=analyzed_at,
    )


async def replace_findings(
    db: AsyncSession,
    run_id: uuid.UUID,
    findings: list[ExpirationFindingData],
    analyzed_at: datetime | None = None,
) -> int:
    """
    Stage the run's findings in place of every earlier run's.

    Nothing is committed here; the ledger's `complete()` commits the
    replacement together with the run counters.
    """
    analyzed_at = analyzed_at or datetime.utcnow()
    await db.execute(delete(ExpirationFinding).where(ExpirationFinding.run_id != run_id))
    db.add_all([to_row(run_id, f, analyzed_at) for f in findings])
    await db.flush()
    return len(findings)


def group_status(days_until_expiry: int) -> str:
    if days_until_expiry <= AT_RISK_DAYS:
        return "at-risk"
    if days_until_expiry <= UPCOMING_DAYS:
        return "upcoming"
    return "current"


async def get_expiring_entitlements(
    db: AsyncSession,
    window_days: int = UPCOMING_DAYS,
    today: date | None = None,
) -> dict[str, Any]:
    """
    Reportable findings ending within `window_days`, grouped per account and PS record.

    Each group carries its products split by category and a status derived
    from its earliest expiry.
    """
    today = today or datetime.utcnow().date()
    result = await db.execute(
        select(ExpirationFinding)
        .where(
            ExpirationFinding.disposition == Disposition.REPORTABLE.value,
            ExpirationFinding.end_date >= today,
            ExpirationFinding.end_date <= today + timedelta(days=window_days),
        )
        .order_by(ExpirationFinding.end_date.asc(), ExpirationFinding.account_name.asc())
    )

    groups: dict[tuple[str | None, str], dict[str, Any]] = {}
    for row in result.scalars().all():
        key = (row.account_id, row.ps_record_id)
        group = groups.get(key)
        if group is None:
            group = groups[key] = {
                "account": {"id": row.account_id, "name": row.account_name},
                "ps_record": {"id": row.ps_record_id, "name": row.ps_record_name},
                "expiring_products": {"models": [], "data": [], "apps": []},
                "earliest_expiry": row.end_date,
                "earliest_days_until_expiry": row.days_until_expiry,
            }
        group["expiring_products"][_CATEGORY_BUCKETS[row.product_type]].append(
            {
                "product_code": row.product_code,
                "product_name": row.product_name,
                "end_date": row.end_date,
                "days_until_expiry": row.days_until_expiry,
            }
        )
        if row.end_date < group["earliest_expiry"]:
            group["earliest_expiry"] = row.end_date
            group["earliest_days_until_expiry"] = row.days_until_expiry

    expirations = list(groups.values())
    for group in expirations:
        group["status"] = group_status(group["earliest_days_until_expiry"])

    return {
        "expirations": expirations,
        "total_count": len(expirations),
        "summary": {
            "at_risk": sum(1 for g in expirations if g["status"] == "at-risk"),
            "upcoming": sum(1 for g in expirations if g["status"] == "upcoming"),
            "current": sum(1 for g in expirations if g["status"] == "current"),
        },
    }


async def get_analysis_status(db: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """State of the most recent expiration run, with a human-readable age."""
    run = await RunLedger(db, "expiration").latest()
    if run is None:
        return {"has_analysis": False, "message": "No analysis has been run yet"}

    finished = run.completed_at or run.started_at
    return {
        "has_analysis": True,
        "run_id": str(run.run_id),
        "status": run.status,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "age": describe_age(finished, now),
        "records_scanned": run.records_scanned,
        "entitlements_scanned": run.entitlements_scanned,
        "findings_reportable": run.findings_reportable,
        "findings_extended": run.findings_extended,
        "findings_superseded": run.findings_superseded,
        "lookback_years": run.lookback_years,
        "window_days": run.window_days,
        "error_message": run.error_message,
        "duration_seconds": run.duration_seconds,
    }
