"""
PS audit trail persistence — snapshot store for the differ plus read queries.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ProvisioningSnapshot

# Keeps IN-lists well under driver bind-parameter limits
LOOKUP_CHUNK_SIZE = 500


class SqlSnapshotStore:
    """SnapshotStore backed by the ps_audit_trail table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_latest(self, record_ids: list[str]) -> dict[str, ProvisioningSnapshot]:
        latest: dict[str, ProvisioningSnapshot] = {}
        for start in range(0, len(record_ids), LOOKUP_CHUNK_SIZE):
            chunk = record_ids[start : start + LOOKUP_CHUNK_SIZE]
            latest_subq = (
                select(
                    ProvisioningSnapshot.ps_record_id,
                    func.max(ProvisioningSnapshot.captured_at).label("latest_captured"),
                )
                .where(ProvisioningSnapshot.ps_record_id.in_(chunk))
                .group_by(ProvisioningSnapshot.ps_record_id)
                .subquery()
            )
            result = await self.db.execute(
                select(ProvisioningSnapshot).join(
                    latest_subq,
                    (ProvisioningSnapshot.ps_record_id == latest_subq.c.ps_record_id)
                    & (ProvisioningSnapshot.captured_at == latest_subq.c.latest_captured),
                )
            )
            for snapshot in result.scalars().all():
                latest[snapshot.ps_record_id] = snapshot
        return latest

    def add(self, snapshot: ProvisioningSnapshot) -> None:
        self.db.add(snapshot)


def _identifier_filter(identifier: str):
    return or_(
        ProvisioningSnapshot.ps_record_id == identifier,
        ProvisioningSnapshot.ps_record_name == identifier,
    )


async def get_audit_trail(db: AsyncSession, identifier: str) -> list[ProvisioningSnapshot]:
    """All snapshots for a record (by id or PS-name), oldest first."""
    result = await db.execute(
        select(ProvisioningSnapshot)
        .where(_identifier_filter(identifier))
        .order_by(ProvisioningSnapshot.captured_at.asc())
    )
    return list(result.scalars().all())


async def get_status_changes(db: AsyncSession, identifier: str) -> list[ProvisioningSnapshot]:
    """Status transitions for a record, oldest first."""
    result = await db.execute(
        select(ProvisioningSnapshot)
        .where(
            _identifier_filter(identifier),
            ProvisioningSnapshot.change_type == "status_change",
        )
        .order_by(ProvisioningSnapshot.captured_at.asc())
    )
    return list(result.scalars().all())


async def get_recent_status_changes(
    db: AsyncSession,
    since: datetime,
    limit: int = 100,
) -> list[ProvisioningSnapshot]:
    """Status transitions across all records captured at or after `since`, newest first."""
    result = await db.execute(
        select(ProvisioningSnapshot)
        .where(
            ProvisioningSnapshot.change_type == "status_change",
            ProvisioningSnapshot.captured_at >= since,
        )
        .order_by(ProvisioningSnapshot.captured_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_audit_stats(db: AsyncSession) -> dict[str, Any]:
    result = await db.execute(
        select(
            func.count(func.distinct(ProvisioningSnapshot.ps_record_id)).label("total_ps_records"),
            func.count(ProvisioningSnapshot.id).label("total_snapshots"),
            func.sum(case((ProvisioningSnapshot.change_type == "status_change", 1), else_=0)).label(
                "total_status_changes"
            ),
            func.min(ProvisioningSnapshot.captured_at).label("earliest_snapshot"),
            func.max(ProvisioningSnapshot.captured_at).label("latest_snapshot"),
        )
    )
    row = result.one()
    return {
        "total_ps_records": row.total_ps_records or 0,
        "total_snapshots": row.total_snapshots or 0,
        "total_status_changes": row.total_status_changes or 0,
        "earliest_snapshot": row.earliest_snapshot,
        "latest_snapshot": row.latest_snapshot,
    }
