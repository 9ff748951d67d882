"""
Run Ledger — start/end bookkeeping for the audit capture and expiration jobs.

`begin()` commits a `running` row before a job touches anything else, so a
crash mid-run is visible as a run that never completed. `complete()` commits
the session, which makes the job's pending writes and its ledger update land
in one transaction. `fail()` is called after the job's work has been rolled
back and records only the error.
"""

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import RUN_JOBS, AnalysisRun

logger = structlog.get_logger()

COUNT_FIELDS = (
    "records_scanned",
    "records_skipped",
    "entitlements_scanned",
    "findings_reportable",
    "findings_extended",
    "findings_superseded",
    "new_snapshots",
    "status_changes",
    "other_changes",
)


class RunLedger:
    def __init__(self, db: AsyncSession, job: str):
        if job not in RUN_JOBS:
            raise ValueError(f"Unknown ledger job: {job}")
        self.db = db
        self.job = job

    async def begin(
        self,
        *,
        started_at: datetime | None = None,
        lookback_years: int | None = None,
        window_days: int | None = None,
    ) -> uuid.UUID:
        run = AnalysisRun(
            run_id=uuid.uuid4(),
            job=self.job,
            status="running",
            started_at=started_at or datetime.utcnow(),
            lookback_years=lookback_years,
            window_days=window_days,
        )
        self.db.add(run)
        await self.db.commit()
        logger.info("ledger.run.started", job=self.job, run_id=str(run.run_id))
        return run.run_id

    async def complete(self, run_id: uuid.UUID, counts: dict[str, int]) -> AnalysisRun:
        unknown = set(counts) - set(COUNT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown run counters: {sorted(unknown)}")

        run = await self._get(run_id)
        for name, value in counts.items():
            setattr(run, name, int(value))
        run.status = "completed"
        run.completed_at = datetime.utcnow()
        duration_seconds = run.duration_seconds
        await self.db.commit()

        logger.info(
            "ledger.run.completed",
            job=self.job,
            run_id=str(run_id),
            duration_seconds=duration_seconds,
            **counts,
        )
        return run

    async def fail(self, run_id: uuid.UUID, error: str) -> AnalysisRun:
        run = await self._get(run_id)
        run.status = "failed"
        run.completed_at = datetime.utcnow()
        run.error_message = error
        await self.db.commit()

        logger.error("ledger.run.failed", job=self.job, run_id=str(run_id), error=error)
        return run

    async def latest(self) -> AnalysisRun | None:
        """Most recently started run for this job, whatever its status."""
        result = await self.db.execute(
            select(AnalysisRun).where(AnalysisRun.job == self.job).order_by(AnalysisRun.started_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def _get(self, run_id: uuid.UUID) -> AnalysisRun:
        run = await self.db.get(AnalysisRun, run_id)
        if run is None:
            raise LookupError(f"No ledger row for run {run_id}")
        return run


def describe_age(moment: datetime, now: datetime | None = None) -> str:
    """Human age of a run, e.g. `5 minutes ago`, `3 hours ago`, `2 days ago`."""
    elapsed = (now or datetime.utcnow()) - moment
    total_minutes = max(int(elapsed.total_seconds() // 60), 0)
    hours, minutes = divmod(total_minutes, 60)

    if hours > 24:
        days = hours // 24
        return f"{days} day{'s' if days != 1 else ''} ago"
    if hours > 0:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
