"""
Expiration Worker — daily refresh of the expiration findings.

Workers:
  1. refresh_expiration_analysis: fetch every PS record → analyze per account
     → replace the previous run's findings → commit with the run ledger
"""

import asyncio
from datetime import datetime

import structlog

from expiration.analyzer import analyze
from expiration.repository import replace_findings
from integrations.base import ProvisioningRecordSource, RecordSourceError
from ledger.runs import RunLedger
from provisioning.records import dedupe_records, group_by_account
from workers.audit import describe_failure
from workers.celery_app import celery_app

logger = structlog.get_logger()


async def run_expiration_analysis(
    db,
    source: ProvisioningRecordSource,
    *,
    lookback_years: int,
    window_days: int,
    now: datetime | None = None,
    timeout: float | None = None,
) -> dict:
    """
    Worker-path expiration orchestration:
      ledger begin -> fetch -> analyze -> replace findings -> ledger complete (commit).
    """
    if lookback_years < 0 or window_days < 0:
        raise ValueError("lookback_years and window_days must be non-negative")

    now = now or datetime.utcnow()
    ledger = RunLedger(db, "expiration")
    run_id = await ledger.begin(started_at=now, lookback_years=lookback_years, window_days=window_days)
    logger.info(
        "expiration.analysis.started",
        run_id=str(run_id),
        lookback_years=lookback_years,
        window_days=window_days,
    )

    try:
        fetched = await asyncio.wait_for(source.fetch_all(), timeout)
        records, duplicates = dedupe_records(fetched.records)
        if duplicates:
            logger.warning("expiration.analysis.duplicate_records", dropped=duplicates)

        result = analyze(group_by_account(records), lookback_years, window_days, now=now)
        await replace_findings(db, run_id, result.findings, analyzed_at=now)

        counts = result.counts.ledger_counts()
        counts["records_skipped"] = fetched.records_skipped
        run = await ledger.complete(run_id, counts)
    except (Exception, asyncio.CancelledError) as exc:
        await db.rollback()
        await ledger.fail(run_id, describe_failure(exc))
        logger.error("expiration.analysis.failed", run_id=str(run_id), error=describe_failure(exc))
        raise

    logger.info(
        "expiration.analysis.completed",
        run_id=str(run_id),
        reportable=result.counts.findings_reportable,
        duration_seconds=run.duration_seconds,
    )
    return {
        "status": "success",
        "run_id": str(run_id),
        "accounts": result.counts.accounts,
        "records_scanned": result.counts.records_scanned,
        "records_skipped": fetched.records_skipped,
        "entitlements_scanned": result.counts.entitlements_scanned,
        "parse_failures": result.counts.parse_failures,
        "findings_reportable": result.counts.findings_reportable,
        "findings_extended": result.counts.findings_extended,
        "findings_superseded": result.counts.findings_superseded,
        "duration_seconds": run.duration_seconds,
    }


@celery_app.task(
    name="workers.expiration.refresh_expiration_analysis",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def refresh_expiration_analysis(self, lookback_years: int | None = None, window_days: int | None = None):
    """
    Re-run the expiration analysis over every PS record.
    Scheduled via Celery Beat (daily at expiration_refresh_hour UTC).
    """
    from core.config import get_settings
    from db.session import make_session_factory
    from integrations.salesforce import SalesforceRecordSource

    settings = get_settings()
    lookback_years = settings.expiration_lookback_years if lookback_years is None else lookback_years
    window_days = settings.expiration_window_days if window_days is None else window_days
    task_id = self.request.id or "manual"
    logger.info("expiration.task.started", task_id=task_id)

    async def _refresh():
        engine, async_session = make_session_factory()
        try:
            async with async_session() as db:
                return await run_expiration_analysis(
                    db,
                    SalesforceRecordSource.from_settings(settings),
                    lookback_years=lookback_years,
                    window_days=window_days,
                    timeout=settings.fetch_timeout_seconds,
                )
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_refresh())
    except (RecordSourceError, asyncio.TimeoutError) as exc:
        logger.error("expiration.task.source_failed", task_id=task_id, error=describe_failure(exc))
        raise self.retry(exc=exc)
    except Exception as exc:
        logger.error("expiration.task.failed", task_id=task_id, error=str(exc))
        raise
