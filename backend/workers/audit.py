"""
PS Audit Worker — scheduled change capture over the full PS record set.

Workers:
  1. capture_ps_changes: fetch every PS record → stage snapshots for changed
     records → commit with the run ledger → publish status changes

A run is all-or-nothing: if the fetch fails or times out, no snapshot from
that run is persisted and the ledger row is marked failed.
"""

import asyncio
from datetime import datetime

import structlog

from alerts.events import publish_status_changes
from audit.differ import detect_and_capture
from audit.repository import SqlSnapshotStore
from core.config import get_settings
from integrations.base import ProvisioningRecordSource, RecordSourceError
from ledger.runs import RunLedger
from workers.celery_app import celery_app

logger = structlog.get_logger()


def describe_failure(exc: BaseException) -> str:
    if isinstance(exc, asyncio.CancelledError):
        return "Run cancelled"
    if isinstance(exc, asyncio.TimeoutError):
        return "Record fetch timed out"
    return str(exc) or type(exc).__name__


async def run_audit_capture(
    db,
    source: ProvisioningRecordSource,
    *,
    timeout: float | None = None,
    captured_at: datetime | None = None,
    publish_events: bool | None = None,
) -> dict:
    """
    Worker-path audit orchestration:
      ledger begin -> fetch (bounded by timeout) -> diff + stage -> ledger complete (commit) -> publish.
    """
    if publish_events is None:
        publish_events = get_settings().publish_change_events

    captured_at = captured_at or datetime.utcnow()
    ledger = RunLedger(db, "ps_audit")
    run_id = await ledger.begin(started_at=captured_at)
    logger.info("audit.capture.started", run_id=str(run_id), source=source.source_type.value)

    try:
        fetched = await asyncio.wait_for(source.fetch_all(), timeout)
        summary = await detect_and_capture(
            SqlSnapshotStore(db),
            fetched.records,
            captured_at=captured_at,
            run_id=run_id,
        )
        counts = summary.counts()
        counts["records_skipped"] = fetched.records_skipped
        run = await ledger.complete(run_id, counts)
    except (Exception, asyncio.CancelledError) as exc:
        await db.rollback()
        await ledger.fail(run_id, describe_failure(exc))
        logger.error("audit.capture.failed", run_id=str(run_id), error=describe_failure(exc))
        raise

    published = 0
    if publish_events and summary.events:
        try:
            published = await publish_status_changes(summary.events)
        except Exception as exc:
            # Snapshots are already committed; a lost notification does not undo them
            logger.warning("audit.events.publish_failed", run_id=str(run_id), error=str(exc))

    return {
        "status": "success",
        "run_id": str(run_id),
        "total_records": summary.total_records,
        "records_skipped": fetched.records_skipped,
        "new_snapshots": summary.new_snapshots,
        "initial_snapshots": summary.initial_snapshots,
        "status_changes": summary.status_changes,
        "other_changes": summary.other_changes,
        "no_changes": summary.no_changes,
        "parse_failures": summary.parse_failures,
        "events_published": published,
        "duration_seconds": run.duration_seconds,
    }


@celery_app.task(
    name="workers.audit.capture_ps_changes",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def capture_ps_changes(self):
    """
    Capture PS record changes into the audit trail.
    Scheduled via Celery Beat (every audit_capture_interval_minutes).
    """
    from db.session import make_session_factory
    from integrations.salesforce import SalesforceRecordSource

    task_id = self.request.id or "manual"
    logger.info("audit.task.started", task_id=task_id)

    async def _capture():
        settings = get_settings()
        engine, async_session = make_session_factory()
        try:
            async with async_session() as db:
                return await run_audit_capture(
                    db,
                    SalesforceRecordSource.from_settings(settings),
                    timeout=settings.fetch_timeout_seconds,
                )
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_capture())
    except (RecordSourceError, asyncio.TimeoutError) as exc:
        logger.error("audit.task.source_failed", task_id=task_id, error=describe_failure(exc))
        raise self.retry(exc=exc)
    except Exception as exc:
        logger.error("audit.task.failed", task_id=task_id, error=str(exc))
        raise
