import asyncio
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import select

from db.models import AnalysisRun, ExpirationFinding
from expiration.repository import get_expiring_entitlements
from integrations.base import ProvisioningRecordSource, RecordSourceError, SourceType, StaticRecordSource
from ledger.runs import RunLedger
from workers import expiration as expiration_worker
from workers.expiration import refresh_expiration_analysis, run_expiration_analysis

NOW = datetime(2026, 3, 10, 12, 0, 0)
SOON = date(2026, 3, 20)
LATER = date(2026, 12, 31)


class FailingSource(ProvisioningRecordSource):
    @property
    def source_type(self):
        return SourceType.STATIC

    async def fetch_all(self):
        raise RecordSourceError("Salesforce query failed with HTTP 503")


class CancelledSource(ProvisioningRecordSource):
    @property
    def source_type(self):
        return SourceType.STATIC

    async def fetch_all(self):
        raise asyncio.CancelledError()


@pytest.fixture
def account_history(make_record, make_payload):
    return [
        make_record("PS-A", created_at=datetime(2025, 1, 1), payload=make_payload(models=[("AIR", SOON), ("EQ", SOON)])),
        make_record("PS-B", created_at=datetime(2025, 2, 1), payload=make_payload(models=[("AIR", SOON)])),
        make_record("PS-C", created_at=datetime(2025, 3, 1), payload=make_payload(models=[("AIR", LATER)], data=[("CLIM", SOON)])),
        make_record("PS-X", account="Globex", created_at=datetime(2025, 4, 1), payload="{not json"),
    ]


async def _findings(db):
    rows = (await db.execute(select(ExpirationFinding))).scalars().all()
    return rows


@pytest.mark.asyncio
async def test_run_persists_findings_and_ledger_counts(test_db, account_history):
    result = await run_expiration_analysis(
        test_db, StaticRecordSource(account_history), lookback_years=5, window_days=30, now=NOW
    )

    assert result["status"] == "success"
    assert result["accounts"] == 2
    assert result["parse_failures"] == 1
    assert result["findings_extended"] == 2
    assert result["findings_superseded"] == 1
    assert result["findings_reportable"] == 1

    dispositions = {(r.ps_record_name, r.product_code): r.disposition for r in await _findings(test_db)}
    assert dispositions == {
        ("PS-A", "AIR"): "extended",
        ("PS-A", "EQ"): "superseded",
        ("PS-B", "AIR"): "extended",
        ("PS-C", "CLIM"): "reportable",
    }

    run = await RunLedger(test_db, "expiration").latest()
    assert run.status == "completed"
    assert run.records_scanned == 4
    assert run.findings_reportable == 1
    assert run.lookback_years == 5
    assert run.window_days == 30

    grouped = await get_expiring_entitlements(test_db, window_days=30, today=NOW.date())
    assert [g["ps_record"]["name"] for g in grouped["expirations"]] == ["PS-C"]


@pytest.mark.asyncio
async def test_rerun_replaces_rather_than_accumulates(test_db, account_history):
    source = StaticRecordSource(account_history)
    await run_expiration_analysis(test_db, source, lookback_years=5, window_days=30, now=NOW)
    first = sorted((r.ps_record_name, r.product_code, r.disposition) for r in await _findings(test_db))

    second_result = await run_expiration_analysis(test_db, source, lookback_years=5, window_days=30, now=NOW)
    rows = await _findings(test_db)

    assert sorted((r.ps_record_name, r.product_code, r.disposition) for r in rows) == first
    assert {str(r.run_id) for r in rows} == {second_result["run_id"]}


@pytest.mark.asyncio
async def test_failed_run_keeps_previous_findings(test_db, account_history):
    await run_expiration_analysis(test_db, StaticRecordSource(account_history), lookback_years=5, window_days=30, now=NOW)
    before = len(await _findings(test_db))

    with pytest.raises(RecordSourceError):
        await run_expiration_analysis(
            test_db, FailingSource(), lookback_years=5, window_days=30, now=NOW + timedelta(days=1)
        )

    assert len(await _findings(test_db)) == before
    run = await RunLedger(test_db, "expiration").latest()
    assert run.status == "failed"
    assert "HTTP 503" in run.error_message


@pytest.mark.asyncio
async def test_cancelled_run_is_marked_failed(test_db, account_history):
    await run_expiration_analysis(test_db, StaticRecordSource(account_history), lookback_years=5, window_days=30, now=NOW)
    before = len(await _findings(test_db))

    with pytest.raises(asyncio.CancelledError):
        await run_expiration_analysis(
            test_db, CancelledSource(), lookback_years=5, window_days=30, now=NOW + timedelta(days=1)
        )

    assert len(await _findings(test_db)) == before
    runs = (await test_db.execute(select(AnalysisRun).order_by(AnalysisRun.started_at))).scalars().all()
    assert [r.status for r in runs] == ["completed", "failed"]
    assert runs[-1].error_message == "Run cancelled"


@pytest.mark.asyncio
async def test_invalid_window_is_rejected_before_ledger(test_db):
    with pytest.raises(ValueError):
        await run_expiration_analysis(test_db, StaticRecordSource([]), lookback_years=5, window_days=-1, now=NOW)

    runs = (await test_db.execute(select(AnalysisRun))).scalars().all()
    assert runs == []


def test_refresh_task_uses_configured_windows(monkeypatch, tmp_path):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    def _session_factory(database_url=None):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'task.db'}")
        return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    captured = {}

    async def _fake_analysis(db, source, **kwargs):
        captured.update(kwargs)
        return {"status": "success"}

    monkeypatch.setenv("EXPIRATION_LOOKBACK_YEARS", "3")
    monkeypatch.setattr("db.session.make_session_factory", _session_factory)
    monkeypatch.setattr(expiration_worker, "run_expiration_analysis", _fake_analysis)

    assert refresh_expiration_analysis.run(window_days=14) == {"status": "success"}
    assert captured["lookback_years"] == 3
    assert captured["window_days"] == 14
