"""
Tests for the Run Ledger.
"""

import uuid
from datetime import datetime, timedelta

import pytest

from db.models import AnalysisRun
from ledger.runs import RunLedger, describe_age


class TestRunLedger:
    @pytest.mark.asyncio
    async def test_begin_commits_running_row(self, test_db, session_factory):
        run_id = await RunLedger(test_db, "expiration").begin(lookback_years=5, window_days=30)

        async with session_factory() as other:
            run = await other.get(AnalysisRun, run_id)
        assert run.status == "running"
        assert run.completed_at is None
        assert run.window_days == 30

    @pytest.mark.asyncio
    async def test_complete_sets_counters(self, test_db):
        ledger = RunLedger(test_db, "ps_audit")
        run_id = await ledger.begin()
        run = await ledger.complete(run_id, {"records_scanned": 12, "new_snapshots": 3, "status_changes": 1})
        assert run.status == "completed"
        assert run.records_scanned == 12
        assert run.new_snapshots == 3
        assert run.duration_seconds is not None

    @pytest.mark.asyncio
    async def test_unknown_counter_is_rejected(self, test_db):
        ledger = RunLedger(test_db, "ps_audit")
        run_id = await ledger.begin()
        with pytest.raises(ValueError, match="bogus"):
            await ledger.complete(run_id, {"bogus": 1})

    @pytest.mark.asyncio
    async def test_fail_records_error(self, test_db):
        ledger = RunLedger(test_db, "ps_audit")
        run_id = await ledger.begin()
        run = await ledger.fail(run_id, "Salesforce unreachable")
        assert run.status == "failed"
        assert run.error_message == "Salesforce unreachable"

    @pytest.mark.asyncio
    async def test_unknown_run_raises(self, test_db):
        with pytest.raises(LookupError):
            await RunLedger(test_db, "ps_audit").fail(uuid.uuid4(), "x")

    def test_unknown_job_is_rejected(self):
        with pytest.raises(ValueError):
            RunLedger(None, "nightly")

    @pytest.mark.asyncio
    async def test_latest_is_scoped_to_job(self, test_db):
        audit = RunLedger(test_db, "ps_audit")
        expiration = RunLedger(test_db, "expiration")
        await audit.begin(started_at=datetime(2026, 1, 1))
        newest_audit = await audit.begin(started_at=datetime(2026, 1, 2))
        await expiration.begin(started_at=datetime(2026, 1, 3))

        assert (await audit.latest()).run_id == newest_audit


class TestDescribeAge:
    NOW = datetime(2026, 3, 10, 12, 0)

    def test_minutes(self):
        assert describe_age(self.NOW - timedelta(minutes=5), self.NOW) == "5 minutes ago"

    def test_single_hour(self):
        assert describe_age(self.NOW - timedelta(minutes=61), self.NOW) == "1 hour ago"

    def test_days(self):
        assert describe_age(self.NOW - timedelta(days=3), self.NOW) == "3 days ago"

    def test_exactly_one_day_reads_as_hours(self):
        assert describe_age(self.NOW - timedelta(hours=24), self.NOW) == "24 hours ago"
