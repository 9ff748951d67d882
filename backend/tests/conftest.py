"""
Test Configuration — Fixtures for async DB sessions and PS record builders.

Each test gets its own SQLite database file so jobs that commit and roll
back behave exactly as they do against PostgreSQL, without leaking state
between tests.
"""

import itertools
import json
from datetime import date, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core import config as config_module
from db.session import Base
from provisioning.records import ProvisioningRecord

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture(autouse=True)
def _fresh_settings():
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


@pytest.fixture
async def test_engine(tmp_path):
    """A throwaway database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ps_monitor.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


# ── Record builders ──────────────────────────────────────────────────────


def _entries(items) -> list[dict]:
    entries = []
    for item in items or []:
        if isinstance(item, dict):
            entries.append(item)
            continue
        code, end = item
        entries.append(
            {
                "productCode": code,
                "name": f"{code} product",
                "startDate": "2024-01-01",
                "endDate": end.isoformat() if isinstance(end, date) else end,
            }
        )
    return entries


@pytest.fixture
def make_payload():
    """Build a current-shape payload; items are (code, end_date) pairs or raw entry dicts."""

    def _make(models=None, data=None, apps=None, tenant_name="acme-prod") -> str:
        return json.dumps(
            {
                "properties": {
                    "provisioningDetail": {
                        "tenantName": tenant_name,
                        "region": "us-east",
                        "entitlements": {
                            "modelEntitlements": _entries(models),
                            "dataEntitlements": _entries(data),
                            "appEntitlements": _entries(apps),
                        },
                    }
                }
            }
        )

    return _make


@pytest.fixture
def make_record():
    counter = itertools.count(1)

    def _make(
        name: str | None = None,
        *,
        account: str | None = "Acme Corp",
        created_at: datetime = datetime(2025, 6, 1),
        status: str | None = "Completed",
        payload: str | None = None,
        **overrides,
    ) -> ProvisioningRecord:
        n = next(counter)
        fields = {
            "id": f"a0X{n:06d}",
            "name": name or f"PS-{n:04d}",
            "account_id": account,
            "account_name": account,
            "status": status,
            "request_action": "Update",
            "created_at": created_at,
            "last_modified_at": created_at,
            "raw_payload": payload,
        }
        fields.update(overrides)
        return ProvisioningRecord(**fields)

    return _make
