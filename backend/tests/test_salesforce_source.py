"""
Tests for the Salesforce REST record source (no network: httpx.MockTransport).
"""

import httpx
import pytest

from integrations.base import RecordSourceError, SourceType, StaticRecordSource, get_source
from integrations.salesforce import SalesforceRecordSource, build_soql

CONFIG = {
    "instance_url": "https://example.my.salesforce.com/",
    "access_token": "token-123",
    "api_version": "v59.0",
    "record_prefix": "PS-",
    "page_size": 2,
}


def _row(n: int, **overrides) -> dict:
    row = {
        "Id": f"a0X{n:04d}",
        "Name": f"PS-{n}",
        "Account__c": "Acme Corp",
        "Status__c": "Submitted",
        "CreatedDate": f"2025-01-{n:02d}T10:00:00.000+0000",
        "LastModifiedDate": f"2025-01-{n:02d}T11:00:00.000+0000",
    }
    row.update(overrides)
    return row


class TestSoql:
    def test_prefix_filter_and_ordering(self):
        soql = build_soql("PS-")
        assert "FROM Prof_Services_Request__c" in soql
        assert "WHERE Name LIKE 'PS-%'" in soql
        assert soql.endswith("ORDER BY CreatedDate ASC, Id ASC")

    def test_prefix_is_escaped(self):
        assert "LIKE 'O\\'Brien%'" in build_soql("O'Brien")


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_follows_next_records_url(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path.endswith("/query"):
                return httpx.Response(
                    200,
                    json={"done": False, "nextRecordsUrl": "/services/data/v59.0/query/01g-2", "records": [_row(1), _row(2)]},
                )
            return httpx.Response(200, json={"done": True, "records": [_row(3)]})

        source = SalesforceRecordSource(CONFIG, transport=httpx.MockTransport(handler))
        result = await source.fetch_all()

        assert [r.name for r in result.records] == ["PS-1", "PS-2", "PS-3"]
        assert result.records_skipped == 0
        assert len(seen) == 2
        assert seen[0].headers["Authorization"] == "Bearer token-123"
        assert "q" in seen[0].url.params
        assert str(seen[1].url) == "https://example.my.salesforce.com/services/data/v59.0/query/01g-2"

    @pytest.mark.asyncio
    async def test_unmappable_rows_are_skipped_and_counted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"done": True, "records": [_row(1), _row(2, CreatedDate=None), _row(3, Id=None)]})

        result = await SalesforceRecordSource(CONFIG, transport=httpx.MockTransport(handler)).fetch_all()
        assert [r.name for r in result.records] == ["PS-1"]
        assert result.records_skipped == 2
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_http_error_becomes_record_source_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json=[{"errorCode": "INVALID_SESSION_ID"}])

        source = SalesforceRecordSource(CONFIG, transport=httpx.MockTransport(handler))
        with pytest.raises(RecordSourceError, match="HTTP 401"):
            await source.fetch_all()

    def test_instance_url_is_required(self):
        with pytest.raises(ValueError):
            SalesforceRecordSource({})


class TestSourceRegistry:
    def test_salesforce_is_registered(self):
        source = get_source(SourceType.SALESFORCE, CONFIG)
        assert isinstance(source, SalesforceRecordSource)
        assert source.base_url == "https://example.my.salesforce.com"

    @pytest.mark.asyncio
    async def test_static_source_returns_copy(self, make_record):
        records = [make_record()]
        result = await StaticRecordSource(records).fetch_all()
        assert result.records == records
        assert result.records is not records
        assert result.completed_at is not None
