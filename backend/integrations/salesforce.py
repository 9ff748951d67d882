"""
Salesforce REST Record Source

Pulls every Prof_Services_Request__c row through the SOQL query endpoint,
following `nextRecordsUrl` until the result set is exhausted. Transport
errors are retried with exponential backoff; an HTTP error response or a
transport failure that survives the retries becomes RecordSourceError.
"""

from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import Settings, get_settings
from integrations.base import (
    FetchResult,
    ProvisioningRecordSource,
    RecordSourceError,
    SourceType,
    register_source,
)
from provisioning.records import RecordMappingError, from_salesforce_row

PS_RECORD_FIELDS = (
    "Id",
    "Name",
    "Account__c",
    "Status__c",
    "Deployment__c",
    "Deployment__r.Name",
    "Account_Site__c",
    "Billing_Status__c",
    "TenantRequestAction__c",
    "Tenant_Name__c",
    "Payload_Data__c",
    "SMLErrorMessage__c",
    "CreatedDate",
    "LastModifiedDate",
    "CreatedBy.Name",
)


def build_soql(record_prefix: str) -> str:
    prefix = record_prefix.replace("\\", "\\\\").replace("'", "\\'")
    return (
        f"SELECT {', '.join(PS_RECORD_FIELDS)} "
        "FROM Prof_Services_Request__c "
        f"WHERE Name LIKE '{prefix}%' "
        "ORDER BY CreatedDate ASC, Id ASC"
    )


@register_source
class SalesforceRecordSource(ProvisioningRecordSource):
    """
    Config keys: instance_url, access_token, api_version, record_prefix,
    page_size. `transport` is only passed by tests.
    """

    def __init__(self, config: dict[str, Any] | None = None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config)
        instance_url = self.config.get("instance_url")
        if not instance_url:
            raise ValueError("Salesforce source requires instance_url")
        self.base_url = instance_url.rstrip("/")
        self.api_version = self.config.get("api_version", "v59.0")
        self.record_prefix = self.config.get("record_prefix", "PS-")
        self.page_size = int(self.config.get("page_size", 2000))
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {self.config.get('access_token', '')}",
            "Accept": "application/json",
            "Sforce-Query-Options": f"batchSize={self.page_size}",
        }

    @property
    def source_type(self) -> SourceType:
        return SourceType.SALESFORCE

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SalesforceRecordSource":
        settings = settings or get_settings()
        return cls(
            config={
                "instance_url": settings.salesforce_instance_url,
                "access_token": settings.salesforce_access_token,
                "api_version": settings.salesforce_api_version,
                "record_prefix": settings.salesforce_record_prefix,
                "page_size": settings.salesforce_page_size,
            }
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def _get_page(self, client: httpx.AsyncClient, url: str, params: dict | None = None) -> dict:
        response = await client.get(url, headers=self.headers, params=params)
        response.raise_for_status()
        return response.json()

    async def fetch_all(self) -> FetchResult:
        result = FetchResult()
        url = f"{self.base_url}/services/data/{self.api_version}/query"
        params: dict | None = {"q": build_soql(self.record_prefix)}
        pages = 0

        async with httpx.AsyncClient(transport=self.transport, timeout=30.0) as client:
            while url:
                try:
                    page = await self._get_page(client, url, params)
                except httpx.HTTPStatusError as exc:
                    raise RecordSourceError(
                        f"Salesforce query failed with HTTP {exc.response.status_code}: {exc.response.text[:200]}"
                    ) from exc
                except httpx.HTTPError as exc:
                    raise RecordSourceError(f"Salesforce unreachable: {exc}") from exc

                pages += 1
                for row in page.get("records", []):
                    try:
                        result.records.append(from_salesforce_row(row))
                    except RecordMappingError as exc:
                        result.skip(str(exc))
                        self.logger.warning("salesforce.row_skipped", error=str(exc), row_id=row.get("Id"))

                next_url = page.get("nextRecordsUrl")
                if page.get("done", True) or not next_url:
                    break
                url = f"{self.base_url}{next_url}"
                params = None

        self.logger.info(
            "salesforce.fetch.completed",
            pages=pages,
            records=len(result.records),
            skipped=result.records_skipped,
        )
        return result.complete()
