"""
Provisioning record sources.

Usage:
    from integrations.base import get_source, SourceType

    source = get_source(SourceType.SALESFORCE, config={"instance_url": "...", ...})
    result = await source.fetch_all()
"""

from integrations.base import (
    FetchResult,
    ProvisioningRecordSource,
    RecordSourceError,
    SourceType,
    StaticRecordSource,
    get_source,
    register_source,
)
from integrations.salesforce import SalesforceRecordSource

__all__ = [
    "FetchResult",
    "ProvisioningRecordSource",
    "RecordSourceError",
    "SourceType",
    "StaticRecordSource",
    "get_source",
    "register_source",
    "SalesforceRecordSource",
]
