"""
Provisioning Record Source — Abstract Base Class

Every source of PS records (the Salesforce REST API in production, fixed
record lists in tests and backfills) implements this interface so the audit
and expiration jobs are source-agnostic.

A source returns the FULL current record set on every call. Rows that cannot
be mapped are skipped and reported back; a source that cannot be reached
raises RecordSourceError and the calling job aborts.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from provisioning.records import ProvisioningRecord

logger = structlog.get_logger()


class RecordSourceError(RuntimeError):
    """The record source could not be reached or refused the request."""


class SourceType(str, Enum):
    SALESFORCE = "salesforce"
    STATIC = "static"


# ── Fetch result container ────────────────────────────────────────────────


@dataclass
class FetchResult:
    """Standardized return from every source fetch."""

    records: list[ProvisioningRecord] = field(default_factory=list)
    records_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    def skip(self, error: str) -> None:
        self.records_skipped += 1
        self.errors.append(error)

    def complete(self) -> "FetchResult":
        self.completed_at = datetime.utcnow()
        return self


# ── Abstract source ───────────────────────────────────────────────────────


class ProvisioningRecordSource(ABC):
    def __init__(self, config: dict[str, Any] | None = None):
        self.config = config or {}
        self.logger = logger.bind(source=self.source_type.value)

    @property
    @abstractmethod
    def source_type(self) -> SourceType: ...

    @abstractmethod
    async def fetch_all(self) -> FetchResult:
        """Fetch every current provisioning record."""
        ...


class StaticRecordSource(ProvisioningRecordSource):
    """Serves a fixed record list, e.g. a replayed export."""

    def __init__(self, records: list[ProvisioningRecord], config: dict[str, Any] | None = None):
        super().__init__(config)
        self.records = list(records)

    @property
    def source_type(self) -> SourceType:
        return SourceType.STATIC

    async def fetch_all(self) -> FetchResult:
        return FetchResult(records=list(self.records)).complete()


# ── Source registry ───────────────────────────────────────────────────────

_SOURCE_REGISTRY: dict[SourceType, type[ProvisioningRecordSource]] = {}


def register_source(source_cls: type[ProvisioningRecordSource]):
    """Decorator: register a source class for its source type."""
    _SOURCE_REGISTRY[source_cls.source_type.fget(None)] = source_cls  # type: ignore
    return source_cls


def get_source(source_type: SourceType, config: dict[str, Any]) -> ProvisioningRecordSource:
    source_cls = _SOURCE_REGISTRY.get(source_type)
    if source_cls is None:
        raise ValueError(f"No record source registered for type: {source_type.value}")
    return source_cls(config=config)
