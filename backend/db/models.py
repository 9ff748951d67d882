"""
PS Monitor Database Models

Tables:
  1. ps_audit_trail       - Point-in-time snapshots of PS records, written only on change
  2. expiration_findings  - Per-run expiration analysis output (replaced wholesale each run)
  3. analysis_runs        - Run ledger for the audit capture and expiration analysis jobs
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


CHANGE_TYPES = ("initial", "status_change", "field_change")
DISPOSITIONS = ("reportable", "extended", "superseded")
RUN_JOBS = ("ps_audit", "expiration")
RUN_STATUSES = ("running", "completed", "failed")


# ─── 1. PS Audit Trail ─────────────────────────────────────────────────────


class ProvisioningSnapshot(Base):
    __tablename__ = "ps_audit_trail"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ps_record_id = Column(String(255), nullable=False)
    ps_record_name = Column(String(100), nullable=False)
    account_id = Column(String(255))
    account_name = Column(String(255))
    account_site = Column(String(255))
    status = Column(String(100))
    request_type = Column(String(100))
    deployment_id = Column(String(255))
    deployment_name = Column(String(100))
    tenant_name = Column(String(255))
    billing_status = Column(String(100))
    sml_error_message = Column(Text)
    payload_data = Column(Text)
    created_date = Column(DateTime)
    created_by = Column(String(255))
    last_modified_date = Column(DateTime)

    captured_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    change_type = Column(String(50), nullable=False, default="initial")
    previous_status = Column(String(100))
    run_id = Column(GUID())

    __table_args__ = (
        UniqueConstraint("ps_record_id", "captured_at", name="uq_ps_audit_record_captured"),
        Index("ix_ps_audit_record_captured", "ps_record_id", "captured_at"),
        Index("ix_ps_audit_record_name", "ps_record_name"),
        Index("ix_ps_audit_account", "account_id"),
        Index("ix_ps_audit_change_type", "change_type"),
        CheckConstraint(
            "change_type IN ('initial', 'status_change', 'field_change')",
            name="ck_ps_audit_change_type",
        ),
    )


# ─── 2. Expiration Findings ────────────────────────────────────────────────


class ExpirationFinding(Base):
    __tablename__ = "expiration_findings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(GUID(), nullable=False)
    account_id = Column(String(255))
    account_name = Column(String(255))
    ps_record_id = Column(String(255), nullable=False)
    ps_record_name = Column(String(100))
    product_code = Column(String(100), nullable=False)
    product_name = Column(String(255))
    product_type = Column(String(50), nullable=False)  # Model, Data, App
    end_date = Column(Date, nullable=False)
    days_until_expiry = Column(Integer, nullable=False)
    disposition = Column(String(20), nullable=False, default="reportable")
    extending_ps_record_id = Column(String(255))
    extending_ps_record_name = Column(String(100))
    extending_end_date = Column(Date)
    analyzed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_expiration_findings_run", "run_id"),
        Index("ix_expiration_findings_account", "account_id"),
        Index("ix_expiration_findings_end_date", "end_date"),
        Index("ix_expiration_findings_disposition", "disposition"),
        CheckConstraint(
            "disposition IN ('reportable', 'extended', 'superseded')",
            name="ck_expiration_finding_disposition",
        ),
        CheckConstraint("product_type IN ('Model', 'Data', 'App')", name="ck_expiration_finding_product_type"),
    )


# ─── 3. Analysis Runs (ledger) ─────────────────────────────────────────────


class AnalysisRun(Base):
    __tablename__ = "analysis_runs"

    run_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    job = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="running")
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)

    records_scanned = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    entitlements_scanned = Column(Integer, nullable=False, default=0)
    findings_reportable = Column(Integer, nullable=False, default=0)
    findings_extended = Column(Integer, nullable=False, default=0)
    findings_superseded = Column(Integer, nullable=False, default=0)
    new_snapshots = Column(Integer, nullable=False, default=0)
    status_changes = Column(Integer, nullable=False, default=0)
    other_changes = Column(Integer, nullable=False, default=0)

    lookback_years = Column(Integer)
    window_days = Column(Integer)
    error_message = Column(Text)

    __table_args__ = (
        Index("ix_analysis_runs_job_started", "job", "started_at"),
        CheckConstraint("job IN ('ps_audit', 'expiration')", name="ck_analysis_run_job"),
        CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_analysis_run_status"),
    )

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None or self.started_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
