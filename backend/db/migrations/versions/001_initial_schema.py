"""
Initial schema - audit trail, expiration findings, run ledger

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. PS audit trail
    op.create_table(
        "ps_audit_trail",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ps_record_id", sa.String(255), nullable=False),
        sa.Column("ps_record_name", sa.String(100), nullable=False),
        sa.Column("account_id", sa.String(255)),
        sa.Column("account_name", sa.String(255)),
        sa.Column("account_site", sa.String(255)),
        sa.Column("status", sa.String(100)),
        sa.Column("request_type", sa.String(100)),
        sa.Column("deployment_id", sa.String(255)),
        sa.Column("deployment_name", sa.String(100)),
        sa.Column("tenant_name", sa.String(255)),
        sa.Column("billing_status", sa.String(100)),
        sa.Column("sml_error_message", sa.Text),
        sa.Column("payload_data", sa.Text),
        sa.Column("created_date", sa.DateTime),
        sa.Column("created_by", sa.String(255)),
        sa.Column("last_modified_date", sa.DateTime),
        sa.Column("captured_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("change_type", sa.String(50), nullable=False, server_default="initial"),
        sa.Column("previous_status", sa.String(100)),
        sa.Column("run_id", UUID(as_uuid=True)),
        sa.UniqueConstraint("ps_record_id", "captured_at", name="uq_ps_audit_record_captured"),
        sa.CheckConstraint(
            "change_type IN ('initial', 'status_change', 'field_change')",
            name="ck_ps_audit_change_type",
        ),
    )
    op.create_index("ix_ps_audit_record_captured", "ps_audit_trail", ["ps_record_id", "captured_at"])
    op.create_index("ix_ps_audit_record_name", "ps_audit_trail", ["ps_record_name"])
    op.create_index("ix_ps_audit_account", "ps_audit_trail", ["account_id"])
    op.create_index("ix_ps_audit_change_type", "ps_audit_trail", ["change_type"])

    # 2. Expiration findings
    op.create_table(
        "expiration_findings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("run_id", UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", sa.String(255)),
        sa.Column("account_name", sa.String(255)),
        sa.Column("ps_record_id", sa.String(255), nullable=False),
        sa.Column("ps_record_name", sa.String(100)),
        sa.Column("product_code", sa.String(100), nullable=False),
        sa.Column("product_name", sa.String(255)),
        sa.Column("product_type", sa.String(50), nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("days_until_expiry", sa.Integer, nullable=False),
        sa.Column("disposition", sa.String(20), nullable=False, server_default="reportable"),
        sa.Column("extending_ps_record_id", sa.String(255)),
        sa.Column("extending_ps_record_name", sa.String(100)),
        sa.Column("extending_end_date", sa.Date),
        sa.Column("analyzed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "disposition IN ('reportable', 'extended', 'superseded')",
            name="ck_expiration_finding_disposition",
        ),
        sa.CheckConstraint("product_type IN ('Model', 'Data', 'App')", name="ck_expiration_finding_product_type"),
    )
    op.create_index("ix_expiration_findings_run", "expiration_findings", ["run_id"])
    op.create_index("ix_expiration_findings_account", "expiration_findings", ["account_id"])
    op.create_index("ix_expiration_findings_end_date", "expiration_findings", ["end_date"])
    op.create_index("ix_expiration_findings_disposition", "expiration_findings", ["disposition"])

    # 3. Run ledger
    op.create_table(
        "analysis_runs",
        sa.Column("run_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("job", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("records_scanned", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_skipped", sa.Integer, nullable=False, server_default="0"),
        sa.Column("entitlements_scanned", sa.Integer, nullable=False, server_default="0"),
        sa.Column("findings_reportable", sa.Integer, nullable=False, server_default="0"),
        sa.Column("findings_extended", sa.Integer, nullable=False, server_default="0"),
        sa.Column("findings_superseded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("new_snapshots", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status_changes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("other_changes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lookback_years", sa.Integer),
        sa.Column("window_days", sa.Integer),
        sa.Column("error_message", sa.Text),
        sa.CheckConstraint("job IN ('ps_audit', 'expiration')", name="ck_analysis_run_job"),
        sa.CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_analysis_run_status"),
    )
    op.create_index("ix_analysis_runs_job_started", "analysis_runs", ["job", "started_at"])


def downgrade() -> None:
    for table in ("analysis_runs", "expiration_findings", "ps_audit_trail"):
        op.drop_table(table)
