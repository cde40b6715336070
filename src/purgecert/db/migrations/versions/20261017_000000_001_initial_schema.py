"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-17 00:00:00.000000+00:00

Creates all tables for purgecert:
- retention_policies, legal_holds (policy and hold registries)
- execution_runs (run lifecycle and checkpoints)
- ledger_heads, ledger_entries, signing_keys (signed hash-chain ledger)
- deletion_certificates (certificate index over the ledger)
- jobs (background processing)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_ENUMS: dict[str, tuple[str, ...]] = {
    "retention_unit": ("days", "months", "years"),
    "data_category": (
        "personal_data",
        "medical_data",
        "financial_data",
        "system_data",
        "audit_data",
    ),
    "deletion_action": ("soft_delete", "hard_delete", "anonymize", "archive"),
    "run_status": ("pending", "running", "completed", "failed", "partially_completed"),
    "run_trigger": ("scheduled", "manual", "recovery"),
    "certificate_outcome": ("executed", "skipped_hold", "skipped_not_eligible", "failed"),
    "ledger_stream": ("certificates", "audit"),
    "key_status": ("active", "retired"),
    "job_status": ("pending", "running", "completed", "failed", "cancelled"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def _uuid_pk(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def _jsonb(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), nullable=nullable)


def upgrade() -> None:
    """Apply migration: initial schema."""
    for name in _ENUMS:
        _enum(name).create(op.get_bind(), checkfirst=True)

    # ------------------------------------------------------------------
    # retention_policies
    # ------------------------------------------------------------------
    op.create_table(
        "retention_policies",
        _uuid_pk("policy_version_id"),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(100), nullable=False),
        _jsonb("include_filter"),
        _jsonb("exclude_filter"),
        sa.Column("retention_value", sa.Integer(), nullable=False),
        sa.Column("retention_unit", _enum("retention_unit"), nullable=False),
        sa.Column("retention_from_field", sa.String(100), nullable=False),
        sa.Column("action", _enum("deletion_action"), nullable=False),
        sa.Column("schedule", sa.String(100), nullable=False),
        sa.Column("category", _enum("data_category"), nullable=False),
        sa.Column("compliance_basis", sa.Text(), nullable=True),
        sa.Column("batch_size", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _timestamp("superseded_at", nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("policy_version_id", name=op.f("pk_retention_policies")),
        sa.UniqueConstraint(
            "policy_id", "version", name="uq_retention_policies_policy_version"
        ),
    )
    op.create_index(
        "uq_retention_policies_active_policy",
        "retention_policies",
        ["policy_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )
    op.create_index(
        "ix_retention_policies_entity_type", "retention_policies", ["entity_type"], unique=False
    )
    op.create_index(
        "ix_retention_policies_is_active", "retention_policies", ["is_active"], unique=False
    )

    # ------------------------------------------------------------------
    # legal_holds
    # ------------------------------------------------------------------
    op.create_table(
        "legal_holds",
        _uuid_pk("hold_id"),
        _timestamp("created_at"),
        sa.Column("entity_type", sa.String(100), nullable=True),
        _jsonb("record_ids"),
        _jsonb("policy_ids"),
        _jsonb("match"),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("ends_at", nullable=True),
        _timestamp("released_at", nullable=True),
        sa.Column("released_by", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("hold_id", name=op.f("pk_legal_holds")),
    )
    op.create_index("ix_legal_holds_entity_type", "legal_holds", ["entity_type"], unique=False)
    op.create_index("ix_legal_holds_starts_at", "legal_holds", ["starts_at"], unique=False)
    op.create_index("ix_legal_holds_released_at", "legal_holds", ["released_at"], unique=False)

    # ------------------------------------------------------------------
    # execution_runs
    # ------------------------------------------------------------------
    op.create_table(
        "execution_runs",
        _uuid_pk("run_id"),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("policy_version", sa.Integer(), nullable=False),
        sa.Column("policy_version_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("trigger", _enum("run_trigger"), nullable=False),
        sa.Column("triggered_by", sa.String(255), nullable=False),
        sa.Column("status", _enum("run_status"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("ended_at", nullable=True),
        sa.Column("evaluated_count", sa.Integer(), nullable=False),
        sa.Column("executed_count", sa.Integer(), nullable=False),
        sa.Column("held_count", sa.Integer(), nullable=False),
        sa.Column("not_eligible_count", sa.Integer(), nullable=False),
        sa.Column("failed_count", sa.Integer(), nullable=False),
        sa.Column("cursor", sa.Text(), nullable=True),
        sa.Column("batches_completed", sa.Integer(), nullable=False),
        sa.Column("owner", sa.String(255), nullable=True),
        _timestamp("heartbeat_at", nullable=True),
        _timestamp("cancel_requested_at", nullable=True),
        sa.Column("cancel_requested_by", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("run_id", name=op.f("pk_execution_runs")),
    )
    # One running execution per policy
    op.create_index(
        "uq_execution_runs_running_policy",
        "execution_runs",
        ["policy_id"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )
    op.create_index(
        "ix_execution_runs_policy_started",
        "execution_runs",
        ["policy_id", "started_at"],
        unique=False,
    )
    op.create_index("ix_execution_runs_status", "execution_runs", ["status"], unique=False)

    # ------------------------------------------------------------------
    # signing_keys
    # ------------------------------------------------------------------
    op.create_table(
        "signing_keys",
        sa.Column("key_id", sa.String(100), nullable=False),
        _timestamp("created_at"),
        sa.Column("algorithm", sa.String(50), nullable=False),
        sa.Column("status", _enum("key_status"), nullable=False),
        sa.Column("public_key_pem", sa.Text(), nullable=False),
        sa.Column("private_key_pem", sa.Text(), nullable=True),
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("is_encrypted", sa.Boolean(), nullable=False),
        _timestamp("retired_at", nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("key_id", name=op.f("pk_signing_keys")),
    )
    op.create_index(
        "uq_signing_keys_active",
        "signing_keys",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # ------------------------------------------------------------------
    # ledger_heads / ledger_entries
    # ------------------------------------------------------------------
    op.create_table(
        "ledger_heads",
        sa.Column("stream", _enum("ledger_stream"), nullable=False),
        sa.Column("seq_no", sa.BigInteger(), nullable=False),
        sa.Column("tail_hash", sa.String(64), nullable=False),
        sa.Column("version", sa.BigInteger(), nullable=False),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("stream", name=op.f("pk_ledger_heads")),
    )

    op.create_table(
        "ledger_entries",
        _uuid_pk("entry_id"),
        _timestamp("created_at"),
        sa.Column("stream", _enum("ledger_stream"), nullable=False),
        sa.Column("seq_no", sa.BigInteger(), nullable=False),
        sa.Column("entry_type", sa.String(100), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("signature", sa.Text(), nullable=False),
        sa.Column("key_id", sa.String(100), nullable=False),
        sa.PrimaryKeyConstraint("entry_id", name=op.f("pk_ledger_entries")),
        sa.UniqueConstraint("stream", "seq_no", name="uq_ledger_entries_stream_seq_no"),
        sa.UniqueConstraint("stream", "prev_hash", name="uq_ledger_entries_stream_prev_hash"),
    )
    op.create_index(
        "ix_ledger_entries_entry_type", "ledger_entries", ["entry_type"], unique=False
    )
    op.create_index("ix_ledger_entries_key_id", "ledger_entries", ["key_id"], unique=False)

    # ------------------------------------------------------------------
    # deletion_certificates
    # ------------------------------------------------------------------
    op.create_table(
        "deletion_certificates",
        _uuid_pk("certificate_id"),
        sa.Column("idempotency_key", sa.String(64), nullable=False),
        sa.Column("run_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("policy_version", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("record_id", sa.String(255), nullable=False),
        sa.Column("action", _enum("deletion_action"), nullable=False),
        sa.Column("outcome", _enum("certificate_outcome"), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ledger_entry_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("ledger_seq_no", sa.BigInteger(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("signature", sa.Text(), nullable=False),
        sa.Column("key_id", sa.String(100), nullable=False),
        sa.ForeignKeyConstraint(
            ["ledger_entry_id"],
            ["ledger_entries.entry_id"],
            name=op.f("fk_deletion_certificates_ledger_entry_id_ledger_entries"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("certificate_id", name=op.f("pk_deletion_certificates")),
        sa.UniqueConstraint(
            "idempotency_key", name=op.f("uq_deletion_certificates_idempotency_key")
        ),
    )
    op.create_index(
        "ix_deletion_certificates_run_id", "deletion_certificates", ["run_id"], unique=False
    )
    op.create_index(
        "ix_deletion_certificates_policy_id", "deletion_certificates", ["policy_id"], unique=False
    )
    op.create_index(
        "ix_deletion_certificates_record",
        "deletion_certificates",
        ["entity_type", "record_id"],
        unique=False,
    )
    op.create_index(
        "ix_deletion_certificates_outcome", "deletion_certificates", ["outcome"], unique=False
    )

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------
    op.create_table(
        "jobs",
        _uuid_pk("job_id"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column("status", _enum("job_status"), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("locked_at", nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("lock_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("base_backoff_seconds", sa.Integer(), nullable=False),
        _jsonb("payload_json", nullable=True),
        _jsonb("result_json", nullable=True),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("queue", sa.String(100), nullable=False),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_jobs")),
    )
    op.create_index(
        "ix_jobs_queue_pending",
        "jobs",
        ["queue", "status", "run_at", "priority"],
        unique=False,
    )
    op.create_index("ix_jobs_job_type", "jobs", ["job_type"], unique=False)
    op.create_index("ix_jobs_correlation_id", "jobs", ["correlation_id"], unique=False)
    op.create_index("ix_jobs_completed_at", "jobs", ["completed_at"], unique=False)


def downgrade() -> None:
    """Revert migration: drop all tables and enum types."""
    op.drop_table("jobs")
    op.drop_table("deletion_certificates")
    op.drop_table("ledger_entries")
    op.drop_table("ledger_heads")
    op.drop_table("signing_keys")
    op.drop_table("execution_runs")
    op.drop_table("legal_holds")
    op.drop_table("retention_policies")

    for name in reversed(list(_ENUMS)):
        _enum(name).drop(op.get_bind(), checkfirst=True)
