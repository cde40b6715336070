"""Execution run model.

A run is one pass of a policy version over its scope. The partial unique
index on (policy_id) WHERE status = 'running' is what guarantees that two
scheduler instances can never start overlapping runs for the same policy.
"""

from __future__ import annotations

# Required at runtime for SQLAlchemy type resolution
import uuid  # noqa: TC003
from datetime import datetime  # noqa: TC003

from sqlalchemy import Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from purgecert.db.models.base import (
    Base,
    OptionalTimestampTZ,
    PortableUUID,
    RunStatus,
    RunTrigger,
    UTCDateTime,
    UUIDPrimaryKey,
    enum_type,
)


class ExecutionRun(Base):
    """Execution of one policy version.

    Certificates reference their run by run_id; the run itself holds no
    collection of certificates.
    """

    __tablename__ = "execution_runs"

    run_id: Mapped[UUIDPrimaryKey]

    policy_id: Mapped[uuid.UUID] = mapped_column(PortableUUID(), nullable=False)
    policy_version: Mapped[int] = mapped_column(nullable=False)
    policy_version_id: Mapped[uuid.UUID] = mapped_column(PortableUUID(), nullable=False)

    trigger: Mapped[RunTrigger] = mapped_column(
        enum_type(RunTrigger, "run_trigger"),
        nullable=False,
    )
    triggered_by: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[RunStatus] = mapped_column(
        enum_type(RunStatus, "run_status"),
        nullable=False,
        default=RunStatus.RUNNING,
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ended_at: Mapped[OptionalTimestampTZ]

    # Progress counters (recomputed from certificates at each checkpoint)
    evaluated_count: Mapped[int] = mapped_column(nullable=False, default=0)
    executed_count: Mapped[int] = mapped_column(nullable=False, default=0)
    held_count: Mapped[int] = mapped_column(nullable=False, default=0)
    not_eligible_count: Mapped[int] = mapped_column(nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(nullable=False, default=0)

    # Checkpoint: record-store cursor after the last completed window
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    batches_completed: Mapped[int] = mapped_column(nullable=False, default=0)

    # Liveness: owner is the engine instance driving the run
    owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    heartbeat_at: Mapped[OptionalTimestampTZ]

    cancel_requested_at: Mapped[OptionalTimestampTZ]
    cancel_requested_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_execution_runs_running_policy",
            "policy_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("ix_execution_runs_policy_started", "policy_id", "started_at"),
        Index("ix_execution_runs_status", "status"),
    )
