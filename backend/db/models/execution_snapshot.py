"""Persisted execution snapshots.

One row per execution id, overwritten on every save. Times are epoch
milliseconds, matching :class:`workflow.persistence.ExecutionSnapshot`.
"""

from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin


class ExecutionSnapshotModel(TimestampMixin, Base):
    """Latest known state of one workflow execution."""

    __tablename__ = "execution_snapshots"

    execution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    current_node_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    store: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    logs: Mapped[Any] = mapped_column(JSON, nullable=False, default=list)
    started_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    completed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    error: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_execution_snapshots_workflow_started", "workflow_id", "started_at"),
    )
