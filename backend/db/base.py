"""Base model class for all SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base shared by every table."""

    pass


class TimestampMixin:
    """Adds row-level ``created_at`` / ``updated_at`` columns.

    These are database bookkeeping only; execution times that belong to the
    snapshot contract are stored as epoch milliseconds on the model itself.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now()
    )
    row_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
