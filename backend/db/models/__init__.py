"""Database models for the flow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.execution_snapshot import ExecutionSnapshotModel

__all__ = [
    "ExecutionSnapshotModel",
]
