"""Execution snapshot persistence.

The engine saves a ``running`` snapshot before each main-path node and a
final ``completed`` / ``failed`` snapshot when the run ends. Adapters are
pluggable: an in-memory one for tests and single-process use, and one backed
by the ``execution_snapshots`` table.

Cleanup never removes a snapshot whose status is ``running``.
"""

import random
import string
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, select

from db.models.execution_snapshot import ExecutionSnapshotModel
from workflow.store import SharedStore

logger = structlog.get_logger(__name__)

DEFAULT_LIST_LIMIT = 100


def now_ms() -> int:
    return int(time.time() * 1000)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ExecutionSnapshot(BaseModel):
    """Serializable state of one execution at a point in time."""

    execution_id: str
    workflow_id: str
    current_node_id: Optional[str] = None
    status: ExecutionStatus
    store: Dict[str, Any] = Field(default_factory=dict)
    logs: List[str] = Field(default_factory=list)
    started_at: int
    updated_at: int
    completed_at: Optional[int] = None
    error: Optional[Dict[str, str]] = None


def create_execution_id() -> str:
    """``exec_<epoch ms>_<random suffix>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"exec_{now_ms()}_{suffix}"


def create_execution_snapshot(
    execution_id: str,
    workflow_id: str,
    store: SharedStore,
    status: ExecutionStatus,
    current_node_id: Optional[str] = None,
    started_at: Optional[int] = None,
) -> ExecutionSnapshot:
    timestamp = now_ms()
    finished = status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)
    return ExecutionSnapshot(
        execution_id=execution_id,
        workflow_id=workflow_id,
        current_node_id=current_node_id,
        status=status,
        store=dict(store.data),
        logs=list(store.logs),
        started_at=started_at or timestamp,
        updated_at=timestamp,
        completed_at=timestamp if finished else None,
        error=store.last_error.to_dict() if store.last_error else None,
    )


class PersistenceAdapter(ABC):
    """Storage contract for execution snapshots."""

    @abstractmethod
    async def save_state(self, snapshot: ExecutionSnapshot) -> None:
        ...

    @abstractmethod
    async def load_state(self, execution_id: str) -> Optional[ExecutionSnapshot]:
        ...

    @abstractmethod
    async def list_executions(self, workflow_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionSnapshot]:
        """Snapshots of one workflow, newest first."""

    @abstractmethod
    async def delete_state(self, execution_id: str) -> bool:
        ...

    @abstractmethod
    async def cleanup(self, older_than_ms: int) -> int:
        """Delete non-running snapshots not updated within ``older_than_ms``.

        Returns the number of snapshots removed.
        """


class InMemoryPersistenceAdapter(PersistenceAdapter):
    """Process-local adapter; stores deep copies."""

    def __init__(self):
        self._states: Dict[str, ExecutionSnapshot] = {}

    async def save_state(self, snapshot: ExecutionSnapshot) -> None:
        self._states[snapshot.execution_id] = snapshot.model_copy(deep=True)

    async def load_state(self, execution_id: str) -> Optional[ExecutionSnapshot]:
        snapshot = self._states.get(execution_id)
        return snapshot.model_copy(deep=True) if snapshot else None

    async def list_executions(self, workflow_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionSnapshot]:
        matching = [s for s in self._states.values() if s.workflow_id == workflow_id]
        matching.sort(key=lambda s: s.started_at, reverse=True)
        return [s.model_copy(deep=True) for s in matching[:limit]]

    async def delete_state(self, execution_id: str) -> bool:
        return self._states.pop(execution_id, None) is not None

    async def cleanup(self, older_than_ms: int) -> int:
        cutoff = now_ms() - older_than_ms
        stale = [
            execution_id
            for execution_id, s in self._states.items()
            if s.status != ExecutionStatus.RUNNING and s.updated_at < cutoff
        ]
        for execution_id in stale:
            del self._states[execution_id]
        return len(stale)

    def clear(self) -> None:
        self._states.clear()


def _to_snapshot(row: ExecutionSnapshotModel) -> ExecutionSnapshot:
    return ExecutionSnapshot(
        execution_id=row.execution_id,
        workflow_id=row.workflow_id,
        current_node_id=row.current_node_id,
        status=ExecutionStatus(row.status),
        store=row.store or {},
        logs=row.logs or [],
        started_at=row.started_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
        error=row.error,
    )


class DatabasePersistenceAdapter(PersistenceAdapter):
    """Adapter over the ``execution_snapshots`` table.

    Args:
        session_factory: Async sessionmaker (see ``db.database.create_session_factory``).
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def save_state(self, snapshot: ExecutionSnapshot) -> None:
        data = snapshot.model_dump(mode="json")
        async with self._session_factory() as session:
            row = await session.get(ExecutionSnapshotModel, snapshot.execution_id)
            if row is None:
                session.add(ExecutionSnapshotModel(**data))
            else:
                for key, value in data.items():
                    setattr(row, key, value)
            await session.commit()

    async def load_state(self, execution_id: str) -> Optional[ExecutionSnapshot]:
        async with self._session_factory() as session:
            row = await session.get(ExecutionSnapshotModel, execution_id)
            return _to_snapshot(row) if row else None

    async def list_executions(self, workflow_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExecutionSnapshotModel)
                .where(ExecutionSnapshotModel.workflow_id == workflow_id)
                .order_by(ExecutionSnapshotModel.started_at.desc())
                .limit(limit)
            )
            return [_to_snapshot(row) for row in result.scalars().all()]

    async def delete_state(self, execution_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ExecutionSnapshotModel).where(ExecutionSnapshotModel.execution_id == execution_id)
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def cleanup(self, older_than_ms: int) -> int:
        cutoff = now_ms() - older_than_ms
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ExecutionSnapshotModel).where(
                    ExecutionSnapshotModel.status != ExecutionStatus.RUNNING.value,
                    ExecutionSnapshotModel.updated_at < cutoff,
                )
            )
            await session.commit()
            removed = result.rowcount or 0
        logger.info("Execution snapshots cleaned up", removed=removed, older_than_ms=older_than_ms)
        return removed
