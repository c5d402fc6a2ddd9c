"""Interactive step debugging.

A :class:`DebugSession` plugs into a run as its ``on_before_node`` hook.
In step mode every main-path node waits on a :class:`ResumeGate` until the
client sends a resume; stopping the session cancels the pending gate and
makes every later pause fail immediately with :class:`SessionStoppedError`.

Fan-out inside clusters and batches never passes through the gate.
"""

import asyncio
import uuid
from enum import Enum
from typing import Callable, Dict, Optional

import structlog

from core.exceptions import ConflictError, NotFoundError

logger = structlog.get_logger(__name__)


class SessionStoppedError(ConflictError):
    """Raised out of a pause when the debug session has been stopped."""

    def __init__(self, message: str = "Execution stopped by debugger"):
        super().__init__(message)


class GateState(str, Enum):
    PENDING = "pending"
    RESUMED = "resumed"
    CANCELLED = "cancelled"


class ResumeGate:
    """One-shot cancellable future: pending -> resumed | cancelled.

    Only the first transition wins; later ``resume``/``cancel`` calls
    return False and change nothing.
    """

    def __init__(self):
        self.state = GateState.PENDING
        self._event = asyncio.Event()

    @property
    def is_pending(self) -> bool:
        return self.state == GateState.PENDING

    def resume(self) -> bool:
        if self.state != GateState.PENDING:
            return False
        self.state = GateState.RESUMED
        self._event.set()
        return True

    def cancel(self) -> bool:
        if self.state != GateState.PENDING:
            return False
        self.state = GateState.CANCELLED
        self._event.set()
        return True

    async def wait(self) -> None:
        """Block until settled; raise if the gate was cancelled."""
        await self._event.wait()
        if self.state == GateState.CANCELLED:
            raise SessionStoppedError()


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


class DebugSession:
    """Step-debugging state for a single run."""

    def __init__(
        self,
        session_id: Optional[str] = None,
        step_mode: bool = True,
        on_pause: Optional[Callable[[str], None]] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.step_mode = step_mode
        self.status = SessionStatus.RUNNING
        self.paused_node_id: Optional[str] = None
        self._on_pause = on_pause
        self._gate: Optional[ResumeGate] = None

    @property
    def is_paused(self) -> bool:
        return self._gate is not None and self._gate.is_pending

    @property
    def is_stopped(self) -> bool:
        return self.status == SessionStatus.STOPPED

    async def pause(self, node_id: str) -> None:
        """Suspend before ``node_id`` until resumed; used as on_before_node."""
        if self.is_stopped:
            raise SessionStoppedError()
        if not self.step_mode:
            return

        gate = ResumeGate()
        self._gate = gate
        self.paused_node_id = node_id
        self.status = SessionStatus.PAUSED
        logger.debug("Debug session paused", session_id=self.session_id, node_id=node_id)

        if self._on_pause:
            self._on_pause(node_id)

        try:
            await gate.wait()
        finally:
            if self._gate is gate:
                self._gate = None
                self.paused_node_id = None
            if not self.is_stopped:
                self.status = SessionStatus.RUNNING

    def resume(self) -> bool:
        """Release the pending pause. Without one, nothing happens and False is returned."""
        if self.status in (SessionStatus.STOPPED, SessionStatus.COMPLETED):
            return False
        return self._gate is not None and self._gate.resume()

    def stop(self) -> bool:
        """Cancel the session; a pending pause is released with an error."""
        if self.status in (SessionStatus.STOPPED, SessionStatus.COMPLETED):
            return False
        self.status = SessionStatus.STOPPED
        if self._gate is not None:
            self._gate.cancel()
        logger.info("Debug session stopped", session_id=self.session_id)
        return True

    def complete(self) -> None:
        if not self.is_stopped:
            self.status = SessionStatus.COMPLETED


class DebugSessionManager:
    """Holds the live debug sessions of one application instance."""

    def __init__(self):
        self._sessions: Dict[str, DebugSession] = {}

    def create(self, step_mode: bool = True, on_pause: Optional[Callable[[str], None]] = None) -> DebugSession:
        session = DebugSession(step_mode=step_mode, on_pause=on_pause)
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[DebugSession]:
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> DebugSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Debug session not found: {session_id}")
        return session

    def resume(self, session_id: str) -> bool:
        session = self._require(session_id)
        if session.status in (SessionStatus.STOPPED, SessionStatus.COMPLETED):
            raise ConflictError(f"Debug session {session_id} is {session.status.value}")
        return session.resume()

    def stop(self, session_id: str) -> bool:
        return self._require(session_id).stop()

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)
