"""Interactive step-debugging endpoints.

POST /debug/run opens an SSE stream. Its first event is ``session`` with the
session id; in step mode a ``paused`` event precedes every main-path node and
the run waits for POST /debug/step. POST /debug/stop cancels the session and
the stream ends with ``stopped``. Closing the stream stops the session too.
"""

import logging

from fastapi import APIRouter, Depends

from api.routes.runs import build_engine, build_options, spawn
from api.schemas.run import DebugControlRequest, DebugControlResponse, DebugRunRequest
from api.streaming import EventChannel, drain, sse_response
from app.config import Settings
from app.dependencies import (
    get_app_settings,
    get_background_runs,
    get_debug_sessions,
    get_persistence,
    get_registry,
)
from operations.registry import FunctionRegistry
from workflow.debug_session import DebugSessionManager
from workflow.persistence import PersistenceAdapter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/debug", tags=["Debug"])


@router.post("/run")
async def debug_run(
    body: DebugRunRequest,
    registry: FunctionRegistry = Depends(get_registry),
    settings: Settings = Depends(get_app_settings),
    persistence: PersistenceAdapter = Depends(get_persistence),
    sessions: DebugSessionManager = Depends(get_debug_sessions),
    background_runs: set = Depends(get_background_runs),
):
    """Start a debug run and stream its events."""
    engine = build_engine(body, registry, settings, persistence)
    channel = EventChannel()
    session = sessions.create(
        step_mode=body.step_mode,
        on_pause=lambda node_id: channel.put("paused", nodeId=node_id),
    )
    session_id = session.session_id

    options = channel.attach(build_options(body, settings))
    options.on_before_node = session.pause
    options.execution_id = f"debug_{session_id}"

    channel.put("session", sessionId=session_id)

    async def run() -> None:
        result = await engine.execute(options)
        if session.is_stopped:
            channel.put("stopped", sessionId=session_id, result=result.to_dict())
        else:
            session.complete()
            channel.put("done", sessionId=session_id, result=result.to_dict())

    def close() -> None:
        # Client gone or stream finished: never leave a run parked on a pause.
        if session.stop():
            logger.info(f"Debug session {session_id} stopped on stream close")
        sessions.remove(session_id)

    spawn(background_runs, run())
    logger.info(f"Debug session {session_id} started (step_mode={body.step_mode})")
    return sse_response(drain(channel, on_close=close))


@router.post("/step", response_model=DebugControlResponse)
async def debug_step(
    body: DebugControlRequest,
    sessions: DebugSessionManager = Depends(get_debug_sessions),
) -> DebugControlResponse:
    """Resume exactly one pause of the session."""
    accepted = sessions.resume(body.session_id)
    session = sessions.get(body.session_id)
    return DebugControlResponse(session_id=body.session_id, accepted=accepted, status=session.status.value)


@router.post("/stop", response_model=DebugControlResponse)
async def debug_stop(
    body: DebugControlRequest,
    sessions: DebugSessionManager = Depends(get_debug_sessions),
) -> DebugControlResponse:
    """Cancel the session; the in-flight run ends at its next pause."""
    accepted = sessions.stop(body.session_id)
    session = sessions.get(body.session_id)
    return DebugControlResponse(session_id=body.session_id, accepted=accepted, status=session.status.value)
