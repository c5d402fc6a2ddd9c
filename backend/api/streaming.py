"""Server-sent event plumbing for workflow runs.

Engine callbacks push events into an :class:`EventChannel`; the response
generator drains it and writes ``data: <json>\\n\\n`` frames until a
terminal event (``done`` or ``stopped``) has been sent.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi.responses import StreamingResponse

from workflow.engine import ExecutionOptions

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = ("done", "stopped")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


class EventChannel:
    """Unbounded FIFO of events for one stream."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def put(self, event_type: str, **payload: Any) -> None:
        self._queue.put_nowait({"type": event_type, **payload})

    async def get(self) -> Dict[str, Any]:
        return await self._queue.get()

    def attach(self, options: ExecutionOptions) -> ExecutionOptions:
        """Point the run's notification hooks at this channel."""
        options.on_log = lambda line: self.put("log", message=line)
        options.on_node_start = lambda node_id, params: self.put("node_start", nodeId=node_id, params=params)
        options.on_node_complete = lambda node_id, success, output: self.put(
            "node_complete", nodeId=node_id, success=success, output=output
        )
        options.on_error = lambda node_id, message: self.put("error", nodeId=node_id, message=message)
        if options.profile:
            options.on_node_profile = lambda node_id, profile: self.put(
                "node_profile", **profile.to_dict()
            )
        return options


async def drain(
    channel: EventChannel,
    on_close: Optional[Callable[[], None]] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames until a terminal event; ``on_close`` always runs."""
    try:
        while True:
            event = await channel.get()
            yield sse_event(event)
            if event["type"] in TERMINAL_EVENTS:
                break
    finally:
        # Reached on normal completion and on client disconnect alike.
        if on_close is not None:
            try:
                on_close()
            except Exception as e:
                logger.warning(f"Stream close handler failed: {e}")


def sse_response(stream: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)
