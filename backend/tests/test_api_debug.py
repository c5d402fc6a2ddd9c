"""Tests for the step-debugging endpoints."""

import asyncio

import pytest

from conftest import make_chain
from test_api_runs import parse_sse


async def wait_for_pause(app, node_id, timeout=2.0):
    """Poll the app's session table until the single live session pauses on ``node_id``."""
    sessions = app.state.debug_sessions
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        for session_id in sessions.session_ids:
            session = sessions.get(session_id)
            if session is not None and session.is_paused and session.paused_node_id == node_id:
                return session
        await asyncio.sleep(0.005)
    raise AssertionError(f"no session paused on {node_id}")


@pytest.mark.unit
class TestDebugRun:
    async def test_step_through_workflow(self, client, app):
        stream = asyncio.create_task(client.post("/api/v1/debug/run", json={"workflow": make_chain(2)}))

        session = await wait_for_pause(app, "n1")
        resp = await client.post("/api/v1/debug/step", json={"sessionId": session.session_id})
        assert resp.status_code == 200
        assert resp.json()["accepted"] is True

        await wait_for_pause(app, "n2")
        await client.post("/api/v1/debug/step", json={"sessionId": session.session_id})

        response = await asyncio.wait_for(stream, timeout=2.0)
        events = parse_sse(response.text)
        types = [e["type"] for e in events]

        assert types[0] == "session"
        assert events[0]["sessionId"] == session.session_id
        assert types[-1] == "done"
        assert events[-1]["result"]["success"] is True
        assert [e["nodeId"] for e in events if e["type"] == "paused"] == ["n1", "n2"]
        # Every pause precedes the start of its node
        assert types.index("paused") < types.index("node_start")
        # Finished sessions are removed
        assert app.state.debug_sessions.active_count == 0

    async def test_stop_ends_stream(self, client, app):
        stream = asyncio.create_task(client.post("/api/v1/debug/run", json={"workflow": make_chain(3)}))

        session = await wait_for_pause(app, "n1")
        await client.post("/api/v1/debug/step", json={"sessionId": session.session_id})
        await wait_for_pause(app, "n2")

        resp = await client.post("/api/v1/debug/stop", json={"sessionId": session.session_id})
        assert resp.json() == {"session_id": session.session_id, "accepted": True, "status": "stopped"}

        events = parse_sse((await asyncio.wait_for(stream, timeout=2.0)).text)
        assert events[-1]["type"] == "stopped"
        result = events[-1]["result"]
        assert result["success"] is False
        assert result["error"]["message"] == "Execution stopped by debugger"
        assert "n3" not in result["nodeResults"]

    async def test_run_without_step_mode(self, client, app):
        resp = await client.post("/api/v1/debug/run", json={"workflow": make_chain(2), "stepMode": False})
        events = parse_sse(resp.text)
        types = [e["type"] for e in events]

        assert "paused" not in types
        assert types[0] == "session"
        assert types[-1] == "done"

    async def test_unknown_session(self, client):
        resp = await client.post("/api/v1/debug/step", json={"sessionId": "nope"})
        assert resp.status_code == 404
        assert "nope" in resp.json()["detail"]

        resp = await client.post("/api/v1/debug/stop", json={"sessionId": "nope"})
        assert resp.status_code == 404

    async def test_compile_error(self, client):
        workflow = make_chain(1)
        workflow["nodes"][0]["functionId"] = "missing.op"
        resp = await client.post("/api/v1/debug/run", json={"workflow": workflow})
        assert resp.status_code == 422

    async def test_step_completed_session_is_409(self, client, app):
        session = app.state.debug_sessions.create()
        session.complete()

        resp = await client.post("/api/v1/debug/step", json={"sessionId": session.session_id})
        assert resp.status_code == 409
        assert "completed" in resp.json()["detail"]

    async def test_early_step_is_not_accepted(self, client, app):
        session = app.state.debug_sessions.create()

        resp = await client.post("/api/v1/debug/step", json={"sessionId": session.session_id})
        assert resp.status_code == 200
        assert resp.json()["accepted"] is False
        assert not session.is_paused
