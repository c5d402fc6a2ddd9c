"""Tests for step debugging sessions."""

import asyncio

import pytest

from conftest import make_chain
from core.exceptions import ConflictError, NotFoundError
from workflow.debug_session import (
    DebugSession,
    DebugSessionManager,
    GateState,
    ResumeGate,
    SessionStatus,
    SessionStoppedError,
)
from workflow.engine import ExecutionOptions, WorkflowEngine


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.mark.unit
class TestResumeGate:
    async def test_resume(self):
        gate = ResumeGate()
        assert gate.is_pending
        assert gate.resume() is True
        await gate.wait()
        assert gate.state == GateState.RESUMED

    async def test_cancel_raises(self):
        gate = ResumeGate()
        assert gate.cancel() is True
        with pytest.raises(SessionStoppedError):
            await gate.wait()

    def test_first_transition_wins(self):
        gate = ResumeGate()
        gate.resume()
        assert gate.cancel() is False
        assert gate.resume() is False
        assert gate.state == GateState.RESUMED


@pytest.mark.unit
class TestDebugSession:
    async def test_pause_blocks_until_resume(self):
        paused = []
        session = DebugSession(on_pause=paused.append)
        task = asyncio.create_task(session.pause("n1"))

        await wait_until(lambda: session.is_paused)
        assert paused == ["n1"]
        assert session.status == SessionStatus.PAUSED
        assert session.paused_node_id == "n1"
        assert not task.done()

        assert session.resume() is True
        await task
        assert session.status == SessionStatus.RUNNING
        assert session.paused_node_id is None

    async def test_resume_without_pause_is_ignored(self):
        session = DebugSession()
        assert session.resume() is False

        task = asyncio.create_task(session.pause("n1"))
        await wait_until(lambda: session.is_paused)
        assert not task.done()

        assert session.resume() is True
        await task

    async def test_second_resume_does_not_carry_over(self):
        session = DebugSession()
        task = asyncio.create_task(session.pause("n1"))
        await wait_until(lambda: session.is_paused)

        assert session.resume() is True
        assert session.resume() is False
        await task

        task = asyncio.create_task(session.pause("n2"))
        await wait_until(lambda: session.is_paused)
        assert session.paused_node_id == "n2"
        session.resume()
        await task

    async def test_step_mode_off_never_pauses(self):
        session = DebugSession(step_mode=False)
        await asyncio.wait_for(session.pause("n1"), timeout=0.5)

    async def test_stop_releases_pending_pause(self):
        session = DebugSession()
        task = asyncio.create_task(session.pause("n1"))
        await wait_until(lambda: session.is_paused)

        assert session.stop() is True
        with pytest.raises(SessionStoppedError):
            await task
        assert session.status == SessionStatus.STOPPED

    async def test_pause_after_stop_fails_immediately(self):
        session = DebugSession()
        session.stop()
        with pytest.raises(SessionStoppedError):
            await session.pause("n2")

    def test_stop_and_resume_after_stop(self):
        session = DebugSession()
        assert session.stop() is True
        assert session.stop() is False
        assert session.resume() is False

    def test_completed_session_cannot_be_stopped(self):
        session = DebugSession()
        session.complete()
        assert session.status == SessionStatus.COMPLETED
        assert session.stop() is False
        assert session.resume() is False


@pytest.mark.unit
class TestDebugSessionManager:
    def test_create_get_remove(self):
        manager = DebugSessionManager()
        session = manager.create()

        assert manager.get(session.session_id) is session
        assert manager.session_ids == [session.session_id]
        assert manager.active_count == 1

        manager.remove(session.session_id)
        assert manager.get(session.session_id) is None
        assert manager.active_count == 0

    def test_unknown_session(self):
        manager = DebugSessionManager()
        with pytest.raises(NotFoundError):
            manager.resume("missing")
        with pytest.raises(NotFoundError):
            manager.stop("missing")

    def test_step_finished_session_conflicts(self):
        manager = DebugSessionManager()
        done = manager.create()
        done.complete()
        stopped = manager.create()
        stopped.stop()

        with pytest.raises(ConflictError):
            manager.resume(done.session_id)
        with pytest.raises(ConflictError):
            manager.resume(stopped.session_id)
        assert manager.stop(done.session_id) is False


@pytest.mark.unit
class TestDebuggedExecution:
    async def test_step_mode_blocks_each_node(self, registry):
        session = DebugSession()
        engine = WorkflowEngine(registry)
        engine.load(make_chain(3))
        task = asyncio.create_task(engine.execute(ExecutionOptions(on_before_node=session.pause)))

        await wait_until(lambda: session.paused_node_id == "n1")
        session.resume()
        await wait_until(lambda: session.paused_node_id == "n2")

        # Node 2 has not started while paused
        running = engine.get_running_executions()
        assert list(running.values())[0]["nodes_completed"] == 1

        session.resume()
        await wait_until(lambda: session.paused_node_id == "n3")
        session.resume()
        result = await task

        assert result.success is True
        assert len(result.store.node_results) == 3

    async def test_stop_prevents_further_nodes(self, registry):
        session = DebugSession()
        engine = WorkflowEngine(registry)
        engine.load(make_chain(3))
        task = asyncio.create_task(engine.execute(ExecutionOptions(on_before_node=session.pause)))

        await wait_until(lambda: session.paused_node_id == "n1")
        session.resume()
        await wait_until(lambda: session.paused_node_id == "n2")
        session.stop()
        result = await task

        assert result.success is False
        assert result.error.node_id == "n2"
        assert result.error.error == "Execution stopped by debugger"
        assert "n3" not in result.store.node_results
        assert result.store.node_results["n2"].success is False

    async def test_double_step_pauses_on_every_node(self, registry):
        paused = []
        session = DebugSession(on_pause=paused.append)
        assert session.resume() is False
        engine = WorkflowEngine(registry)
        engine.load(make_chain(3))
        task = asyncio.create_task(engine.execute(ExecutionOptions(on_before_node=session.pause)))

        for node_id in ("n1", "n2", "n3"):
            await wait_until(lambda: session.paused_node_id == node_id)
            assert session.resume() is True
            # A repeated click while the node is released is dropped
            session.resume()
        result = await task

        assert result.success is True
        assert paused == ["n1", "n2", "n3"]
