"""Shared pytest fixtures for the Flow Engine test suite.

Provides:
- Fresh function registry per test (builtins plus a few test operations)
- Workflow definition builders
- In-memory async SQLite database (no PostgreSQL needed for tests)
- FastAPI test client (httpx.AsyncClient)
"""

import asyncio
import os
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from db.database import close_db, create_db_engine, create_session_factory, init_db  # noqa: E402
from operations.base import FunctionResult  # noqa: E402
from operations.registry import FunctionRegistry, create_default_registry  # noqa: E402


# ---------------------------------------------------------------------------
# Registry fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def registry() -> FunctionRegistry:
    """Builtins plus test operations:

    - test.fail     always fails with ``params["message"]``
    - test.raise    raises RuntimeError
    - test.echo     returns ``params`` merged with nothing else
    - test.double   doubles ``currentItem``; fails on negative numbers
    - test.route    returns the action given in ``params["action"]``
    - test.sleep    sleeps ``params["ms"]``, writes ``params["key"]``
    """
    reg = create_default_registry()

    @reg.function("test.fail", "Fail", category="Test")
    async def fail(params, ctx):
        return FunctionResult.fail(params.get("message", "boom"))

    @reg.function("test.raise", "Raise", category="Test")
    async def raise_(params, ctx):
        raise RuntimeError(params.get("message", "exploded"))

    @reg.function("test.echo", "Echo", category="Test")
    async def echo(params, ctx):
        return FunctionResult.ok(dict(params))

    @reg.function("test.double", "Double", category="Test")
    async def double(params, ctx):
        value = params["currentItem"]
        if value < 0:
            return FunctionResult.fail(f"negative: {value}")
        return FunctionResult.ok(value * 2)

    @reg.function("test.route", "Route", category="Test")
    async def route(params, ctx):
        return FunctionResult.ok(params.get("action"), action=params.get("action"))

    @reg.function("test.sleep", "Sleep", category="Test")
    async def sleep(params, ctx):
        await asyncio.sleep(params.get("ms", 0) / 1000)
        if params.get("key"):
            ctx.store[params["key"]] = params.get("value", True)
        return FunctionResult.ok(params.get("value"))

    return reg


# ---------------------------------------------------------------------------
# Workflow builders
# ---------------------------------------------------------------------------

def make_node(node_id: str, function_id: str = "core.passThrough", **extra: Any) -> Dict[str, Any]:
    node = {"id": node_id, "functionId": function_id, "params": extra.pop("params", {})}
    node.update(extra)
    return node


def make_edge(source: str, target: str, action: str = "default", **extra: Any) -> Dict[str, Any]:
    return {"from": source, "to": target, "action": action, **extra}


def make_workflow(
    nodes: List[Dict[str, Any]],
    edges: Optional[List[Dict[str, Any]]] = None,
    start: Optional[str] = None,
    workflow_id: str = "wf-test",
    envs: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "id": workflow_id,
        "name": "Test workflow",
        "nodes": nodes,
        "edges": edges or [],
        "flow": {"startNodeId": start or nodes[0]["id"], "envs": envs or {}},
    }


def make_chain(count: int, function_id: str = "core.passThrough") -> Dict[str, Any]:
    """``n1 -> n2 -> ... -> n<count>`` on default edges."""
    nodes = [make_node(f"n{i}", function_id, params={"value": i}) for i in range(1, count + 1)]
    edges = [make_edge(f"n{i}", f"n{i + 1}") for i in range(1, count)]
    return make_workflow(nodes, edges)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database with all tables."""
    engine = create_db_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)

    yield engine

    await close_db(engine)


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return create_session_factory(db_engine)


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(registry):
    """A FastAPI app with its own registry and in-memory persistence."""
    from app.config import Settings
    from app.main import create_app
    from workflow.persistence import InMemoryPersistenceAdapter

    settings = Settings(ENVIRONMENT="testing", PERSISTENCE_BACKEND="memory", ENV_PASSTHROUGH_PREFIXES="")
    test_app = create_app(settings=settings, registry=registry, persistence=InMemoryPersistenceAdapter())

    yield test_app

    for session_id in test_app.state.debug_sessions.session_ids:
        test_app.state.debug_sessions.stop(session_id)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
