"""Node executors: the prepare / execute / finalize contract.

Every compiled node carries one :class:`NodeStrategy`. The engine only ever
calls :meth:`NodeStrategy.run`, which drives the three phases:

- prepare:  before-node hook (may suspend), node-started notification,
            snapshot of the node config.
- execute:  mock override or registry call, wrapped in the node's own
            attempt/delay retry loop. Operation faults become failed results.
- finalize: record the result, write the run-log line, record the first
            failure, completion notification, pick the routing action.

Cluster and batch nodes are separate strategies (``workflow.cluster``,
``workflow.batch``) built from the same pieces.
"""

import asyncio
import time
import tracemalloc
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from operations.base import ExecutionContext, FunctionResult
from operations.registry import FunctionRegistry
from schema.types import WorkflowNode
from workflow.debug_session import SessionStoppedError
from workflow.store import NodeProfile, SharedStore

logger = structlog.get_logger(__name__)

ACTION_DEFAULT = "default"
ACTION_ERROR = "error"


def default_action(result: FunctionResult) -> str:
    """Explicit action if present, else ``default`` / ``error``."""
    if result.action:
        return result.action
    return ACTION_DEFAULT if result.success else ACTION_ERROR


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


async def call_operation(
    registry: FunctionRegistry,
    function_id: str,
    params: Dict[str, Any],
    context: ExecutionContext,
) -> FunctionResult:
    """Resolve and invoke one operation; never raises."""
    fn = registry.get_executable(function_id)
    if fn is None:
        return FunctionResult.fail(f'Function "{function_id}" is not registered')
    try:
        result = await fn(params, context)
    except Exception as e:
        logger.warning("Operation raised", function_id=function_id, node_id=context.node_id, error=str(e))
        return FunctionResult.fail(_error_message(e))
    if not isinstance(result, FunctionResult):
        return FunctionResult.fail(
            f'Function "{function_id}" returned {type(result).__name__}, expected FunctionResult'
        )
    return result


def notify_hook(hook, *args) -> None:
    """Fire a notification hook; a failing hook only costs a warning."""
    if hook is None:
        return
    try:
        hook(*args)
    except Exception as e:
        logger.warning("Debug callback failed", hook=getattr(hook, "__name__", repr(hook)), error=str(e))


class NodeStrategy(ABC):
    """Three-phase execution interface shared by every node kind."""

    kind = "node"

    def __init__(
        self,
        config: WorkflowNode,
        registry: FunctionRegistry,
        flow_envs: Optional[Dict[str, str]] = None,
        gated: bool = True,
    ):
        self.config = config
        self.registry = registry
        self.flow_envs = dict(flow_envs or {})
        # Only main-path nodes pass through the before-node hook.
        self.gated = gated

    @property
    def node_id(self) -> str:
        return self.config.id

    def merged_env(self, store: SharedStore) -> Dict[str, str]:
        return {**store.env, **self.flow_envs, **self.config.envs}

    def context_for(self, store: SharedStore, data: Optional[Dict[str, Any]] = None) -> ExecutionContext:
        node_id = self.node_id
        return ExecutionContext(
            node_id=node_id,
            store=store.data if data is None else data,
            env=self.merged_env(store),
            log=lambda message: store.log(node_id, message),
        )

    async def prepare(self, store: SharedStore) -> WorkflowNode:
        callbacks = store.debug_callbacks
        if self.gated and callbacks.on_before_node is not None:
            pending = callbacks.on_before_node(self.node_id)
            if asyncio.iscoroutine(pending) or isinstance(pending, asyncio.Future):
                await pending
        notify_hook(callbacks.on_node_start, self.node_id, dict(self.config.params))
        return self.config

    @abstractmethod
    async def execute(self, prepared: Any, store: SharedStore) -> FunctionResult:
        ...

    @abstractmethod
    async def finalize(self, store: SharedStore, prepared: Any, result: FunctionResult) -> str:
        ...

    async def run(self, store: SharedStore) -> str:
        """Drive prepare -> execute -> finalize and return the routing action."""
        try:
            prepared = await self.prepare(store)
        except SessionStoppedError as e:
            store.cancelled = True
            return await self.finalize(store, None, FunctionResult.fail(e.message))
        except Exception as e:
            logger.warning("Prepare phase failed", node_id=self.node_id, error=str(e))
            return await self.finalize(store, None, FunctionResult.fail(_error_message(e)))

        profiling = self.gated and store.debug_callbacks.on_node_profile is not None
        if profiling:
            wall_start = time.perf_counter()
            cpu_start = time.process_time()
            mem_start = tracemalloc.get_traced_memory()[0] if tracemalloc.is_tracing() else 0

        result = await self.execute(prepared, store)
        action = await self.finalize(store, prepared, result)

        if profiling:
            mem_end = tracemalloc.get_traced_memory()[0] if tracemalloc.is_tracing() else 0
            profile = NodeProfile(
                node_id=self.node_id,
                duration_ms=(time.perf_counter() - wall_start) * 1000,
                cpu_ms=(time.process_time() - cpu_start) * 1000,
                memory_delta_bytes=mem_end - mem_start if mem_start else 0,
                timestamp=time.time() * 1000,
            )
            notify_hook(store.debug_callbacks.on_node_profile, self.node_id, profile)

        return action


class NodeExecutor(NodeStrategy):
    """Regular node: one registry call with per-node retries."""

    kind = "node"
    completion_label = "completed"

    async def execute(self, prepared: WorkflowNode, store: SharedStore) -> FunctionResult:
        mock = store.get_mock(prepared.id)
        if mock is not None:
            if mock.delay and mock.delay > 0:
                await asyncio.sleep(mock.delay / 1000)
            store.log(prepared.id, "[MOCK] Using mocked value")
            return mock.to_result()

        if not self.registry.has(prepared.function_id):
            return FunctionResult.fail(f'Function "{prepared.function_id}" is not registered')

        attempts = max(1, prepared.max_attempts)
        result = FunctionResult.fail("Node did not run")
        for attempt in range(1, attempts + 1):
            result = await call_operation(
                self.registry,
                prepared.function_id,
                dict(prepared.params),
                self.context_for(store),
            )
            if result.success or attempt >= attempts:
                break
            store.log(prepared.id, f"Attempt {attempt}/{attempts} failed: {result.error}; retrying")
            if prepared.retry_delay_ms > 0:
                await asyncio.sleep(prepared.retry_delay_ms / 1000)
        return result

    async def finalize(self, store: SharedStore, prepared: Any, result: FunctionResult) -> str:
        node_id = self.node_id
        store.node_results[node_id] = result

        if result.success:
            store.append_log(f"[✓] {node_id}: {self.completion_label}")
        else:
            store.append_log(f"[✗] {node_id}: {result.error or 'Unknown error'}")
            store.record_failure(node_id, result.error)

        notify_hook(store.debug_callbacks.on_node_complete, node_id, result.success, result.output)
        return default_action(result)


@dataclass
class CompiledNode:
    """A node wired into the executable graph."""
    config: WorkflowNode
    strategy: NodeStrategy
    successors: Dict[str, "CompiledNode"] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def kind(self) -> str:
        return self.strategy.kind

    def on(self, action: str, target: "CompiledNode") -> "CompiledNode":
        """Route ``action`` to ``target``; a later edge for the same action wins."""
        if action in self.successors:
            logger.warning("Overwriting successor", node_id=self.id, action=action)
        self.successors[action] = target
        return target

    def next_for(self, action: Optional[str]) -> Optional["CompiledNode"]:
        if action is None:
            return None
        return self.successors.get(action)

    async def run(self, store: SharedStore) -> str:
        return await self.strategy.run(store)
