"""Cluster fan-out.

A cluster root runs its own operation first; when that succeeds every
attached sub-node runs concurrently against the same shared store, bounded
by a :class:`ConcurrencyLimiter`. Sub-node outputs are collected under
``_clusterOutputs[<root id>]``. Routing out of the cluster depends only on the
root's result.
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

import structlog

from operations.base import FunctionResult
from operations.registry import FunctionRegistry
from schema.types import WorkflowEdge, WorkflowNode
from workflow.nodes import NodeExecutor, NodeStrategy
from workflow.store import SharedStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CLUSTER_CONCURRENCY = 10
CLUSTER_OUTPUTS_KEY = "_clusterOutputs"
SUB_NODE_OUTPUTS_KEY = "_subNodeOutputs"


class ConcurrencyLimiter:
    """Caps in-flight coroutines; waiters are admitted in FIFO order.

    A finishing task hands its slot directly to the oldest waiter, so the
    running count never exceeds ``max_concurrency``.
    """

    def __init__(self, max_concurrency: int = DEFAULT_CLUSTER_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.running = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def _acquire(self) -> None:
        if self.running < self.max_concurrency and not self._waiters:
            self.running += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was already handed over; pass it on.
                self._release()
            else:
                self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.running -= 1

    async def run(self, func: Callable[[], Awaitable[T]]) -> T:
        await self._acquire()
        try:
            return await func()
        finally:
            self._release()


class ClusterExecutor(NodeStrategy):
    """Cluster root: own operation, then bounded fan-out over its sub-nodes."""

    kind = "cluster"

    def __init__(
        self,
        config: WorkflowNode,
        registry: FunctionRegistry,
        flow_envs: Optional[Dict[str, str]] = None,
        sub_nodes: Optional[List[WorkflowNode]] = None,
        internal_edges: Optional[List[WorkflowEdge]] = None,
        max_concurrency: int = DEFAULT_CLUSTER_CONCURRENCY,
    ):
        super().__init__(config, registry, flow_envs)
        self.root = NodeExecutor(config, registry, flow_envs)
        self.root.completion_label = "completed (with sub-nodes)"
        self.sub_nodes: List[NodeExecutor] = [
            NodeExecutor(sub, registry, flow_envs, gated=False) for sub in (sub_nodes or [])
        ]
        self.internal_edges = list(internal_edges or [])
        self.max_concurrency = max_concurrency

    @property
    def sub_node_ids(self) -> List[str]:
        return [sub.node_id for sub in self.sub_nodes]

    async def execute(self, prepared: WorkflowNode, store: SharedStore) -> FunctionResult:
        root_result = await self.root.execute(prepared, store)
        if not root_result.success or not self.sub_nodes:
            return root_result

        store.log(
            self.node_id,
            f"Executing {len(self.sub_nodes)} sub-nodes in parallel (max concurrency: {self.max_concurrency})",
        )
        limiter = ConcurrencyLimiter(self.max_concurrency)

        async def run_sub(sub: NodeExecutor) -> None:
            await limiter.run(lambda: sub.run(store))

        # Sub-node results and failures are recorded by each sub-node's finalize.
        await asyncio.gather(*(run_sub(sub) for sub in self.sub_nodes))

        outputs: Dict[str, Any] = {}
        for sub in self.sub_nodes:
            result = store.node_results.get(sub.node_id)
            outputs[sub.node_id] = result.output if result is not None else None

        cluster_outputs = dict(store.data.get(CLUSTER_OUTPUTS_KEY) or {})
        cluster_outputs[self.node_id] = outputs
        store.data[CLUSTER_OUTPUTS_KEY] = cluster_outputs
        store.data[SUB_NODE_OUTPUTS_KEY] = outputs

        failed = [
            sub.node_id for sub in self.sub_nodes
            if not getattr(store.node_results.get(sub.node_id), "success", True)
        ]
        if failed:
            logger.info("Cluster sub-nodes failed", cluster_id=self.node_id, failed=failed)

        return root_result

    async def finalize(self, store: SharedStore, prepared: Any, result: FunctionResult) -> str:
        return await self.root.finalize(store, prepared, result)


def get_cluster_outputs(store: SharedStore, cluster_id: str) -> Optional[Dict[str, Any]]:
    """Sub-node outputs of one cluster, or None if it never fanned out."""
    return (store.data.get(CLUSTER_OUTPUTS_KEY) or {}).get(cluster_id)


def get_all_cluster_outputs(store: SharedStore) -> Dict[str, Dict[str, Any]]:
    return dict(store.data.get(CLUSTER_OUTPUTS_KEY) or {})
