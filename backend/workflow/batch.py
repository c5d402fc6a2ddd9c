"""Batch nodes: map a processor operation over an array.

``control.batch`` runs items one at a time; ``control.parallel`` and
``control.batchForEach`` (and any node of kind ``batch``) run them
concurrently, optionally capped. Every item works on its own deep copy of
the store data taken at fan-out time; only the ordered list of outputs is
written back, under ``outputKey``.
"""

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog

from operations.base import FunctionResult
from operations.registry import FunctionRegistry
from schema.types import WorkflowNode
from workflow.cluster import ConcurrencyLimiter
from workflow.nodes import NodeStrategy, notify_hook, call_operation, default_action
from workflow.store import SharedStore

logger = structlog.get_logger(__name__)

SEQUENTIAL_BATCH_FUNCTIONS = {"control.batch"}
PARALLEL_BATCH_FUNCTIONS = {"control.parallel", "control.batchForEach"}


def _isolated_copy(data: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
    """Deep copy of ``data``, or a shallow one plus the reason the deep copy failed."""
    try:
        return copy.deepcopy(data), None
    except (TypeError, copy.Error, RecursionError) as e:
        return dict(data), str(e)


@dataclass
class BatchRun:
    """Per-run state of one batch node."""
    config: WorkflowNode
    fanned_out: bool = False
    total: int = 0
    succeeded: int = 0
    first_failure: Optional[str] = None


class BatchExecutor(NodeStrategy):
    """Batch node strategy.

    Sequential nodes always run one item at a time. For parallel nodes
    ``max_concurrency`` caps the items in flight; None or 0 means unbounded.
    """

    kind = "batch"

    def __init__(
        self,
        config: WorkflowNode,
        registry: FunctionRegistry,
        flow_envs: Optional[Dict[str, str]] = None,
        sequential: bool = False,
        max_concurrency: Optional[int] = None,
    ):
        super().__init__(config, registry, flow_envs)
        self.sequential = sequential
        self.max_concurrency = 1 if sequential else (max_concurrency or None)

    @property
    def output_key(self) -> str:
        default = "batchResults" if self.sequential else "parallelResults"
        return self.config.params.get("outputKey") or default

    async def prepare(self, store: SharedStore) -> BatchRun:
        config = await super().prepare(store)
        return BatchRun(config=config)

    async def _run_item(
        self, store: SharedStore, snapshot: Dict[str, Any], index: int, item: Any
    ) -> FunctionResult:
        params = self.config.params
        item_params = {
            **(params.get("processorParams") or {}),
            "currentItem": item,
            "currentIndex": index,
        }
        data, _ = _isolated_copy(snapshot)
        context = self.context_for(store, data=data)

        attempts = max(1, self.config.max_attempts)
        result = FunctionResult.fail("Item did not run")
        for attempt in range(1, attempts + 1):
            result = await call_operation(self.registry, params["processorFunction"], item_params, context)
            if result.success or attempt >= attempts:
                break
            if self.config.retry_delay_ms > 0:
                await asyncio.sleep(self.config.retry_delay_ms / 1000)
        return result

    async def execute(self, prepared: BatchRun, store: SharedStore) -> FunctionResult:
        config = prepared.config
        mock = store.get_mock(config.id)
        if mock is not None:
            if mock.delay and mock.delay > 0:
                await asyncio.sleep(mock.delay / 1000)
            store.log(config.id, "[MOCK] Using mocked value")
            return mock.to_result()

        array = config.params.get("array")
        if not isinstance(array, list):
            return FunctionResult.fail(f"Expected array, got {type(array).__name__}")

        processor_id = config.params.get("processorFunction")
        if not processor_id or not self.registry.has(processor_id):
            return FunctionResult.fail(f'Function "{processor_id}" is not registered')

        mode = "sequentially" if self.sequential else "in parallel"
        store.log(config.id, f"Processing {len(array)} items {mode}")

        snapshot, copy_error = _isolated_copy(store.data)
        if copy_error is not None:
            logger.warning("Deep copy of store data failed", node_id=config.id, error=copy_error)
            store.append_log(
                f"[SYSTEM] Warning: {config.id}: items share nested store data, deep copy failed ({copy_error})"
            )
        results: List[Optional[FunctionResult]] = [None] * len(array)
        prepared.fanned_out = True
        prepared.total = len(array)

        async def process(index: int, item: Any) -> None:
            result = await self._run_item(store, snapshot, index, item)
            results[index] = result
            if result.success:
                prepared.succeeded += 1
                return
            store.log(config.id, f"Item {index} failed: {result.error}")
            if prepared.first_failure is None:
                prepared.first_failure = f"Item {index}: {result.error or 'Unknown error'}"

        if self.max_concurrency is None:
            await asyncio.gather(*(process(i, item) for i, item in enumerate(array)))
        else:
            limiter = ConcurrencyLimiter(self.max_concurrency)
            await asyncio.gather(
                *(limiter.run(lambda i=i, item=item: process(i, item)) for i, item in enumerate(array))
            )

        outputs = [r.output if r is not None else None for r in results]
        if prepared.first_failure is not None:
            return FunctionResult(output=outputs, success=False, error=prepared.first_failure)
        return FunctionResult.ok(outputs)

    async def finalize(self, store: SharedStore, prepared: Optional[BatchRun], result: FunctionResult) -> str:
        node_id = self.node_id
        store.node_results[node_id] = result

        if prepared is not None and prepared.fanned_out:
            store.data[self.output_key] = result.output
            mark = "✓" if result.success else "✗"
            store.append_log(f"[{mark}] {node_id}: Processed {prepared.succeeded}/{prepared.total} items")
        elif result.success:
            store.append_log(f"[✓] {node_id}: completed")
        else:
            store.append_log(f"[✗] {node_id}: {result.error or 'Unknown error'}")

        if not result.success:
            store.record_failure(node_id, result.error)

        notify_hook(store.debug_callbacks.on_node_complete, node_id, result.success, result.output)
        return default_action(result)
