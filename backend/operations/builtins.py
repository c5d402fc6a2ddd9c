"""Core operations every installation ships with.

Only the handful needed to wire and exercise a workflow end to end; domain
catalogues (database, LLM, HTTP, ...) register themselves on top.
"""

import asyncio
from typing import Any, Dict

from operations.base import ExecutionContext, FunctionMetadata, FunctionResult, param
from operations.registry import FunctionRegistry

MAX_DELAY_MS = 300_000


async def start(params: Dict[str, Any], context: ExecutionContext) -> FunctionResult:
    context.log("Workflow started")
    return FunctionResult.ok({"started": True})


async def end(params: Dict[str, Any], context: ExecutionContext) -> FunctionResult:
    context.log("Workflow finished")
    return FunctionResult.ok({"finished": True})


async def pass_through(params: Dict[str, Any], context: ExecutionContext) -> FunctionResult:
    return FunctionResult.ok(params.get("value"))


async def set_value(params: Dict[str, Any], context: ExecutionContext) -> FunctionResult:
    """Write ``value`` under ``key`` in the shared store."""
    key = params.get("key")
    if not key:
        return FunctionResult.fail("Missing required param: key")
    context.store[key] = params.get("value")
    context.log(f"Set {key}")
    return FunctionResult.ok(params.get("value"))


async def log_message(params: Dict[str, Any], context: ExecutionContext) -> FunctionResult:
    message = str(params.get("message", ""))
    context.log(message)
    return FunctionResult.ok({"message": message})


async def delay(params: Dict[str, Any], context: ExecutionContext) -> FunctionResult:
    ms = min(float(params.get("ms", 0) or 0), MAX_DELAY_MS)
    await asyncio.sleep(ms / 1000)
    return FunctionResult.ok({"waited_ms": ms})


def register_builtins(registry: FunctionRegistry) -> None:
    registry.register(
        FunctionMetadata(id="core.start", name="Start", description="Entry point of a workflow", category="Core"),
        start,
    )
    registry.register(
        FunctionMetadata(id="core.end", name="End", description="Terminal node of a workflow", category="Core"),
        end,
    )
    registry.register(
        FunctionMetadata(
            id="core.passThrough",
            name="Pass Through",
            description="Returns its value param unchanged",
            category="Core",
            params=[param("value", "object", required=False)],
        ),
        pass_through,
    )
    registry.register(
        FunctionMetadata(
            id="core.setValue",
            name="Set Value",
            description="Stores a value in the shared store",
            category="Core",
            params=[param("key", "string"), param("value", "object", required=False)],
            outputs=["key"],
        ),
        set_value,
    )
    registry.register(
        FunctionMetadata(
            id="core.log",
            name="Log",
            description="Appends a message to the run log",
            category="Core",
            params=[param("message", "string")],
        ),
        log_message,
    )
    registry.register(
        FunctionMetadata(
            id="core.delay",
            name="Delay",
            description="Waits for a number of milliseconds",
            category="Core",
            params=[param("ms", "number", required=False, default=0)],
        ),
        delay,
    )
    _register_batch_operations(registry)


def _make_batch_operation(registry: FunctionRegistry, parallel: bool, default_key: str):
    """Batch operation for direct calls.

    Workflow nodes using these ids are compiled into batch executors with
    per-item store isolation; this body only runs when the operation is
    invoked directly, e.g. as a cluster sub-node or another batch's processor.
    """

    async def run_batch(params: Dict[str, Any], context: ExecutionContext) -> FunctionResult:
        array = params.get("array")
        if not isinstance(array, list):
            return FunctionResult.fail(f"Expected array, got {type(array).__name__}")
        processor_id = params.get("processorFunction")
        processor = registry.get_executable(processor_id) if processor_id else None
        if processor is None:
            return FunctionResult.fail(f'Function "{processor_id}" is not registered')

        base = params.get("processorParams") or {}

        async def call(index: int, item: Any) -> FunctionResult:
            try:
                return await processor({**base, "currentItem": item, "currentIndex": index}, context)
            except Exception as e:
                return FunctionResult.fail(str(e))

        if parallel:
            results = await asyncio.gather(*(call(i, item) for i, item in enumerate(array)))
        else:
            results = [await call(i, item) for i, item in enumerate(array)]

        outputs = [r.output for r in results]
        context.store[params.get("outputKey") or default_key] = outputs
        succeeded = sum(1 for r in results if r.success)
        context.log(f"Processed {succeeded}/{len(array)} items")
        if succeeded < len(array):
            return FunctionResult(output=outputs, success=False, error=f"{len(array) - succeeded} item(s) failed")
        return FunctionResult.ok(outputs)

    return run_batch


def _register_batch_operations(registry: FunctionRegistry) -> None:
    batch_params = [
        param("array", "object", description="Items to process"),
        param("processorFunction", "string", description="Operation id called for each item"),
        param("processorParams", "object", required=False, description="Extra params merged with currentItem"),
    ]
    specs = [
        ("control.batch", "Batch (Sequential)", False, "batchResults"),
        ("control.parallel", "Parallel", True, "parallelResults"),
        ("control.batchForEach", "Batch For Each", True, "parallelResults"),
    ]
    for function_id, name, parallel, default_key in specs:
        registry.register(
            FunctionMetadata(
                id=function_id,
                name=name,
                description=f"Runs processorFunction over array ({'in parallel' if parallel else 'in order'})",
                category="Control",
                params=batch_params + [param("outputKey", "string", required=False, default=default_key)],
                outputs=["outputKey"],
            ),
            _make_batch_operation(registry, parallel, default_key),
        )
