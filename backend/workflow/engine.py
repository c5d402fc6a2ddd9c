"""Workflow Execution Engine: compiled-graph runner.

Takes a compiled graph (see ``workflow.compiler``) and walks it from the
start node against a fresh shared store:

- Main path is strictly sequential: a node's prepare phase starts only after
  the previous node finalized and memory caps were applied.
- Routing is by exact action label; a node whose action has no outgoing
  edge ends the run.
- A run succeeds when no failure was ever recorded in the store.
- Optional step debugging, profiling and snapshot persistence hook in
  through :class:`ExecutionOptions` and the engine constructor.

Usage:
    engine = WorkflowEngine(registry)
    compilation = engine.load(definition)
    if compilation.success:
        result = await engine.execute(ExecutionOptions(initial_data={"x": 1}))
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from operations.registry import FunctionRegistry
from schema.types import WorkflowDefinition
from workflow.cluster import get_all_cluster_outputs, get_cluster_outputs  # noqa: F401  re-exported
from workflow.compiler import (
    CompilationResult,
    CompiledGraph,
    CompileOptions,
    compile_workflow,
    compile_workflow_from_json,
)
from workflow.persistence import (
    ExecutionStatus,
    PersistenceAdapter,
    create_execution_id,
    create_execution_snapshot,
    now_ms,
)
from workflow.store import (
    DebugCallbacks,
    FailureRecord,
    MemoryLimits,
    NodeProfile,
    SharedStore,
    create_shared_store,
    enforce_memory_limits,
)

logger = structlog.get_logger(__name__)

RUNTIME_NODE_ID = "runtime"


# ─── Options & Result ─────────────────────────────────────────

@dataclass
class ExecutionOptions:
    """Per-run inputs and hooks."""
    initial_data: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    mock_values: Dict[str, Any] = field(default_factory=dict)
    memory_limits: Optional[Union[MemoryLimits, Dict[str, Any]]] = None
    on_log: Optional[Callable[[str], None]] = None
    on_before_node: Optional[Callable[[str], Optional[Awaitable[None]]]] = None
    on_node_start: Optional[Callable[[str, Dict[str, Any]], None]] = None
    on_node_complete: Optional[Callable[[str, bool, Any], None]] = None
    on_node_profile: Optional[Callable[[str, NodeProfile], None]] = None
    on_error: Optional[Callable[[str, str], None]] = None
    profile: bool = False
    execution_id: Optional[str] = None
    workflow_id: Optional[str] = None


@dataclass
class ExecutionResult:
    """Outcome of one run. ``duration`` is in milliseconds."""
    success: bool
    store: SharedStore
    logs: List[str]
    duration: float
    error: Optional[FailureRecord] = None
    execution_id: Optional[str] = None
    profiles: List[NodeProfile] = field(default_factory=list)

    @property
    def data(self) -> Dict[str, Any]:
        return self.store.data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "executionId": self.execution_id,
            "data": self.store.data,
            "logs": self.logs,
            "duration": round(self.duration, 3),
            "error": self.error.to_dict() if self.error else None,
            "nodeResults": {
                node_id: result.to_dict() for node_id, result in self.store.node_results.items()
            },
        }


def _failed_result(message: str, logs: Optional[List[str]] = None) -> ExecutionResult:
    store = create_shared_store()
    return ExecutionResult(
        success=False,
        store=store,
        logs=logs if logs is not None else [message],
        duration=0,
        error=FailureRecord(node_id=RUNTIME_NODE_ID, error=message),
    )


# ─── Engine ───────────────────────────────────────────────────

class WorkflowEngine:
    """Compiles a workflow once and executes it any number of times.

    The registry and optional persistence adapter are owned by the caller;
    nothing here is process-global, so engines can run side by side.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        global_envs: Optional[Dict[str, str]] = None,
        persistence: Optional[PersistenceAdapter] = None,
        compile_options: Optional[CompileOptions] = None,
    ):
        self.registry = registry
        self.global_envs = dict(global_envs or {})
        self.persistence = persistence
        self._compile_options = compile_options or CompileOptions()
        self._compilation: Optional[CompilationResult] = None
        self._workflow_id: Optional[str] = None
        self._running: Dict[str, SharedStore] = {}

    @property
    def compilation(self) -> Optional[CompilationResult]:
        return self._compilation

    @property
    def graph(self) -> Optional[CompiledGraph]:
        return self._compilation.graph if self._compilation else None

    @property
    def is_ready(self) -> bool:
        return self.graph is not None

    def _options_for_compile(self) -> CompileOptions:
        base = self._compile_options
        return CompileOptions(
            skip_registry_validation=base.skip_registry_validation,
            global_envs={**base.global_envs, **self.global_envs},
            cluster_max_concurrency=base.cluster_max_concurrency,
            batch_max_concurrency=base.batch_max_concurrency,
        )

    def load(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> CompilationResult:
        """Compile ``definition`` and keep the graph for later runs."""
        self._compilation = compile_workflow(definition, self.registry, self._options_for_compile())
        if isinstance(definition, WorkflowDefinition):
            self._workflow_id = definition.id
        elif isinstance(definition, dict):
            self._workflow_id = definition.get("id")
        return self._compilation

    def load_from_json(self, text: str) -> CompilationResult:
        self._compilation = compile_workflow_from_json(text, self.registry, self._options_for_compile())
        self._workflow_id = None
        return self._compilation

    async def _save_snapshot(
        self,
        execution_id: str,
        workflow_id: str,
        store: SharedStore,
        status: ExecutionStatus,
        current_node_id: Optional[str],
        started_at: int,
    ) -> None:
        if self.persistence is None:
            return
        try:
            snapshot = create_execution_snapshot(
                execution_id,
                workflow_id,
                store,
                status,
                current_node_id=current_node_id,
                started_at=started_at,
            )
            await self.persistence.save_state(snapshot)
        except Exception as e:
            store.append_log(f"[SYSTEM] Warning: failed to persist execution state ({e})")
            logger.warning("Snapshot save failed", execution_id=execution_id, error=str(e))

    async def execute(self, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """Run the loaded graph once."""
        options = options or ExecutionOptions()
        if self.graph is None:
            return _failed_result("No workflow loaded")

        execution_id = options.execution_id or create_execution_id()
        workflow_id = options.workflow_id or self._workflow_id or "unknown"
        with structlog.contextvars.bound_contextvars(execution_id=execution_id, workflow_id=workflow_id):
            return await self._execute(options, execution_id, workflow_id)

    async def _execute(self, options: ExecutionOptions, execution_id: str, workflow_id: str) -> ExecutionResult:
        graph = self.graph

        profiles: List[NodeProfile] = []
        on_node_profile = None
        if options.profile:
            def on_node_profile(node_id: str, profile: NodeProfile) -> None:
                profiles.append(profile)
                if options.on_node_profile:
                    options.on_node_profile(node_id, profile)

        store = create_shared_store(
            initial_data=options.initial_data,
            env={**self.global_envs, **options.env},
            mock_values=options.mock_values,
            debug_callbacks=DebugCallbacks(
                on_before_node=options.on_before_node,
                on_node_start=options.on_node_start,
                on_node_complete=options.on_node_complete,
                on_node_profile=on_node_profile,
            ),
            memory_limits=options.memory_limits,
            log_listener=options.on_log,
        )

        started_at = now_ms()
        start = time.perf_counter()
        runtime_error: Optional[FailureRecord] = None
        current_node_id: Optional[str] = None

        self._running[execution_id] = store
        logger.info("Execution started", execution_id=execution_id, workflow_id=workflow_id)

        try:
            node = graph.start
            while node is not None:
                current_node_id = node.id
                await self._save_snapshot(
                    execution_id, workflow_id, store, ExecutionStatus.RUNNING, node.id, started_at
                )
                # Service-log lines from the node, its sub-nodes and batch items carry the node id
                with structlog.contextvars.bound_contextvars(node_id=node.id):
                    action = await node.run(store)
                enforce_memory_limits(store)
                if store.cancelled:
                    logger.info("Execution cancelled", execution_id=execution_id, node_id=node.id)
                    break
                node = node.next_for(action)
        except Exception as e:
            logger.error("Execution failed", execution_id=execution_id, error=str(e), exc_info=True)
            message = str(e) or type(e).__name__
            store.append_log(f"Runtime error: {message}")
            runtime_error = FailureRecord(node_id=RUNTIME_NODE_ID, error=message)
        finally:
            self._running.pop(execution_id, None)

        error = runtime_error or store.last_error
        success = error is None
        duration = (time.perf_counter() - start) * 1000

        await self._save_snapshot(
            execution_id,
            workflow_id,
            store,
            ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED,
            current_node_id,
            started_at,
        )

        if not success and options.on_error:
            try:
                options.on_error(error.node_id, error.error)
            except Exception as e:
                logger.warning("on_error callback failed", error=str(e))

        logger.info(
            "Execution finished",
            execution_id=execution_id,
            success=success,
            duration_ms=round(duration, 1),
            nodes=len(store.node_results),
        )
        return ExecutionResult(
            success=success,
            store=store,
            logs=list(store.logs),
            duration=duration,
            error=error,
            execution_id=execution_id,
            profiles=profiles,
        )

    def cancel_execution(self, execution_id: str) -> bool:
        """Stop a running execution after its current node.

        Returns:
            True if the execution was found.
        """
        store = self._running.get(execution_id)
        if store is None:
            return False
        store.cancelled = True
        logger.info("Execution marked for cancellation", execution_id=execution_id)
        return True

    def get_running_executions(self) -> Dict[str, Dict[str, Any]]:
        return {
            execution_id: {
                "nodes_completed": sum(1 for r in store.node_results.values() if r.success),
                "nodes_failed": sum(1 for r in store.node_results.values() if not r.success),
            }
            for execution_id, store in self._running.items()
        }


# ─── Convenience ──────────────────────────────────────────────

def _compilation_failure(compilation: CompilationResult) -> ExecutionResult:
    message = compilation.errors[0] if compilation.errors else "Compilation failed"
    result = _failed_result(message, logs=list(compilation.errors))
    result.error = FailureRecord(node_id=RUNTIME_NODE_ID, error=message)
    return result


async def run_workflow(
    definition: Union[WorkflowDefinition, Dict[str, Any]],
    registry: FunctionRegistry,
    options: Optional[ExecutionOptions] = None,
    compile_options: Optional[CompileOptions] = None,
    persistence: Optional[PersistenceAdapter] = None,
) -> ExecutionResult:
    """Compile and execute in one call; compilation errors become a failed result."""
    engine = WorkflowEngine(registry, persistence=persistence, compile_options=compile_options)
    compilation = engine.load(definition)
    if not compilation.success:
        return _compilation_failure(compilation)
    return await engine.execute(options)


async def run_workflow_from_json(
    text: str,
    registry: FunctionRegistry,
    options: Optional[ExecutionOptions] = None,
    compile_options: Optional[CompileOptions] = None,
    persistence: Optional[PersistenceAdapter] = None,
) -> ExecutionResult:
    engine = WorkflowEngine(registry, persistence=persistence, compile_options=compile_options)
    compilation = engine.load_from_json(text)
    if not compilation.success:
        return _compilation_failure(compilation)
    return await engine.execute(options)
