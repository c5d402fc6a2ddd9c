"""Workflow compiler.

Turns a :class:`WorkflowDefinition` into a wired graph of
:class:`CompiledNode` objects:

1. validate (structure, semantics, registry); stop on errors
2. merge global and flow-level envs (flow wins)
3. partition nodes into regular / cluster root / sub-node / batch
4. build one strategy per main-graph node; sub-nodes are owned by their cluster
5. wire main-flow edges by action label
6. resolve the start node
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import structlog

from operations.registry import FunctionRegistry
from schema.types import (
    EdgeKind,
    NodeKind,
    ValidationIssue,
    ValidationResult,
    ValidationSeverity,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)
from schema.validator import validate_structure, validate_workflow
from workflow.batch import PARALLEL_BATCH_FUNCTIONS, SEQUENTIAL_BATCH_FUNCTIONS, BatchExecutor
from workflow.cluster import DEFAULT_CLUSTER_CONCURRENCY, ClusterExecutor
from workflow.nodes import CompiledNode, NodeExecutor, NodeStrategy

logger = structlog.get_logger(__name__)


@dataclass
class CompileOptions:
    skip_registry_validation: bool = False
    global_envs: Dict[str, str] = field(default_factory=dict)
    cluster_max_concurrency: int = DEFAULT_CLUSTER_CONCURRENCY
    batch_max_concurrency: Optional[int] = None  # None/0 = unbounded


@dataclass
class CompiledGraph:
    """Executable graph: compiled nodes by id plus the resolved start node."""
    nodes: Dict[str, CompiledNode]
    start_node_id: str
    edge_count: int = 0

    @property
    def start(self) -> CompiledNode:
        return self.nodes[self.start_node_id]

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str) -> Optional[CompiledNode]:
        return self.nodes.get(node_id)


@dataclass
class CompilationResult:
    success: bool
    validation: ValidationResult
    graph: Optional[CompiledGraph] = None
    start_node_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def resolve_node_kind(node: WorkflowNode) -> str:
    """Pick the executor kind for a main-graph node."""
    if node.function_id in SEQUENTIAL_BATCH_FUNCTIONS:
        return "batch"
    if node.function_id in PARALLEL_BATCH_FUNCTIONS or node.node_type == NodeKind.BATCH:
        return "parallel"
    if node.node_type == NodeKind.CLUSTER_ROOT:
        return "cluster"
    return "node"


def _build_strategy(
    node: WorkflowNode,
    registry: FunctionRegistry,
    flow_envs: Dict[str, str],
    options: CompileOptions,
    sub_nodes: List[WorkflowNode],
    internal_edges: List[WorkflowEdge],
) -> NodeStrategy:
    kind = resolve_node_kind(node)
    if kind == "batch":
        return BatchExecutor(node, registry, flow_envs, sequential=True)
    if kind == "parallel":
        return BatchExecutor(node, registry, flow_envs, max_concurrency=options.batch_max_concurrency)
    if kind == "cluster":
        return ClusterExecutor(
            node,
            registry,
            flow_envs,
            sub_nodes=sub_nodes,
            internal_edges=internal_edges,
            max_concurrency=options.cluster_max_concurrency,
        )
    return NodeExecutor(node, registry, flow_envs)


def compile_workflow(
    definition: Union[WorkflowDefinition, Dict[str, Any]],
    registry: FunctionRegistry,
    options: Optional[CompileOptions] = None,
) -> CompilationResult:
    options = options or CompileOptions()

    registered_ids = None if options.skip_registry_validation else registry.ids()
    validation = validate_workflow(definition, registered_ids)
    errors = [str(issue) for issue in validation.errors]
    warnings = [str(issue) for issue in validation.warnings]

    if not validation.valid:
        logger.info("Workflow validation failed", errors=len(errors))
        return CompilationResult(success=False, validation=validation, errors=errors, warnings=warnings)

    workflow, _ = validate_structure(definition)
    flow_envs = {**options.global_envs, **workflow.flow.envs}

    sub_nodes_by_parent: Dict[str, List[WorkflowNode]] = {}
    for node in workflow.nodes:
        if node.node_type == NodeKind.SUB_NODE and node.parent_id:
            sub_nodes_by_parent.setdefault(node.parent_id, []).append(node)

    internal_edges_by_root: Dict[str, List[WorkflowEdge]] = {}
    main_edges: List[WorkflowEdge] = []
    for edge in workflow.edges:
        if edge.edge_type == EdgeKind.SUB_NODE:
            internal_edges_by_root.setdefault(edge.source, []).append(edge)
        else:
            main_edges.append(edge)

    compiled: Dict[str, CompiledNode] = {}
    for node in workflow.nodes:
        if node.node_type == NodeKind.SUB_NODE:
            continue
        strategy = _build_strategy(
            node,
            registry,
            flow_envs,
            options,
            sub_nodes_by_parent.get(node.id, []),
            internal_edges_by_root.get(node.id, []),
        )
        compiled[node.id] = CompiledNode(config=node, strategy=strategy)

    edge_count = 0
    for edge in main_edges:
        source = compiled.get(edge.source)
        target = compiled.get(edge.target)
        if source is None or target is None:
            errors.append(f"Invalid edge: {edge.source} -> {edge.target}")
            continue
        source.on(edge.action, target)
        edge_count += 1

    start_node_id = workflow.flow.start_node_id
    if start_node_id not in compiled:
        errors.append(f'Start node "{start_node_id}" not found')
        return CompilationResult(
            success=False,
            validation=validation,
            start_node_id=start_node_id,
            errors=errors,
            warnings=warnings,
        )

    graph = CompiledGraph(nodes=compiled, start_node_id=start_node_id, edge_count=edge_count)
    logger.debug(
        "Workflow compiled",
        workflow_id=workflow.id,
        nodes=graph.node_count,
        edges=edge_count,
        start_node_id=start_node_id,
    )
    return CompilationResult(
        success=True,
        validation=validation,
        graph=graph,
        start_node_id=start_node_id,
        errors=errors,
        warnings=warnings,
    )


def compile_workflow_from_json(
    text: str,
    registry: FunctionRegistry,
    options: Optional[CompileOptions] = None,
) -> CompilationResult:
    try:
        raw = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        issue = ValidationIssue(path="/", message=f"Invalid JSON: {e}", severity=ValidationSeverity.ERROR)
        return CompilationResult(
            success=False,
            validation=ValidationResult(valid=False, errors=[issue]),
            errors=[str(issue)],
        )
    return compile_workflow(raw, registry, options)
