"""Workflow validation.

Three passes, in order:
1. Structure: parse into :class:`WorkflowDefinition`; stops here on failure.
2. Semantics: duplicate ids, dangling references, cluster membership,
   reachability (warning only).
3. Registry: unknown operation ids, only when a set of registered ids is given.
"""

import json
from typing import Any, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from schema.types import (
    NodeKind,
    ValidationIssue,
    ValidationResult,
    ValidationSeverity,
    WorkflowDefinition,
)


def _error(path: str, message: str) -> ValidationIssue:
    return ValidationIssue(path=path, message=message, severity=ValidationSeverity.ERROR)


def _warning(path: str, message: str) -> ValidationIssue:
    return ValidationIssue(path=path, message=message, severity=ValidationSeverity.WARNING)


def _result(issues: Iterable[ValidationIssue]) -> ValidationResult:
    issues = list(issues)
    errors = [i for i in issues if i.severity == ValidationSeverity.ERROR]
    warnings = [i for i in issues if i.severity == ValidationSeverity.WARNING]
    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def validate_structure(raw: Any) -> Tuple[Optional[WorkflowDefinition], List[ValidationIssue]]:
    """Parse a raw document into a definition, collecting pydantic errors."""
    if isinstance(raw, WorkflowDefinition):
        return raw, []
    try:
        return WorkflowDefinition.model_validate(raw), []
    except PydanticValidationError as e:
        issues = [
            _error("/" + "/".join(str(part) for part in err["loc"]), err["msg"])
            for err in e.errors()
        ]
        return None, issues


def validate_semantics(workflow: WorkflowDefinition) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    nodes_by_id = {}

    for node in workflow.nodes:
        if node.id in nodes_by_id:
            issues.append(_error(f"/nodes/{node.id}", f"Duplicate node ID: {node.id}"))
        nodes_by_id[node.id] = node

    if workflow.flow.start_node_id not in nodes_by_id:
        issues.append(
            _error("/flow/startNodeId", f'Start node "{workflow.flow.start_node_id}" does not exist')
        )

    for edge in workflow.edges:
        path = f"/edges/{edge.source}->{edge.target}"
        if edge.source not in nodes_by_id:
            issues.append(_error(path, f'Edge source node "{edge.source}" does not exist'))
        if edge.target not in nodes_by_id:
            issues.append(_error(path, f'Edge target node "{edge.target}" does not exist'))

    for node in workflow.nodes:
        if node.node_type != NodeKind.SUB_NODE:
            continue
        path = f"/nodes/{node.id}/parentId"
        parent = nodes_by_id.get(node.parent_id) if node.parent_id else None
        if parent is None:
            issues.append(_error(path, f'Sub-node "{node.id}" has no existing parent'))
        elif parent.node_type != NodeKind.CLUSTER_ROOT:
            issues.append(_error(path, f'Parent "{parent.id}" of sub-node "{node.id}" is not a cluster root'))

    # Reachability: edges of any kind, plus parent -> sub-node membership.
    reachable = {workflow.flow.start_node_id}
    changed = True
    while changed:
        changed = False
        for edge in workflow.edges:
            if edge.source in reachable and edge.target not in reachable:
                reachable.add(edge.target)
                changed = True
        for node in workflow.nodes:
            if node.parent_id in reachable and node.id not in reachable:
                reachable.add(node.id)
                changed = True

    for node in workflow.nodes:
        if node.id not in reachable:
            issues.append(_warning(f"/nodes/{node.id}", f'Node "{node.id}" is unreachable from start node'))

    return issues


def validate_function_references(workflow: WorkflowDefinition, registered_ids: Set[str]) -> List[ValidationIssue]:
    return [
        _error(f"/nodes/{node.id}/functionId", f'Function "{node.function_id}" is not registered')
        for node in workflow.nodes
        if node.function_id not in registered_ids
    ]


def validate_workflow(raw: Any, registered_ids: Optional[Set[str]] = None) -> ValidationResult:
    """Full validation of a workflow document or definition."""
    workflow, structural = validate_structure(raw)
    if workflow is None:
        return _result(structural)

    issues = validate_semantics(workflow)
    if registered_ids is not None:
        issues.extend(validate_function_references(workflow, registered_ids))
    return _result(issues)


def is_valid_workflow(raw: Any, registered_ids: Optional[Set[str]] = None) -> bool:
    return validate_workflow(raw, registered_ids).valid


def parse_workflow(
    text: str,
    registered_ids: Optional[Set[str]] = None,
) -> Tuple[Optional[WorkflowDefinition], ValidationResult]:
    """Parse and validate a JSON workflow document."""
    try:
        raw = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        return None, _result([_error("/", f"Invalid JSON: {e}")])

    validation = validate_workflow(raw, registered_ids)
    if not validation.valid:
        return None, validation
    workflow, _ = validate_structure(raw)
    return workflow, validation
