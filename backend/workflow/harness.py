"""Workflow test harness.

Runs a workflow with optional mocks and checks its outcome against
expectations, returning a report instead of raising:

    report = await test_workflow(
        definition,
        registry,
        expected_data={"greeting": "hi"},
        mock_values=create_mocks({"fetch": {"items": []}}),
    )
    assert report.passed, report.failures
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from operations.registry import FunctionRegistry
from schema.types import WorkflowDefinition
from workflow.engine import ExecutionOptions, run_workflow
from workflow.store import MockValue

# Not a pytest test despite the name.
__test__ = False


@dataclass
class HarnessReport:
    passed: bool
    duration: float  # ms
    logs: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    success: bool = False
    error: Optional[str] = None
    failures: List[str] = field(default_factory=list)


def create_mocks(outputs: Dict[str, Any], success: bool = True) -> Dict[str, MockValue]:
    """Build enabled mocks returning the given output per node id."""
    return {node_id: MockValue(enabled=True, output=output, success=success) for node_id, output in outputs.items()}


def _compare_data(expected: Dict[str, Any], actual: Dict[str, Any]) -> List[str]:
    failures = []
    for key, value in expected.items():
        if key not in actual:
            failures.append(f'Missing key "{key}" in store')
        elif actual[key] != value:
            failures.append(f'Key "{key}": expected {value!r}, got {actual[key]!r}')
    return failures


async def test_workflow(
    definition: Union[WorkflowDefinition, Dict[str, Any]],
    registry: FunctionRegistry,
    expected_data: Optional[Dict[str, Any]] = None,
    expected_success: Optional[bool] = None,
    expected_error: Optional[str] = None,
    timeout: float = 30.0,
    **options: Any,
) -> HarnessReport:
    """Run ``definition`` and compare the outcome with the expectations.

    ``options`` are :class:`ExecutionOptions` fields. ``timeout`` is in
    seconds; a run that exceeds it is reported as failed.
    """
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(
            run_workflow(definition, registry, ExecutionOptions(**options)),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        message = f"Workflow timed out after {timeout}s"
        return HarnessReport(
            passed=False,
            duration=(time.perf_counter() - start) * 1000,
            error=message,
            failures=[message],
        )

    failures: List[str] = []
    if expected_success is not None and result.success != expected_success:
        failures.append(f"Expected success={expected_success}, got {result.success}")

    error_message = result.error.error if result.error else None
    if expected_error is not None:
        if error_message is None:
            failures.append(f'Expected error containing "{expected_error}", but run had no error')
        elif expected_error not in error_message:
            failures.append(f'Expected error containing "{expected_error}", got "{error_message}"')

    if expected_data:
        failures.extend(_compare_data(expected_data, result.data))

    return HarnessReport(
        passed=not failures,
        duration=(time.perf_counter() - start) * 1000,
        logs=result.logs,
        data=result.data,
        success=result.success,
        error=error_message,
        failures=failures,
    )
