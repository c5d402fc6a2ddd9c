"""
Function Registry: maps operation ids to executable callables.

Each compiler/engine receives its own registry instance; nothing in the
workflow core reaches for a process-wide one.
"""

import inspect
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from operations.base import (
    ExecutableFunction,
    ExecutionContext,
    FunctionMetadata,
    FunctionResult,
)

logger = structlog.get_logger(__name__)


class RegisteredFunction:
    """A metadata/executable pair."""

    def __init__(self, metadata: FunctionMetadata, execute: ExecutableFunction):
        self.metadata = metadata
        self.execute = execute


class FunctionRegistry:
    """Central registry for operation implementations."""

    def __init__(self):
        self._functions: Dict[str, RegisteredFunction] = {}

    def register(self, metadata: FunctionMetadata, execute: Callable) -> None:
        """Register an operation, replacing any previous one with the same id."""
        if metadata.id in self._functions:
            logger.warning("Function is being overwritten", function_id=metadata.id)
        self._functions[metadata.id] = RegisteredFunction(metadata, _as_async(execute))

    def function(self, id: str, name: Optional[str] = None, **meta: Any) -> Callable:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Callable) -> Callable:
            self.register(FunctionMetadata(id=id, name=name or id, **meta), fn)
            return fn

        return decorator

    def unregister(self, function_id: str) -> bool:
        return self._functions.pop(function_id, None) is not None

    def get(self, function_id: str) -> Optional[RegisteredFunction]:
        return self._functions.get(function_id)

    def has(self, function_id: str) -> bool:
        return function_id in self._functions

    def ids(self) -> Set[str]:
        return set(self._functions.keys())

    def get_executable(self, function_id: str) -> Optional[ExecutableFunction]:
        """Resolve an id to its callable; None when not registered."""
        registered = self._functions.get(function_id)
        return registered.execute if registered else None

    def list_metadata(self) -> List[FunctionMetadata]:
        return [fn.metadata for fn in self._functions.values()]

    def metadata_by_category(self) -> Dict[str, List[FunctionMetadata]]:
        grouped: Dict[str, List[FunctionMetadata]] = {}
        for fn in self._functions.values():
            grouped.setdefault(fn.metadata.category, []).append(fn.metadata)
        return grouped

    def clear(self) -> None:
        self._functions.clear()

    def __len__(self) -> int:
        return len(self._functions)

    def __contains__(self, function_id: str) -> bool:
        return function_id in self._functions


def _as_async(fn: Callable) -> ExecutableFunction:
    """Wrap plain callables so the executor can always await the result."""
    if inspect.iscoroutinefunction(fn):
        return fn

    async def wrapper(params: Dict[str, Any], context: ExecutionContext) -> FunctionResult:
        result = fn(params, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    wrapper.__name__ = getattr(fn, "__name__", "operation")
    return wrapper


def create_default_registry() -> FunctionRegistry:
    """Return a fresh registry with the builtin core operations."""
    from operations.builtins import register_builtins

    registry = FunctionRegistry()
    register_builtins(registry)
    return registry
