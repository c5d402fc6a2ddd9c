"""
Base types shared by every registered operation.

An operation is an async callable ``(params, context) -> FunctionResult``.
The workflow core only ever sees these types; it never imports a concrete
operation.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class FunctionResult:
    """Standardized result from an operation."""
    output: Any = None
    success: bool = True
    action: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, output: Any = None, action: Optional[str] = None) -> "FunctionResult":
        return cls(output=output, success=True, action=action)

    @classmethod
    def fail(cls, error: str, output: Any = None, action: Optional[str] = None) -> "FunctionResult":
        return cls(output=output, success=False, action=action, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output": self.output,
            "success": self.success,
            "action": self.action,
            "error": self.error,
        }


@dataclass
class ExecutionContext:
    """What an operation can see of the running workflow."""
    node_id: str
    store: Dict[str, Any]
    env: Dict[str, str]
    log: Callable[[str], None]


ExecutableFunction = Callable[[Dict[str, Any], ExecutionContext], Awaitable[FunctionResult]]


@dataclass
class FunctionParameter:
    name: str
    type: str
    required: bool = True
    default: Any = None
    description: str = ""


@dataclass
class FunctionMetadata:
    """Discovery metadata for a registered operation."""
    id: str
    name: str
    description: str = ""
    category: str = "General"
    params: List[FunctionParameter] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    icon: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "params": [
                {
                    "name": p.name,
                    "type": p.type,
                    "required": p.required,
                    "default": p.default,
                    "description": p.description,
                }
                for p in self.params
            ],
            "outputs": list(self.outputs),
            "icon": self.icon,
        }


def param(name: str, type: str, required: bool = True, default: Any = None, description: str = "") -> FunctionParameter:
    """Shorthand for declaring a FunctionParameter."""
    return FunctionParameter(name=name, type=type, required=required, default=default, description=description)
