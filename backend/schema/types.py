"""Workflow definition schemas.

The JSON wire format uses camelCase keys (``functionId``, ``startNodeId``);
fields are snake_case in Python and accept either spelling on input.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class NodeKind(str, Enum):
    """How the compiler treats a node."""
    DEFAULT = "default"
    CLUSTER_ROOT = "clusterRoot"
    SUB_NODE = "subNode"
    BATCH = "batch"


class EdgeKind(str, Enum):
    DEFAULT = "default"
    SUB_NODE = "subnode"


class _CamelModel(BaseModel):
    class Config:
        populate_by_name = True


class NodeRuntime(_CamelModel):
    """Per-node retry settings."""

    max_retries: int = Field(default=1, ge=1, alias="maxRetries", description="Maximum attempts (1 = no retry)")
    retry_delay: float = Field(default=0, ge=0, alias="retryDelay", description="Delay between attempts in ms")


class NodePosition(BaseModel):
    x: float = 0
    y: float = 0


class WorkflowNode(_CamelModel):
    """A single operation node."""

    id: str = Field(min_length=1)
    function_id: str = Field(min_length=1, alias="functionId")
    params: Dict[str, Any] = Field(default_factory=dict)
    runtime: Optional[NodeRuntime] = None
    envs: Dict[str, str] = Field(default_factory=dict)
    node_type: NodeKind = Field(default=NodeKind.DEFAULT, alias="nodeType")
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    label: Optional[str] = None
    position: Optional[NodePosition] = None

    @property
    def max_attempts(self) -> int:
        return self.runtime.max_retries if self.runtime else 1

    @property
    def retry_delay_ms(self) -> float:
        return self.runtime.retry_delay if self.runtime else 0


class WorkflowEdge(_CamelModel):
    """Action-labelled connection between two nodes."""

    source: str = Field(min_length=1, alias="from")
    target: str = Field(min_length=1, alias="to")
    action: str = Field(default="default", min_length=1)
    edge_type: EdgeKind = Field(default=EdgeKind.DEFAULT, alias="edgeType")


class FlowConfig(_CamelModel):
    start_node_id: str = Field(min_length=1, alias="startNodeId")
    envs: Dict[str, str] = Field(default_factory=dict)


class WorkflowDefinition(_CamelModel):
    """Complete workflow document; immutable input to compilation."""

    id: str = Field(min_length=1)
    name: str = ""
    description: Optional[str] = None
    version: str = "1.0.0"
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    flow: FlowConfig
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        frozen = True


class ValidationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    path: str
    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class ValidationResult(BaseModel):
    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
