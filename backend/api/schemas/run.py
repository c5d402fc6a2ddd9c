"""Workflow run and debug-session schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunWorkflowRequest(BaseModel):
    """Request to compile and run a workflow definition."""

    workflow: Dict[str, Any] = Field(description="Workflow definition document")
    initial_data: Dict[str, Any] = Field(default_factory=dict, alias="initialData", description="Initial store data")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment variables for this run")
    mock_values: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, alias="mockValues", description="Mock overrides by node id"
    )
    memory_limits: Optional[Dict[str, int]] = Field(
        default=None, alias="memoryLimits", description="maxLogs / maxNodeResults / maxDataSize overrides"
    )
    profile: bool = Field(default=False, description="Emit per-node profiling data")

    class Config:
        populate_by_name = True


class DebugRunRequest(RunWorkflowRequest):
    """Request to start a step-debugging run."""

    step_mode: bool = Field(default=True, alias="stepMode", description="Pause before every main-path node")


class DebugControlRequest(BaseModel):
    """Step or stop a debug session."""

    session_id: str = Field(alias="sessionId", description="Debug session ID")

    class Config:
        populate_by_name = True


class DebugControlResponse(BaseModel):
    session_id: str = Field(description="Debug session ID")
    accepted: bool = Field(description="Whether the command changed the session")
    status: str = Field(description="Session status after the command")


class CompilationErrorResponse(BaseModel):
    detail: str
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class FunctionListResponse(BaseModel):
    functions: List[Dict[str, Any]] = Field(description="Registered operation metadata")
    total: int = Field(description="Number of registered operations")
