"""Workflow run endpoints.

- POST /run-workflow         SSE stream of node_start / node_complete / log / error / done
- POST /run-workflow-simple  JSON result once the run has finished
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from api.schemas.run import RunWorkflowRequest
from api.streaming import EventChannel, drain, sse_response
from app.config import Settings
from app.dependencies import get_app_settings, get_background_runs, get_persistence, get_registry
from operations.registry import FunctionRegistry
from workflow.compiler import CompileOptions
from workflow.engine import ExecutionOptions, WorkflowEngine
from workflow.persistence import PersistenceAdapter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Runs"])


def build_engine(
    body: RunWorkflowRequest,
    registry: FunctionRegistry,
    settings: Settings,
    persistence: PersistenceAdapter = None,
) -> WorkflowEngine:
    """Compile the request's workflow, raising 422 on compilation errors."""
    engine = WorkflowEngine(
        registry,
        global_envs=settings.passthrough_env(),
        persistence=persistence,
        compile_options=CompileOptions(
            cluster_max_concurrency=settings.CLUSTER_MAX_CONCURRENCY,
            batch_max_concurrency=settings.BATCH_MAX_CONCURRENCY or None,
        ),
    )
    compilation = engine.load(body.workflow)
    if not compilation.success:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": "Workflow compilation failed",
                "errors": compilation.errors,
                "warnings": compilation.warnings,
            },
        )
    return engine


def build_options(body: RunWorkflowRequest, settings: Settings) -> ExecutionOptions:
    return ExecutionOptions(
        initial_data=dict(body.initial_data),
        env=dict(body.env),
        mock_values=dict(body.mock_values),
        memory_limits=body.memory_limits or settings.memory_limits,
        profile=body.profile,
        workflow_id=body.workflow.get("id"),
    )


def spawn(background_runs: set, coro) -> asyncio.Task:
    """Start a run that outlives the request if the client goes away."""
    task = asyncio.create_task(coro)
    background_runs.add(task)
    task.add_done_callback(background_runs.discard)
    return task


@router.post("/run-workflow")
async def run_workflow_stream(
    body: RunWorkflowRequest,
    registry: FunctionRegistry = Depends(get_registry),
    settings: Settings = Depends(get_app_settings),
    persistence: PersistenceAdapter = Depends(get_persistence),
    background_runs: set = Depends(get_background_runs),
):
    """Run a workflow and stream its progress as server-sent events."""
    engine = build_engine(body, registry, settings, persistence)
    channel = EventChannel()
    options = channel.attach(build_options(body, settings))

    async def run() -> None:
        result = await engine.execute(options)
        channel.put("done", result=result.to_dict())

    spawn(background_runs, run())
    return sse_response(drain(channel))


@router.post("/run-workflow-simple")
async def run_workflow_simple(
    body: RunWorkflowRequest,
    registry: FunctionRegistry = Depends(get_registry),
    settings: Settings = Depends(get_app_settings),
    persistence: PersistenceAdapter = Depends(get_persistence),
) -> Dict[str, Any]:
    """Run a workflow to completion and return the result as JSON."""
    engine = build_engine(body, registry, settings, persistence)
    result = await engine.execute(build_options(body, settings))
    logger.info(f"Workflow {body.workflow.get('id')} finished: success={result.success}")
    return result.to_dict()
