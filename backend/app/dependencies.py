"""FastAPI dependency injection functions.

Collaborators are created once by ``app.main.create_app`` and kept on
``app.state``; routes reach them only through these accessors.
"""

from typing import Optional

from fastapi import Request

from app.config import Settings
from operations.registry import FunctionRegistry
from workflow.debug_session import DebugSessionManager
from workflow.persistence import PersistenceAdapter


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> FunctionRegistry:
    """The function registry used to compile and run workflows."""
    return request.app.state.registry


def get_debug_sessions(request: Request) -> DebugSessionManager:
    return request.app.state.debug_sessions


def get_persistence(request: Request) -> Optional[PersistenceAdapter]:
    return request.app.state.persistence


def get_background_runs(request: Request) -> set:
    """Strong references to detached run tasks (streams keep running after disconnect)."""
    return request.app.state.background_runs
