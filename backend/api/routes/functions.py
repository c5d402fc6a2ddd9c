"""Registered operation discovery."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.schemas.run import FunctionListResponse
from app.dependencies import get_registry
from operations.registry import FunctionRegistry

router = APIRouter(prefix="/functions", tags=["Functions"])


@router.get("", response_model=FunctionListResponse)
async def list_functions(
    category: Optional[str] = Query(default=None, description="Only operations in this category"),
    registry: FunctionRegistry = Depends(get_registry),
) -> FunctionListResponse:
    """List metadata of every registered operation."""
    metadata = registry.list_metadata()
    if category:
        metadata = [m for m in metadata if m.category.lower() == category.lower()]
    functions = [m.to_dict() for m in sorted(metadata, key=lambda m: m.id)]
    return FunctionListResponse(functions=functions, total=len(functions))
