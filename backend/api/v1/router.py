"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import debug, functions, health, runs

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Workflow runs (SSE + simple JSON)
api_v1_router.include_router(
    runs.router,
    tags=["Runs"],
)

# Step debugging
api_v1_router.include_router(
    debug.router,
    tags=["Debug"],
)

# Operation discovery
api_v1_router.include_router(
    functions.router,
    tags=["Functions"],
)
