"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import (
    capabilities,
    credentials,
    queue,
    schedules,
    storage,
    triggers,
    workflows,
)

api_v1_router = APIRouter()

# Workflows (import/export, execute) and their inbound triggers
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)
api_v1_router.include_router(
    triggers.router,
    prefix="/workflows",
    tags=["Triggers"],
)

# Execution queue
api_v1_router.include_router(
    queue.router,
    prefix="/queue",
    tags=["Queue"],
)

# Capability catalog
api_v1_router.include_router(
    capabilities.router,
    prefix="/capabilities",
    tags=["Capabilities"],
)

# Scheduler
api_v1_router.include_router(
    schedules.router,
    prefix="/scheduler",
    tags=["Scheduler"],
)

# Credentials
api_v1_router.include_router(
    credentials.router,
    prefix="/credentials",
    tags=["Credentials"],
)

# Ephemeral storage
api_v1_router.include_router(
    storage.router,
    prefix="/storage",
    tags=["Storage"],
)
