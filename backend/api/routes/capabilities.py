"""Capability catalog endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.container import Runtime
from app.dependencies import get_runtime

router = APIRouter(tags=["capabilities"])


@router.get("")
async def list_capabilities(
    category: Optional[str] = Query(default=None, description="Only this category"),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    """Registered capabilities grouped by category and module, with path aliases."""
    catalog = runtime.registry.catalog()
    if category:
        catalog = {k: v for k, v in catalog.items() if k == category}
    return {
        "count": len(runtime.registry),
        "categories": catalog,
        "aliases": runtime.registry.path_aliases,
    }


@router.get("/resilience")
async def resilience_status(runtime: Runtime = Depends(get_runtime)) -> dict:
    """Circuit breaker and token bucket state per external capability."""
    resilience = runtime.engine.executor.resilience
    if resilience is None:
        return {"circuits": {}, "rate_limits": {}}
    return resilience.status()


@router.get("/usage")
async def capability_usage(
    capability: Optional[str] = Query(default=None, description="Only this capability path"),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    """External calls per capability over the 15 minute, hour, day and 30 day windows."""
    return {"usage": await runtime.usage.summary(capability)}
