"""Scheduler job endpoints.

Lists the named recurring jobs (workflow cron triggers, inbox polls,
maintenance) and lets an operator pause, resume or fire one.
"""

from fastapi import APIRouter, Depends
import logging

from app.container import Runtime
from app.dependencies import get_runtime
from core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["scheduler"])


def _job(runtime: Runtime, name: str) -> dict:
    job = runtime.scheduler.get_job(name)
    if job is None:
        raise NotFoundError(f"Scheduled job '{name}' not found")
    return job.to_dict()


@router.get("/jobs")
async def list_jobs(runtime: Runtime = Depends(get_runtime)) -> dict:
    return {"running": runtime.scheduler.is_running, "jobs": runtime.scheduler.get_jobs()}


@router.post("/jobs/{name:path}/start")
async def start_job(name: str, runtime: Runtime = Depends(get_runtime)) -> dict:
    runtime.scheduler.start_job(name)
    logger.info(f"Scheduled job '{name}' started via API")
    return _job(runtime, name)


@router.post("/jobs/{name:path}/stop")
async def stop_job(name: str, runtime: Runtime = Depends(get_runtime)) -> dict:
    runtime.scheduler.stop_job(name)
    logger.info(f"Scheduled job '{name}' stopped via API")
    return _job(runtime, name)


@router.post("/jobs/{name:path}/run")
async def run_job(name: str, runtime: Runtime = Depends(get_runtime)) -> dict:
    """Run a job once now, outside its schedule."""
    await runtime.scheduler.run_now(name)
    return _job(runtime, name)
