"""Execution queue endpoints."""

from fastapi import APIRouter, Depends

from api.schemas.common import QueueStatsResponse
from app.dependencies import get_queue
from core.exceptions import NotFoundError
from worker.queue import ExecutionQueue

router = APIRouter(tags=["queue"])


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(queue: ExecutionQueue = Depends(get_queue)) -> QueueStatsResponse:
    """Job counts per lifecycle state. ``total`` counts unfinished jobs."""
    stats = await queue.stats()
    return QueueStatsResponse(mode=queue.mode, **stats.to_dict())


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, queue: ExecutionQueue = Depends(get_queue)) -> dict:
    job = await queue.get_job(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return job
