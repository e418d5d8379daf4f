"""Ephemeral storage inspection endpoints (per workflow)."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from app.container import Runtime
from app.dependencies import get_runtime
from core.exceptions import NotFoundError

router = APIRouter(tags=["storage"])


@router.get("/{workflow_id}/tables")
async def list_tables(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> dict:
    return {"tables": await runtime.storage.list_tables(workflow_id)}


@router.get("/{workflow_id}/tables/{table}")
async def query_table(
    workflow_id: str,
    table: str,
    limit: Optional[int] = Query(default=100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    """Live (unexpired) rows in insertion order."""
    rows = await runtime.storage.query(workflow_id, table, limit=limit)
    return {"table": table, "rows": rows, "count": len(rows)}


@router.delete("/{workflow_id}/tables/{table}", status_code=status.HTTP_204_NO_CONTENT)
async def drop_table(workflow_id: str, table: str, runtime: Runtime = Depends(get_runtime)) -> None:
    if not await runtime.storage.drop_table(workflow_id, table):
        raise NotFoundError(f"Table '{table}' not found")
