"""Ephemeral storage capabilities.

Bound to the executing workflow through the execution context, so a step
only ever sees its own workflow's tables.
"""

from typing import Any

from capabilities.base import CapabilityDescriptor, InvocationConvention, optional, param


def _storage(context: Any):
    storage = getattr(context, "storage", None)
    if storage is None:
        raise RuntimeError("Ephemeral storage is not available in this execution")
    return storage, context.workflow_id


async def create_table(params: dict, *, context) -> dict:
    storage, workflow_id = _storage(context)
    return await storage.create_table(workflow_id, params["table"], params.get("columns"))


async def insert(params: dict, *, context) -> dict:
    storage, workflow_id = _storage(context)
    inserted = await storage.insert(
        workflow_id,
        params["table"],
        params["data"],
        key=params.get("key"),
        ttl_seconds=params.get("ttlSeconds"),
    )
    return {"inserted": inserted}


async def insert_many(params: dict, *, context) -> dict:
    storage, workflow_id = _storage(context)
    items = list(params["items"])
    inserted = await storage.insert_many(
        workflow_id,
        params["table"],
        items,
        key_field=params.get("keyField"),
        ttl_seconds=params.get("ttlSeconds"),
    )
    return {"inserted": inserted, "skipped": len(items) - inserted}


async def query(params: dict, *, context) -> list:
    storage, workflow_id = _storage(context)
    return await storage.query(
        workflow_id, params["table"], where=params.get("where"), limit=params.get("limit")
    )


async def exists(params: dict, *, context) -> bool:
    storage, workflow_id = _storage(context)
    return await storage.exists(workflow_id, params["table"], params["key"])


async def filter_new(params: dict, *, context) -> list:
    storage, workflow_id = _storage(context)
    return await storage.filter_new(
        workflow_id, params["table"], params["items"], key_field=params.get("keyField")
    )


async def increment(params: dict, *, context) -> float:
    storage, workflow_id = _storage(context)
    return await storage.increment(
        workflow_id,
        params["table"],
        params["key"],
        field=params.get("field") or "count",
        by=params.get("by", 1),
        ttl_seconds=params.get("ttlSeconds"),
    )


async def delete(params: dict, *, context) -> dict:
    storage, workflow_id = _storage(context)
    removed = await storage.delete(
        workflow_id, params["table"], key=params.get("key"), where=params.get("where")
    )
    return {"deleted": removed}


async def drop_table(params: dict, *, context) -> dict:
    storage, workflow_id = _storage(context)
    return {"dropped": await storage.drop_table(workflow_id, params["table"])}


def _storage_capability(function, handler, parameters, description, **extra) -> CapabilityDescriptor:
    return CapabilityDescriptor(
        path=f"data.storage.{function}",
        handler=handler,
        convention=InvocationConvention.PARAMS,
        parameters=[param("table")] + parameters,
        param_aliases={"tableName": "table", **extra.pop("param_aliases", {})},
        needs_context=True,
        description=description,
        **extra,
    )


STORAGE_CAPABILITIES = [
    _storage_capability("createTable", create_table, [optional("columns")],
                        "Create a table for this workflow"),
    _storage_capability("insert", insert,
                        [param("data"), optional("key"), optional("ttlSeconds")],
                        "Insert one row, skipped when the key exists",
                        param_aliases={"record": "data", "ttl": "ttlSeconds"},
                        path_aliases=["data.storage.insertRecord"]),
    _storage_capability("insertMany", insert_many,
                        [param("items"), optional("keyField"), optional("ttlSeconds")],
                        "Insert many rows, skipping known keys",
                        param_aliases={"records": "items", "ttl": "ttlSeconds"}),
    _storage_capability("query", query, [optional("where"), optional("limit")],
                        "Read live rows", path_aliases=["data.storage.queryRecords"]),
    _storage_capability("exists", exists, [param("key")], "Whether a key is stored"),
    _storage_capability("filterNew", filter_new, [param("items"), optional("keyField")],
                        "Items not stored yet",
                        param_aliases={"records": "items"},
                        path_aliases=["data.storage.deduplicate", "data.storage.filterExisting"]),
    _storage_capability("increment", increment,
                        [param("key"), optional("field", "count"), optional("by", 1),
                         optional("ttlSeconds")],
                        "Increment a counter row"),
    _storage_capability("delete", delete, [optional("key"), optional("where")],
                        "Delete rows", path_aliases=["data.storage.deleteRecords"]),
    _storage_capability("dropTable", drop_table, [], "Drop the table and its rows"),
]
