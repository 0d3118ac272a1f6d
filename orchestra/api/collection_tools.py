"""Collection tools: let agents read and write content collections.

The content layer itself lives outside this service; tools reach it through
the DataBackend protocol.  InMemoryDataBackend serves development and tests.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from typing import Any, Protocol

from orchestra.api.tools import ToolContext, ToolFunc, check_arguments, tool_error, tool_result

logger = logging.getLogger(__name__)

_ITEM_ID = {"type": ["string", "integer"]}


class DataBackend(Protocol):
    async def list_collections(self) -> list[dict[str, Any]]: ...

    async def get_collection(self, name: str) -> dict[str, Any] | None: ...

    async def get_item(self, collection: str, item_id: int) -> dict[str, Any] | None: ...

    async def create_item(self, collection: str, data: dict[str, Any]) -> dict[str, Any]: ...

    async def update_item(self, collection: str, item_id: int, data: dict[str, Any]) -> dict[str, Any]: ...

    async def list_items(self, collection: str, page: int, page_size: int) -> tuple[list[dict[str, Any]], int]: ...

    async def delete_item(self, item_id: int, collection: str | None = None) -> bool: ...


class InMemoryDataBackend:
    """Process-local collections keyed by name, items keyed by integer id."""

    def __init__(self, collections: dict[str, dict[str, Any]] | None = None) -> None:
        self._collections: dict[str, dict[str, Any]] = {}
        self._items: dict[str, dict[int, dict[str, Any]]] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()
        for name, schema in (collections or {}).items():
            self.add_collection(name, schema)

    def add_collection(self, name: str, schema: dict[str, Any] | None = None) -> None:
        self._collections[name] = {"name": name, "attributes": dict(schema or {})}
        self._items.setdefault(name, {})

    async def list_collections(self) -> list[dict[str, Any]]:
        return [dict(c) for c in self._collections.values()]

    async def get_collection(self, name: str) -> dict[str, Any] | None:
        c = self._collections.get(name)
        return dict(c) if c else None

    async def get_item(self, collection: str, item_id: int) -> dict[str, Any] | None:
        item = self._items.get(collection, {}).get(item_id)
        return dict(item) if item else None

    async def create_item(self, collection: str, data: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            item = {"id": self._next_id, "collection": collection, "data": dict(data)}
            self._items.setdefault(collection, {})[self._next_id] = item
            self._next_id += 1
        return dict(item)

    async def update_item(self, collection: str, item_id: int, data: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            item = self._items.get(collection, {}).get(item_id)
            if item is None:
                raise KeyError(item_id)
            item["data"].update(data)
        return dict(item)

    async def list_items(self, collection: str, page: int, page_size: int) -> tuple[list[dict[str, Any]], int]:
        items = sorted(self._items.get(collection, {}).values(), key=lambda i: i["id"])
        start = (page - 1) * page_size
        return [dict(i) for i in items[start : start + page_size]], len(items)

    async def delete_item(self, item_id: int, collection: str | None = None) -> bool:
        async with self._lock:
            names = [collection] if collection else list(self._items)
            for name in names:
                if self._items.get(name, {}).pop(item_id, None) is not None:
                    return True
        return False


# ---------------------------------------------------------------------------
# Argument schemas
# ---------------------------------------------------------------------------

_GET_SCHEMA = {
    "type": "object",
    "properties": {"collection_name": {"type": "string", "minLength": 1}},
    "required": ["collection_name"],
}

_UPSERT_SCHEMA = {
    "type": "object",
    "properties": {
        "collection_name": {"type": "string", "minLength": 1},
        "item_id": _ITEM_ID,
        "data": {"type": "object"},
    },
    "required": ["collection_name", "data"],
}

_LIST_ITEMS_SCHEMA = {
    "type": "object",
    "properties": {
        "collection_name": {"type": "string", "minLength": 1},
        "page": {"type": "number"},
        "pageSize": {"type": "number"},
    },
    "required": ["collection_name"],
}

_DELETE_SCHEMA = {
    "type": "object",
    "properties": {
        "item_id": _ITEM_ID,
        "collection_name": {"type": "string"},
    },
    "required": ["item_id"],
}


def _parse_item_id(raw: Any) -> int | None:
    """Item ids arrive as strings or numbers; 0 and blanks mean 'none'."""
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _backend(ctx: ToolContext) -> DataBackend:
    if ctx.backend is None:
        raise RuntimeError("no data backend configured for collection tools")
    return ctx.backend


def _in_band(func: ToolFunc) -> ToolFunc:
    """Report backend failures to the model instead of aborting the run."""

    @functools.wraps(func)
    async def wrapper(ctx: ToolContext, arguments: dict[str, Any]) -> str:
        try:
            return await func(ctx, arguments)
        except Exception as e:
            logger.warning("Collection tool %s failed for agent %s: %s", func.__name__, ctx.agent_id, e)
            return tool_error(f"collection backend error: {e}")

    return wrapper


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


@_in_band
async def list_collections(ctx: ToolContext, arguments: dict[str, Any]) -> str:
    collections = await _backend(ctx).list_collections()
    return tool_result({"status": "success", "collections": [c["name"] for c in collections]})


@_in_band
async def get_collection_schema(ctx: ToolContext, arguments: dict[str, Any]) -> str:
    if err := check_arguments(arguments, _GET_SCHEMA):
        return tool_error(err)
    name = arguments["collection_name"]
    collection = await _backend(ctx).get_collection(name)
    if collection is None:
        return tool_error(f"collection '{name}' not found")
    return tool_result({"status": "success", **collection})


@_in_band
async def upsert_item(ctx: ToolContext, arguments: dict[str, Any]) -> str:
    """Create an item, or update it when ``item_id`` names an existing one."""
    if err := check_arguments(arguments, _UPSERT_SCHEMA):
        return tool_error(err)
    backend = _backend(ctx)
    name = arguments["collection_name"]
    if await backend.get_collection(name) is None:
        return tool_error(f"collection '{name}' not found")

    item_id = _parse_item_id(arguments.get("item_id"))
    if item_id is None:
        item = await backend.create_item(name, arguments["data"])
        logger.info("Agent %s created item %s in %s", ctx.agent_id, item["id"], name)
        return tool_result({"status": "success", "item_id": item["id"], "action": "created"})

    if await backend.get_item(name, item_id) is None:
        return tool_error(f"item with ID {item_id} not found in collection '{name}' for update")
    await backend.update_item(name, item_id, arguments["data"])
    logger.info("Agent %s updated item %s in %s", ctx.agent_id, item_id, name)
    return tool_result({"status": "success", "item_id": item_id, "action": "updated"})


@_in_band
async def list_items(ctx: ToolContext, arguments: dict[str, Any]) -> str:
    if err := check_arguments(arguments, _LIST_ITEMS_SCHEMA):
        return tool_error(err)
    backend = _backend(ctx)
    name = arguments["collection_name"]
    if await backend.get_collection(name) is None:
        return tool_error(f"collection '{name}' not found")

    page = int(arguments.get("page") or 1)
    page_size = int(arguments.get("pageSize") or 10)
    page = max(page, 1)
    page_size = page_size if page_size >= 1 else 10

    items, total = await backend.list_items(name, page, page_size)
    return tool_result(
        {
            "status": "success",
            "items": items,
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "total": total,
                "pageCount": math.ceil(total / page_size),
            },
        }
    )


@_in_band
async def delete_item(ctx: ToolContext, arguments: dict[str, Any]) -> str:
    if err := check_arguments(arguments, _DELETE_SCHEMA):
        return tool_error(err)
    item_id = _parse_item_id(arguments["item_id"])
    if item_id is None:
        return tool_error("invalid item_id format")
    deleted = await _backend(ctx).delete_item(item_id, arguments.get("collection_name") or None)
    if not deleted:
        return tool_error(f"failed to delete item: item {item_id} not found")
    return tool_result({"status": "success", "message": f"Item '{item_id}' was successfully deleted."})


TOOLS = {
    "collections.list": list_collections,
    "collections.get_schema": get_collection_schema,
    "collections.upsert_item": upsert_item,
    "collections.list_items": list_items,
    "collections.delete_item": delete_item,
}
