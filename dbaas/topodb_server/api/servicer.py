"""
Service layer for TopoDB.

Coordinates the entity store, the cascade engine and the two query
engines behind one object with JSON-friendly inputs and outputs. The HTTP
server is a thin adapter over this class.

Invariants:
    - Soft delete and restore only go through the cascade engine
    - Errors surface as TopoDbError subclasses; transports map the codes
"""

from __future__ import annotations

import logging
from typing import Any

from .._version import __version__
from ..cascade import CascadeEngine
from ..errors import InvalidArgumentError, NotFoundError, StorageFailureError
from ..query import HierarchyQueryEngine, TagQueryEngine
from ..store import EntityStore

logger = logging.getLogger(__name__)


def _require(body: dict[str, Any], name: str) -> Any:
    value = body.get(name)
    if value is None or value == "":
        raise InvalidArgumentError(f"{name} is required", argument=name)
    return value


def _require_bool(body: dict[str, Any], name: str) -> bool:
    value = body.get(name)
    if not isinstance(value, bool):
        raise InvalidArgumentError(f"{name} must be a boolean", argument=name)
    return value


class TopoDBServicer:
    """Service implementation shared by the external surfaces.

    Attributes:
        store: Entity store
        cascade: Cascade engine (soft delete / restore)
        hierarchy: Subtree queries
        tags: Tag search
    """

    def __init__(
        self,
        store: EntityStore,
        cascade: CascadeEngine,
        hierarchy: HierarchyQueryEngine | None = None,
        tags: TagQueryEngine | None = None,
    ) -> None:
        self.store = store
        self.cascade = cascade
        self.hierarchy = hierarchy or HierarchyQueryEngine(store)
        self.tags = tags or TagQueryEngine(store)

    # Nodes

    async def create_node(self, body: dict[str, Any]) -> dict[str, Any]:
        tags = body.get("tags", [])
        if not isinstance(tags, list) or not all(isinstance(t, dict) for t in tags):
            raise InvalidArgumentError("tags must be a list of objects", argument="tags")
        pairs = [(_require(t, "key"), t.get("value", "")) for t in tags]

        node = await self.store.create_node(
            node_type=_require(body, "type"),
            name=_require(body, "name"),
            parent_id=body.get("parent_id"),
            description=body.get("description"),
            node_id=body.get("id"),
            tags=pairs,
        )
        return node.to_dict()

    async def get_node(self, node_id: str) -> dict[str, Any]:
        node = await self.store.get_node(node_id)
        if node is None:
            raise NotFoundError(f"Node not found: {node_id}", "node", node_id)
        ports = await self.store.list_ports(node_id, include_dead=True)
        tags = await self.store.list_tags(node_id, include_dead=True)
        return {
            "node": node.to_dict(),
            "ports": [p.to_dict() for p in ports],
            "tags": [t.to_dict() for t in tags],
        }

    async def move_node(self, node_id: str, body: dict[str, Any]) -> dict[str, Any]:
        node = await self.store.move_node(node_id, body.get("parent_id"))
        return node.to_dict()

    async def hard_delete_node(self, node_id: str) -> dict[str, Any]:
        if not await self.store.hard_delete_node(node_id):
            raise NotFoundError(f"Node not found: {node_id}", "node", node_id)
        return {"deleted": True, "id": node_id}

    async def set_alive(self, node_id: str, body: dict[str, Any]) -> dict[str, Any]:
        result = await self.cascade.set_alive(node_id, _require_bool(body, "alive"))
        return result.to_dict()

    async def get_subtree(self, node_id: str, max_depth: int) -> dict[str, Any]:
        rows = await self.hierarchy.get_subtree(node_id, max_depth)
        return {
            "root_id": node_id,
            "max_depth": max_depth,
            "nodes": [row.to_dict() for row in rows],
        }

    async def get_ancestors(self, node_id: str) -> dict[str, Any]:
        nodes = await self.hierarchy.get_ancestors(node_id)
        return {"node_id": node_id, "ancestors": [n.to_dict() for n in nodes]}

    # Ports and edges

    async def create_port(self, node_id: str, body: dict[str, Any]) -> dict[str, Any]:
        port = await self.store.create_port(
            node_id=node_id,
            direction=_require(body, "direction"),
            name=_require(body, "name"),
            description=body.get("description"),
            port_id=body.get("id"),
        )
        return port.to_dict()

    async def set_port_alive(self, port_id: str, body: dict[str, Any]) -> dict[str, Any]:
        result = await self.cascade.set_port_alive(port_id, _require_bool(body, "alive"))
        return result.to_dict()

    async def hard_delete_port(self, port_id: str) -> dict[str, Any]:
        if not await self.store.hard_delete_port(port_id):
            raise NotFoundError(f"Port not found: {port_id}", "port", port_id)
        return {"deleted": True, "id": port_id}

    async def create_edge(self, body: dict[str, Any]) -> dict[str, Any]:
        edge = await self.store.create_edge(
            from_port_id=_require(body, "from_port_id"),
            to_port_id=_require(body, "to_port_id"),
            description=body.get("description"),
            edge_id=body.get("id"),
        )
        return edge.to_dict()

    async def hard_delete_edge(self, edge_id: str) -> dict[str, Any]:
        if not await self.store.hard_delete_edge(edge_id):
            raise NotFoundError(f"Edge not found: {edge_id}", "edge", edge_id)
        return {"deleted": True, "id": edge_id}

    # Tags

    async def add_tag(self, node_id: str, body: dict[str, Any]) -> dict[str, Any]:
        tag = await self.store.add_tag(node_id, _require(body, "key"), body.get("value", ""))
        return tag.to_dict()

    async def remove_tag(self, node_id: str, body: dict[str, Any]) -> dict[str, Any]:
        removed = await self.store.remove_tag(
            node_id, _require(body, "key"), body.get("value", "")
        )
        return {"removed": removed}

    async def find_by_tags(
        self,
        required: list[tuple[str, str]],
        optional_key: str | None = None,
        include_nodes: bool = False,
    ) -> dict[str, Any]:
        if include_nodes:
            nodes = await self.tags.find_nodes_by_tags(required, optional_key)
            return {
                "node_ids": [n.id for n in nodes],
                "nodes": [n.to_dict() for n in nodes],
            }
        return {"node_ids": await self.tags.find_by_tags(required, optional_key)}

    # Values

    async def append_value(self, port_id: str, body: dict[str, Any]) -> dict[str, Any]:
        if "payload" not in body:
            raise InvalidArgumentError("payload is required", argument="payload")
        value = await self.store.append_value(
            port_id,
            body["payload"],
            timestamp=body.get("timestamp"),
            value_id=body.get("id"),
        )
        return value.to_dict()

    async def unsynced_values(
        self, since_ms: int | None = None, limit: int = 1000
    ) -> dict[str, Any]:
        values = await self.store.unsynced_values(since_ms=since_ms, limit=limit)
        return {"values": [v.to_dict() for v in values]}

    async def unsynced_counts(self, limit: int = 100) -> dict[str, Any]:
        return {"nodes": await self.store.unsynced_counts(limit=limit)}

    async def mark_synced(self, body: dict[str, Any]) -> dict[str, Any]:
        value_ids = body.get("value_ids")
        if not isinstance(value_ids, list):
            raise InvalidArgumentError("value_ids must be a list", argument="value_ids")
        synced = await self.store.mark_synced(value_ids, synced_at=body.get("synced_at"))
        return {"synced": synced}

    # Health

    async def health(self) -> dict[str, Any]:
        try:
            stats = await self.store.get_stats()
        except StorageFailureError as e:
            logger.warning(f"Health check failed: {e}")
            return {"healthy": False, "version": __version__, "error": e.message}
        return {"healthy": True, "version": __version__, "stats": stats}
