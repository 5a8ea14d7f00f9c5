"""
Hierarchy query engine for TopoDB.

Bounded-depth descendant retrieval by breadth-first level expansion:
the frontier starts as the root (level 0); each step fetches the alive
children of the whole frontier through the (parent_id, alive) index,
labels them with the next level and makes them the new frontier. Work is
bounded by the number of descendants within the requested depth.
"""

from __future__ import annotations

import logging

from ..errors import InvalidArgumentError
from ..store.entity_store import EntityStore
from ..store.models import Node, NodeAtLevel, NodeType

logger = logging.getLogger(__name__)


class HierarchyQueryEngine:
    """Reads subtrees and ancestor chains.

    Example:
        >>> engine = HierarchyQueryEngine(store)
        >>> rows = await engine.get_subtree(network_id, max_depth=2)
        >>> [(r.name, r.level) for r in rows][:2]
        [('Network-1', 0), ('Device-1-1', 1)]
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    async def get_subtree(self, root_id: str, max_depth: int) -> list[NodeAtLevel]:
        """Return the alive root and its alive descendants up to max_depth.

        Args:
            root_id: Node to start from
            max_depth: Deepest level to include (root is level 0)

        Returns:
            Rows ordered by level, then discovery order. Empty if the root
            is unknown or soft-deleted.

        Raises:
            InvalidArgumentError: If max_depth is negative or not an int
        """
        if isinstance(max_depth, bool) or not isinstance(max_depth, int):
            raise InvalidArgumentError("max_depth must be an integer", argument="max_depth")
        if max_depth < 0:
            raise InvalidArgumentError(
                f"max_depth must be >= 0, got {max_depth}", argument="max_depth"
            )

        root = await self.store.get_node(root_id)
        if root is None or not root.alive:
            return []

        result = [
            NodeAtLevel(
                id=root.id,
                name=root.name,
                type=root.type,
                description=root.description,
                level=0,
            )
        ]
        frontier = [root.id]
        seen = {root.id}

        for level in range(1, max_depth + 1):
            rows = await self.store.alive_children(frontier)
            if not rows:
                break

            position = {node_id: i for i, node_id in enumerate(frontier)}
            rows.sort(key=lambda r: (position[r["parent_id"]], r["id"]))

            frontier = []
            for row in rows:
                if row["id"] in seen:
                    continue
                seen.add(row["id"])
                frontier.append(row["id"])
                result.append(
                    NodeAtLevel(
                        id=row["id"],
                        name=row["name"],
                        type=NodeType(row["type"]),
                        description=row["description"],
                        level=level,
                    )
                )

        logger.debug(
            "Subtree query",
            extra={"root_id": root_id, "max_depth": max_depth, "rows": len(result)},
        )
        return result

    async def get_ancestors(self, node_id: str) -> list[Node]:
        """Parent chain of a node, nearest first.

        Raises:
            NotFoundError: If the node doesn't exist
        """
        ids = await self.store.ancestor_ids(node_id)
        return await self.store.get_nodes(ids)
