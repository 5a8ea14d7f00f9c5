"""
Cascade consistency engine for TopoDB.

Propagates an alive-state transition of one node to everything it owns:
its ports, their values and incident edges, its tags, and recursively
its descendant nodes. A port-level variant does the same for one port.

Algorithm, for node N and target state T:
    1. If N.alive already equals T, stop (idempotent)
    2. Set N.alive = T
    3. For each port of N not at T: set it, then its values and every
       edge with the port as either endpoint
    4. Set every tag of N not at T
    5. Repeat for each child of N not at T

Invariants:
    - One invocation commits atomically in a single store transaction
    - Readers never observe a partially cascaded subtree
    - An edge flips when either endpoint's cascade reaches it
    - Restore is the same walk with T = True, and also revives
      descendants that were dead for unrelated reasons
    - Cancelling the calling task rolls the whole cascade back

How to change safely:
    - Keep every step filtered on alive != T so re-runs are no-ops
    - New owned record kinds need a step here and a rollback test
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass

from ..errors import InvalidArgumentError, NotFoundError
from ..store.entity_store import EntityStore, StoreTransaction
from .locks import SubtreeLockManager

logger = logging.getLogger(__name__)


@dataclass
class CascadeResult:
    """Outcome of one cascade.

    Attributes:
        root_id: Node or port the cascade started from
        kind: "node" or "port"
        target: Alive state that was propagated
        nodes: Nodes whose alive flag changed
        ports: Ports whose alive flag changed
        values: Values whose alive flag changed
        edges: Edges whose alive flag changed
        tags: Tags whose alive flag changed
        duration_ms: Wall time including lock wait
    """

    root_id: str
    kind: str
    target: bool
    nodes: int = 0
    ports: int = 0
    values: int = 0
    edges: int = 0
    tags: int = 0
    duration_ms: int = 0

    @property
    def changed(self) -> bool:
        return any((self.nodes, self.ports, self.values, self.edges, self.tags))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["changed"] = self.changed
        return data


class CascadeEngine:
    """Applies soft delete and restore across the ownership graph.

    Thread safety:
        Overlapping cascades are serialized through SubtreeLockManager;
        cascades over disjoint subtrees may be issued concurrently and
        are committed one transaction at a time by the store.

    Example:
        >>> engine = CascadeEngine(store)
        >>> result = await engine.set_alive(network_id, False)
        >>> result.nodes
        151
    """

    def __init__(
        self,
        store: EntityStore,
        locks: SubtreeLockManager | None = None,
        wait_on_conflict: bool = False,
        checkpoint_interval: int = 1,
    ) -> None:
        """Initialize the cascade engine.

        Args:
            store: Entity store to cascade over
            locks: Lock manager (shared between engines on the same store)
            wait_on_conflict: Wait for overlapping cascades instead of failing
            checkpoint_interval: Nodes processed between cancellation checkpoints
        """
        if checkpoint_interval <= 0:
            raise InvalidArgumentError(
                "checkpoint_interval must be positive", argument="checkpoint_interval"
            )
        self.store = store
        self.locks = locks or SubtreeLockManager()
        self.wait_on_conflict = wait_on_conflict
        self.checkpoint_interval = checkpoint_interval

    async def set_alive(self, node_id: str, target: bool) -> CascadeResult:
        """Soft-delete (target=False) or restore (target=True) a node's subtree.

        Args:
            node_id: Root of the cascade
            target: Alive state to propagate

        Returns:
            CascadeResult with per-kind change counts

        Raises:
            NotFoundError: If the node doesn't exist
            ConflictError: If an overlapping cascade is running
            StorageFailureError: If SQLite fails; nothing is retained
        """
        start = time.monotonic()
        result = CascadeResult(root_id=node_id, kind="node", target=target)

        ancestors = await self.store.ancestor_ids(node_id)
        async with self.locks.hold(node_id, ancestors, wait=self.wait_on_conflict):
            await self._run(result, self._cascade_from_node)

        return self._finish(result, start)

    async def set_port_alive(self, port_id: str, target: bool) -> CascadeResult:
        """Soft-delete or restore one port with its values and incident edges.

        Sibling ports of the same node are never touched.

        Raises:
            NotFoundError: If the port doesn't exist
            InvalidArgumentError: If restoring a port whose node is soft-deleted
            ConflictError: If a cascade over the owning node is running
            StorageFailureError: If SQLite fails; nothing is retained
        """
        start = time.monotonic()
        result = CascadeResult(root_id=port_id, kind="port", target=target)

        port = await self.store.get_port(port_id)
        if port is None:
            raise NotFoundError(f"Port not found: {port_id}", "port", port_id)
        # Port ids never collide with node ids, so sibling ports don't conflict
        node_chain = await self.store.ancestor_ids(port.node_id)
        ancestors = [port.node_id, *node_chain]

        async with self.locks.hold(port_id, ancestors, wait=self.wait_on_conflict):
            await self._run(result, self._cascade_from_port)

        return self._finish(result, start)

    async def _run(self, result: CascadeResult, walk) -> None:
        try:
            async with self.store.transaction(f"set_{result.kind}_alive") as tx:
                await walk(tx, result)
        except asyncio.CancelledError:
            logger.warning(
                "Cascade cancelled, rolled back",
                extra={"root_id": result.root_id, "target": result.target},
            )
            raise

    def _finish(self, result: CascadeResult, start: float) -> CascadeResult:
        result.duration_ms = int((time.monotonic() - start) * 1000)
        if result.changed:
            logger.info("Cascade applied", extra=result.to_dict())
        else:
            logger.debug("Cascade was a no-op", extra=result.to_dict())
        return result

    async def _cascade_from_node(self, tx: StoreTransaction, result: CascadeResult) -> None:
        # The node may have been hard-deleted between lookup and lock
        tx.require_node(result.root_id)

        target = result.target
        stack = [result.root_id]
        processed = 0

        while stack:
            node_id = stack.pop()
            if not tx.set_alive("nodes", node_id, target):
                continue
            result.nodes += 1

            port_ids = [row["id"] for row in tx.iter_scan("ports_by_node", (node_id, not target))]
            for port_id in port_ids:
                self._cascade_port(tx, port_id, target, result)

            result.tags += tx.set_alive_by("tags_by_node", node_id, target)

            children = [
                row["id"] for row in tx.iter_scan("nodes_by_parent", (node_id, not target))
            ]
            stack.extend(reversed(children))

            processed += 1
            if processed % self.checkpoint_interval == 0:
                await asyncio.sleep(0)

    async def _cascade_from_port(self, tx: StoreTransaction, result: CascadeResult) -> None:
        port = tx.require_port(result.root_id)
        if result.target and not tx.require_node(port.node_id).alive:
            raise InvalidArgumentError(
                f"Cannot restore port {port.id}: node {port.node_id} is soft-deleted",
                argument="port_id",
            )
        self._cascade_port(tx, port.id, result.target, result)

    def _cascade_port(
        self,
        tx: StoreTransaction,
        port_id: str,
        target: bool,
        result: CascadeResult,
    ) -> None:
        if not tx.set_alive("ports", port_id, target):
            return
        result.ports += 1
        result.values += tx.set_alive_by("values_by_port", port_id, target)
        result.edges += tx.set_alive_by("edges_by_from_port", port_id, target)
        result.edges += tx.set_alive_by("edges_by_to_port", port_id, target)
