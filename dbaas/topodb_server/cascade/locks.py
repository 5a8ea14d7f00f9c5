"""
Per-root advisory locks for cascades.

A cascade on node N touches N's whole subtree. Two cascades overlap when
one root is the other or an ancestor of the other; disjoint subtrees may
proceed concurrently. Overlap is detected from ancestor paths, keyed on
the topmost affected node id of each cascade.

Invariants:
    - At most one holder per overlapping region at any time
    - A released lock wakes every waiter so they re-check overlap
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from ..errors import ConflictError

logger = logging.getLogger(__name__)


class SubtreeLockManager:
    """Tracks running cascades and detects overlapping subtrees.

    Example:
        >>> locks = SubtreeLockManager()
        >>> async with locks.hold("device-1", ancestors=["network-1"]):
        ...     ...  # cascade over device-1's subtree
    """

    def __init__(self) -> None:
        # root id -> root id plus its ancestor ids
        self._active: dict[str, frozenset[str]] = {}
        self._cond = asyncio.Condition()

    @property
    def active_roots(self) -> list[str]:
        return list(self._active)

    def _find_holder(self, node_id: str, path: frozenset[str]) -> str | None:
        for holder_id, holder_path in self._active.items():
            # holder is an ancestor-or-self of node, or node is an ancestor of holder
            if holder_id in path or node_id in holder_path:
                return holder_id
        return None

    @asynccontextmanager
    async def hold(
        self,
        node_id: str,
        ancestors: list[str],
        wait: bool = False,
    ) -> AsyncIterator[None]:
        """Hold the subtree rooted at node_id for the duration of the block.

        Args:
            node_id: Topmost node the cascade will touch
            ancestors: Parent chain of node_id
            wait: Wait for an overlapping holder instead of failing

        Raises:
            ConflictError: If an overlapping cascade is running and wait=False
        """
        path = frozenset([node_id, *ancestors])

        async with self._cond:
            while True:
                holder = self._find_holder(node_id, path)
                if holder is None:
                    break
                if not wait:
                    logger.warning(
                        "Cascade conflict",
                        extra={"node_id": node_id, "holder_id": holder},
                    )
                    raise ConflictError(
                        f"Cascade on {node_id} overlaps running cascade on {holder}",
                        node_id=node_id,
                        holder_id=holder,
                    )
                await self._cond.wait()
            self._active[node_id] = path

        try:
            yield
        finally:
            async with self._cond:
                self._active.pop(node_id, None)
                self._cond.notify_all()
