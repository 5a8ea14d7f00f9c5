"""
Tag query engine for TopoDB.

Finds nodes carrying every one of a set of (key, value) tags, optionally
narrowed to nodes that also carry some tag with a given key.

Algorithm:
    1. Range-scan the (key, value, alive, node_id) index once per
       required predicate
    2. Count matches per node; keep nodes matched by every predicate
    3. Apply the key-only predicate last, to the reduced candidate set

Invariants:
    - Only alive tags match
    - The key-only predicate is never evaluated against the whole index,
      since a bare key can match a large share of all tags
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable

from ..errors import InvalidArgumentError
from ..store.entity_store import EntityStore
from ..store.models import Node

logger = logging.getLogger(__name__)


def _normalize_predicates(required: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    predicates: list[tuple[str, str]] = []
    for item in required:
        if not isinstance(item, (tuple, list)) or len(item) != 2:
            raise InvalidArgumentError(
                f"Tag predicate must be a (key, value) pair, got {item!r}", argument="required"
            )
        key, value = item
        if not key:
            raise InvalidArgumentError("Tag predicate key must not be empty", argument="required")
        predicates.append((key, value))
    # Repeated predicates would inflate the per-node count
    return list(dict.fromkeys(predicates))


class TagQueryEngine:
    """Multi-predicate search over the tag index.

    Example:
        >>> engine = TagQueryEngine(store)
        >>> await engine.find_by_tags([("category", "medium"), ("zone", "zone-a")])
        ['0b8e...', '5f21...']
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    async def find_by_tags(
        self,
        required: Iterable[tuple[str, str]],
        optional_key: str | None = None,
    ) -> list[str]:
        """Find ids of nodes matching all required tags.

        Args:
            required: (key, value) pairs that must all be present and alive
            optional_key: If given, the node must also have an alive tag with this key

        Returns:
            Unique node ids, sorted

        Raises:
            InvalidArgumentError: If no required predicate is given
        """
        predicates = _normalize_predicates(required)
        if not predicates:
            raise InvalidArgumentError(
                "At least one (key, value) predicate is required", argument="required"
            )
        if optional_key is not None and not optional_key:
            raise InvalidArgumentError("optional_key must not be empty", argument="optional_key")

        counts: Counter[str] = Counter()
        for key, value in predicates:
            async for row in self.store.iter_scan("tags_by_key_value", (key, value, True)):
                counts[row["node_id"]] += 1

        candidates = sorted(node_id for node_id, n in counts.items() if n == len(predicates))

        if optional_key is not None and candidates:
            with_key = await self.store.nodes_with_tag_key(candidates, optional_key)
            candidates = [node_id for node_id in candidates if node_id in with_key]

        logger.debug(
            "Tag query",
            extra={
                "predicates": len(predicates),
                "optional_key": optional_key,
                "matches": len(candidates),
            },
        )
        return candidates

    async def find_nodes_by_tags(
        self,
        required: Iterable[tuple[str, str]],
        optional_key: str | None = None,
    ) -> list[Node]:
        """Like find_by_tags, joined back to full node records."""
        ids = await self.find_by_tags(required, optional_key)
        return await self.store.get_nodes(ids)
