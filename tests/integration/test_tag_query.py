"""
Integration tests for multi-predicate tag search.
"""

import tempfile

import pytest

from dbaas.topodb_server.cascade import CascadeEngine
from dbaas.topodb_server.errors import InvalidArgumentError
from dbaas.topodb_server.query import TagQueryEngine
from dbaas.topodb_server.store import EntityStore, NodeType


class TestTagQuery:
    """Tests for TagQueryEngine."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create five tagged points.

        p1: category=medium, zone=zone-a, status=active
        p2: category=medium, zone=zone-a
        p3: category=medium, zone=zone-b, status=inactive
        p4: category=high,   zone=zone-a, status=active
        p5: (no tags)
        """
        store = EntityStore(data_dir, wal_mode=False, scan_page_size=2)
        await store.initialize()

        tags = {
            "p1": [("category", "medium"), ("zone", "zone-a"), ("status", "active")],
            "p2": [("category", "medium"), ("zone", "zone-a")],
            "p3": [("category", "medium"), ("zone", "zone-b"), ("status", "inactive")],
            "p4": [("category", "high"), ("zone", "zone-a"), ("status", "active")],
            "p5": [],
        }
        for node_id in ("p3", "p1", "p5", "p4", "p2"):
            await store.create_node(NodeType.POINT, f"Point-{node_id}", node_id=node_id)
            for key, value in tags[node_id]:
                await store.add_tag(node_id, key, value)
        return store

    @pytest.fixture
    def engine(self, store):
        return TagQueryEngine(store)

    @pytest.mark.asyncio
    async def test_single_predicate(self, engine):
        """One predicate returns every node carrying it, sorted."""
        assert await engine.find_by_tags([("category", "medium")]) == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_intersection(self, engine):
        """Multiple predicates are ANDed."""
        result = await engine.find_by_tags([("category", "medium"), ("zone", "zone-a")])
        assert result == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_no_match(self, engine):
        result = await engine.find_by_tags([("category", "medium"), ("zone", "zone-c")])
        assert result == []

    @pytest.mark.asyncio
    async def test_repeated_predicate(self, engine):
        """Repeating a predicate doesn't change the result."""
        result = await engine.find_by_tags(
            [("zone", "zone-a"), ("zone", "zone-a"), ("status", "active")]
        )
        assert result == ["p1", "p4"]

    @pytest.mark.asyncio
    async def test_optional_key(self, engine):
        """Key-only predicate narrows the candidates."""
        result = await engine.find_by_tags([("category", "medium")], optional_key="status")
        assert result == ["p1", "p3"]

    @pytest.mark.asyncio
    async def test_optional_key_absent_everywhere(self, engine):
        result = await engine.find_by_tags([("category", "medium")], optional_key="vendor")
        assert result == []

    @pytest.mark.asyncio
    async def test_empty_required_rejected(self, engine):
        """A key-only predicate alone is not a valid query."""
        with pytest.raises(InvalidArgumentError):
            await engine.find_by_tags([])
        with pytest.raises(InvalidArgumentError):
            await engine.find_by_tags([], optional_key="status")

    @pytest.mark.asyncio
    async def test_empty_optional_key_rejected(self, engine):
        with pytest.raises(InvalidArgumentError):
            await engine.find_by_tags([("category", "medium")], optional_key="")

    @pytest.mark.asyncio
    async def test_malformed_predicate_rejected(self, engine):
        with pytest.raises(InvalidArgumentError):
            await engine.find_by_tags([("category",)])
        with pytest.raises(InvalidArgumentError):
            await engine.find_by_tags([("", "medium")])

    @pytest.mark.asyncio
    async def test_dead_tags_ignored(self, store, engine):
        """Tags of soft-deleted nodes don't match, and come back on restore."""
        cascade = CascadeEngine(store)

        await cascade.set_alive("p1", False)
        assert await engine.find_by_tags([("category", "medium")]) == ["p2", "p3"]
        assert await engine.find_by_tags(
            [("category", "medium")], optional_key="status"
        ) == ["p3"]

        await cascade.set_alive("p1", True)
        assert await engine.find_by_tags([("category", "medium")]) == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_find_nodes_by_tags(self, engine):
        """Ids are joined back to node records."""
        nodes = await engine.find_nodes_by_tags([("zone", "zone-a")], optional_key="status")
        assert [(n.id, n.name) for n in nodes] == [("p1", "Point-p1"), ("p4", "Point-p4")]
