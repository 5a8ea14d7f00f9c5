"""
Integration tests for the synthetic topology generator.
"""

import tempfile

import pytest

from dbaas.topodb_server.query import HierarchyQueryEngine
from dbaas.topodb_server.store import EntityStore
from dbaas.topodb_server.tools.populate import TAG_KEYS, TAG_VALUES, Populator, populate


class TestPopulate:
    """Tests for Populator."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = EntityStore(data_dir, wal_mode=False)
        await store.initialize()
        return store

    @pytest.mark.asyncio
    async def test_counts(self, store):
        """Node and port counts follow the requested shape."""
        stats = await Populator(2, 3, 4, seed=7).run(store)

        assert stats.nodes == 2 + 2 * 3 + 2 * 3 * 4
        assert stats.ports == 2 * stats.nodes
        # 1..5 values on each of the 48 point ports
        assert 48 <= stats.values <= 240

        db_stats = await store.get_stats()
        assert db_stats["nodes"]["total"] == stats.nodes
        assert db_stats["ports"]["total"] == stats.ports
        assert db_stats["port_values"]["total"] == stats.values
        assert db_stats["tags"]["total"] == stats.tags
        assert db_stats["edges"]["total"] == stats.edges

    @pytest.mark.asyncio
    async def test_tags_from_pools(self, store):
        """Generated tags only use the known key and value pools."""
        await Populator(1, 2, 5, seed=3).run(store)

        with store._read("test") as conn:
            rows = conn.execute("SELECT DISTINCT tag_key, tag_value FROM tags").fetchall()
        assert all(r["tag_key"] in TAG_KEYS and r["tag_value"] in TAG_VALUES for r in rows)

    @pytest.mark.asyncio
    async def test_hierarchy_is_queryable(self, store):
        """The generated forest is visible to subtree queries."""
        await Populator(1, 2, 3, seed=11).run(store)

        roots = await store.scan("nodes_by_parent", (None, True))
        assert len(roots.rows) == 1
        assert roots.rows[0]["name"] == "Network-1"

        rows = await HierarchyQueryEngine(store).get_subtree(roots.rows[0]["id"], 2)
        assert [r.level for r in rows].count(2) == 6
        assert {r.name for r in rows if r.level == 1} == {"Device-1-1", "Device-1-2"}

    @pytest.mark.asyncio
    async def test_seed_is_reproducible(self):
        """The same seed yields the same ids and counts."""
        results = []
        for _ in range(2):
            with tempfile.TemporaryDirectory() as tmpdir:
                stats = await populate(
                    tmpdir, networks=2, devices_per_network=2, points_per_device=2, seed=42
                )
                store = EntityStore(tmpdir)
                roots = await store.scan("nodes_by_parent", (None, True))
                results.append(
                    (stats.tags, stats.edges, stats.values, [r["id"] for r in roots.rows])
                )

        assert results[0] == results[1]
