"""
Integration tests for the REST API.

Runs the aiohttp application in-process against a real SQLite store.
"""

import tempfile

import pytest
from aiohttp.test_utils import TestClient, TestServer

from dbaas.topodb_server.api import TopoDBServicer, create_http_app
from dbaas.topodb_server.cascade import CascadeEngine
from dbaas.topodb_server.config import HttpConfig
from dbaas.topodb_server.store import EntityStore


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def client(data_dir):
    """HTTP client bound to a fresh server."""
    store = EntityStore(data_dir, wal_mode=False)
    await store.initialize()
    servicer = TopoDBServicer(store, CascadeEngine(store))
    app = create_http_app(servicer, HttpConfig(cors_origins=("http://console.local",)))

    async with TestClient(TestServer(app)) as client:
        yield client


async def create_tree(client):
    """Network -> device -> point, point tagged and with one port."""
    for body in (
        {"id": "net", "type": "network", "name": "Network-1"},
        {"id": "dev", "type": "device", "name": "Device-1", "parent_id": "net"},
        {
            "id": "pt",
            "type": "point",
            "name": "Point-1",
            "parent_id": "dev",
            "tags": [{"key": "category", "value": "medium"}],
        },
    ):
        resp = await client.post("/v1/nodes", json=body)
        assert resp.status == 201

    resp = await client.post(
        "/v1/nodes/pt/ports", json={"id": "pt-in", "direction": "input", "name": "Input-pt"}
    )
    assert resp.status == 201


class TestNodeEndpoints:
    """Tests for node, subtree and tag endpoints."""

    @pytest.mark.asyncio
    async def test_create_and_get_node(self, client):
        await create_tree(client)

        resp = await client.get("/v1/nodes/pt")
        assert resp.status == 200
        data = await resp.json()
        assert data["node"]["type"] == "point"
        assert data["node"]["parent_id"] == "dev"
        assert [p["id"] for p in data["ports"]] == ["pt-in"]
        assert data["ports"][0]["direction"] == "input"
        assert [(t["key"], t["value"]) for t in data["tags"]] == [("category", "medium")]

    @pytest.mark.asyncio
    async def test_get_unknown_node(self, client):
        resp = await client.get("/v1/nodes/missing")
        assert resp.status == 404
        data = await resp.json()
        assert data["error_code"] == "NOT_FOUND"
        assert data["details"]["resource_id"] == "missing"

    @pytest.mark.asyncio
    async def test_create_node_missing_name(self, client):
        resp = await client.post("/v1/nodes", json={"type": "network"})
        assert resp.status == 400
        data = await resp.json()
        assert data["error_code"] == "INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_create_node_bad_tag_value(self, client):
        """A rejected tag leaves no node behind."""
        resp = await client.post(
            "/v1/nodes",
            json={
                "id": "net",
                "type": "network",
                "name": "Network-1",
                "tags": [{"key": "zone", "value": "zone-a"}, {"key": "k", "value": None}],
            },
        )
        assert resp.status == 400
        data = await resp.json()
        assert data["details"]["argument"] == "value"

        resp = await client.get("/v1/nodes/net")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_add_tag_structured_value(self, client):
        await create_tree(client)
        resp = await client.post("/v1/nodes/dev/tags", json={"key": "zone", "value": {"a": 1}})
        assert resp.status == 400
        assert (await resp.json())["error_code"] == "INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, client):
        resp = await client.post(
            "/v1/nodes", data="{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_subtree(self, client):
        await create_tree(client)

        resp = await client.get("/v1/nodes/net/subtree", params={"depth": "2"})
        assert resp.status == 200
        data = await resp.json()
        assert [(n["id"], n["level"]) for n in data["nodes"]] == [
            ("net", 0),
            ("dev", 1),
            ("pt", 2),
        ]

    @pytest.mark.asyncio
    async def test_subtree_bad_depth(self, client):
        await create_tree(client)

        resp = await client.get("/v1/nodes/net/subtree", params={"depth": "deep"})
        assert resp.status == 400

        resp = await client.get("/v1/nodes/net/subtree", params={"depth": "-1"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_ancestors(self, client):
        await create_tree(client)

        resp = await client.get("/v1/nodes/pt/ancestors")
        data = await resp.json()
        assert [n["id"] for n in data["ancestors"]] == ["dev", "net"]

    @pytest.mark.asyncio
    async def test_set_alive_scenario(self, client):
        """Soft delete hides the subtree and its tags; restore brings both back."""
        await create_tree(client)

        resp = await client.put("/v1/nodes/net/alive", json={"alive": False})
        assert resp.status == 200
        result = await resp.json()
        assert result["nodes"] == 3
        assert result["changed"] is True

        resp = await client.get("/v1/nodes/net/subtree", params={"depth": "3"})
        assert (await resp.json())["nodes"] == []
        resp = await client.get("/v1/tags/search", params={"tag": "category:medium"})
        assert (await resp.json())["node_ids"] == []

        resp = await client.put("/v1/nodes/net/alive", json={"alive": True})
        assert resp.status == 200

        resp = await client.get("/v1/nodes/net/subtree", params={"depth": "3"})
        assert len((await resp.json())["nodes"]) == 3
        resp = await client.get("/v1/tags/search", params={"tag": "category:medium"})
        assert (await resp.json())["node_ids"] == ["pt"]

    @pytest.mark.asyncio
    async def test_set_alive_requires_boolean(self, client):
        await create_tree(client)
        resp = await client.put("/v1/nodes/net/alive", json={"alive": "no"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_move_node_cycle(self, client):
        await create_tree(client)
        resp = await client.post("/v1/nodes/net/move", json={"parent_id": "pt"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_hard_delete_node(self, client):
        await create_tree(client)

        resp = await client.delete("/v1/nodes/dev")
        assert resp.status == 200

        resp = await client.get("/v1/nodes/pt")
        assert resp.status == 404
        resp = await client.delete("/v1/nodes/dev")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_tag_search(self, client):
        await create_tree(client)
        resp = await client.post("/v1/nodes/dev/tags", json={"key": "category", "value": "medium"})
        assert resp.status == 201
        resp = await client.post("/v1/nodes/dev/tags", json={"key": "zone", "value": "zone-a"})
        assert resp.status == 201

        resp = await client.get(
            "/v1/tags/search",
            params=[("tag", "category:medium"), ("tag", "zone:zone-a")],
        )
        assert (await resp.json())["node_ids"] == ["dev"]

        resp = await client.get(
            "/v1/tags/search",
            params={"tag": "category:medium", "has_key": "zone", "include_nodes": "true"},
        )
        data = await resp.json()
        assert data["node_ids"] == ["dev"]
        assert data["nodes"][0]["name"] == "Device-1"

        resp = await client.delete("/v1/nodes/dev/tags", json={"key": "zone", "value": "zone-a"})
        assert (await resp.json())["removed"] is True

    @pytest.mark.asyncio
    async def test_tag_search_bad_input(self, client):
        resp = await client.get("/v1/tags/search", params={"tag": "no-colon"})
        assert resp.status == 400

        resp = await client.get("/v1/tags/search", params={"has_key": "zone"})
        assert resp.status == 400


class TestPortEndpoints:
    """Tests for ports, edges and values."""

    @pytest.mark.asyncio
    async def test_port_cascade_and_edges(self, client):
        await create_tree(client)
        resp = await client.post(
            "/v1/nodes/pt/ports", json={"id": "pt-out", "direction": "output", "name": "Out"}
        )
        assert resp.status == 201
        resp = await client.post(
            "/v1/edges", json={"id": "e1", "from_port_id": "pt-out", "to_port_id": "pt-in"}
        )
        assert resp.status == 201

        resp = await client.put("/v1/ports/pt-out/alive", json={"alive": False})
        result = await resp.json()
        assert result["ports"] == 1
        assert result["edges"] == 1

        resp = await client.get("/v1/nodes/pt")
        ports = {p["id"]: p["alive"] for p in (await resp.json())["ports"]}
        assert ports == {"pt-in": True, "pt-out": False}

        resp = await client.delete("/v1/edges/e1")
        assert resp.status == 200
        resp = await client.delete("/v1/ports/pt-out")
        assert resp.status == 200

    @pytest.mark.asyncio
    async def test_self_loop_edge(self, client):
        await create_tree(client)
        resp = await client.post(
            "/v1/edges", json={"from_port_id": "pt-in", "to_port_id": "pt-in"}
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_values_sync_flow(self, client):
        await create_tree(client)
        for i, payload in enumerate((20.5, "ok", True)):
            resp = await client.post(
                "/v1/ports/pt-in/values",
                json={"id": f"v{i}", "payload": payload, "timestamp": 1000 + i},
            )
            assert resp.status == 201

        resp = await client.get("/v1/values/unsynced")
        data = await resp.json()
        assert [v["id"] for v in data["values"]] == ["v2", "v1", "v0"]
        assert data["values"][0]["payload"] is True

        resp = await client.get("/v1/values/unsynced/counts")
        assert (await resp.json())["nodes"][0]["unsynced_count"] == 3

        resp = await client.post("/v1/values/sync", json={"value_ids": ["v0", "v1"]})
        assert (await resp.json())["synced"] == 2

        resp = await client.get("/v1/values/unsynced", params={"limit": "10"})
        assert [v["id"] for v in (await resp.json())["values"]] == ["v2"]

    @pytest.mark.asyncio
    async def test_value_requires_payload(self, client):
        await create_tree(client)
        resp = await client.post("/v1/ports/pt-in/values", json={"timestamp": 1})
        assert resp.status == 400


class TestServiceEndpoints:
    """Tests for health and CORS."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/v1/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["healthy"] is True
        assert data["stats"]["nodes"] == {"total": 0, "alive": 0}

    @pytest.mark.asyncio
    async def test_cors_allowed_origin(self, client):
        resp = await client.get("/v1/health", headers={"Origin": "http://console.local"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://console.local"

    @pytest.mark.asyncio
    async def test_cors_other_origin(self, client):
        resp = await client.get("/v1/health", headers={"Origin": "http://evil.local"})
        assert "Access-Control-Allow-Origin" not in resp.headers

    @pytest.mark.asyncio
    async def test_cors_on_error_response(self, client):
        resp = await client.get("/v1/nodes/missing", headers={"Origin": "http://console.local"})
        assert resp.status == 404
        assert resp.headers["Access-Control-Allow-Origin"] == "http://console.local"

    @pytest.mark.asyncio
    async def test_preflight(self, client):
        resp = await client.options("/v1/nodes", headers={"Origin": "http://console.local"})
        assert resp.status == 200
        assert "PUT" in resp.headers["Access-Control-Allow-Methods"]
