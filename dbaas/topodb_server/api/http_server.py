"""
HTTP server implementation for TopoDB.

This module provides the REST API over TopoDBServicer. It's useful for:
- Manual testing and debugging
- Collectors and dashboards that speak plain HTTP/JSON

Invariants:
    - Handlers only translate HTTP <-> servicer calls
    - TopoDbError codes map to fixed HTTP statuses
    - JSON request/response format

How to change safely:
    - Version the API if breaking changes are needed
    - Keep the error body shape stable for clients
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..config import HttpConfig
from ..errors import InvalidArgumentError, TopoDbError
from .servicer import TopoDBServicer

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "NOT_FOUND": 404,
    "INVALID_ARGUMENT": 400,
    "CONFLICT": 409,
    "STORAGE_FAILURE": 500,
}


def create_http_app(
    servicer: TopoDBServicer,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create an HTTP application for TopoDB.

    Args:
        servicer: TopoDBServicer instance
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()

    # Nodes
    app.router.add_post("/v1/nodes", lambda r: handle_create_node(r, servicer))
    app.router.add_get("/v1/nodes/{node_id}", lambda r: handle_get_node(r, servicer))
    app.router.add_delete("/v1/nodes/{node_id}", lambda r: handle_delete_node(r, servicer))
    app.router.add_post("/v1/nodes/{node_id}/move", lambda r: handle_move_node(r, servicer))
    app.router.add_put("/v1/nodes/{node_id}/alive", lambda r: handle_set_alive(r, servicer))
    app.router.add_get("/v1/nodes/{node_id}/subtree", lambda r: handle_subtree(r, servicer))
    app.router.add_get("/v1/nodes/{node_id}/ancestors", lambda r: handle_ancestors(r, servicer))
    app.router.add_post("/v1/nodes/{node_id}/ports", lambda r: handle_create_port(r, servicer))
    app.router.add_post("/v1/nodes/{node_id}/tags", lambda r: handle_add_tag(r, servicer))
    app.router.add_delete("/v1/nodes/{node_id}/tags", lambda r: handle_remove_tag(r, servicer))

    # Ports, edges, values
    app.router.add_put("/v1/ports/{port_id}/alive", lambda r: handle_set_port_alive(r, servicer))
    app.router.add_delete("/v1/ports/{port_id}", lambda r: handle_delete_port(r, servicer))
    app.router.add_post("/v1/ports/{port_id}/values", lambda r: handle_append_value(r, servicer))
    app.router.add_post("/v1/edges", lambda r: handle_create_edge(r, servicer))
    app.router.add_delete("/v1/edges/{edge_id}", lambda r: handle_delete_edge(r, servicer))
    app.router.add_get("/v1/values/unsynced", lambda r: handle_unsynced_values(r, servicer))
    app.router.add_get(
        "/v1/values/unsynced/counts", lambda r: handle_unsynced_counts(r, servicer)
    )
    app.router.add_post("/v1/values/sync", lambda r: handle_mark_synced(r, servicer))

    # Search and health
    app.router.add_get("/v1/tags/search", lambda r: handle_tag_search(r, servicer))
    app.router.add_get("/v1/health", lambda r: handle_health(r, servicer))

    # Add CORS middleware
    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Trace-ID"

        return response

    # Outermost, so error responses carry CORS headers too
    app.middlewares.append(cors_middleware)

    # Add error handler
    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except TopoDbError as e:
            status = STATUS_BY_CODE.get(e.code, 500)
            if status >= 500:
                logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(e.to_dict(), status=status)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.append(error_middleware)

    return app


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body.

    Raises:
        web.HTTPBadRequest: If the body is not a JSON object
    """
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object"}),
            content_type="application/json",
        )
    return body


def query_int(request: web.Request, name: str, default: int | None = None) -> int | None:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidArgumentError(f"{name} must be an integer, got '{raw}'", argument=name)


def parse_tag_predicates(raw: list[str]) -> list[tuple[str, str]]:
    """Parse repeated ``tag=key:value`` query parameters."""
    predicates = []
    for item in raw:
        key, sep, value = item.partition(":")
        if not sep:
            raise InvalidArgumentError(
                f"tag must be formatted key:value, got '{item}'", argument="tag"
            )
        predicates.append((key, value))
    return predicates


async def handle_create_node(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle POST /v1/nodes - Create node."""
    result = await servicer.create_node(await read_json(request))
    return web.json_response(result, status=201)


async def handle_get_node(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle GET /v1/nodes/{node_id} - Node with its ports and tags."""
    result = await servicer.get_node(request.match_info["node_id"])
    return web.json_response(result)


async def handle_delete_node(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle DELETE /v1/nodes/{node_id} - Hard delete node and subtree."""
    result = await servicer.hard_delete_node(request.match_info["node_id"])
    return web.json_response(result)


async def handle_move_node(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle POST /v1/nodes/{node_id}/move - Re-parent node."""
    result = await servicer.move_node(request.match_info["node_id"], await read_json(request))
    return web.json_response(result)


async def handle_set_alive(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle PUT /v1/nodes/{node_id}/alive - Soft delete or restore subtree."""
    result = await servicer.set_alive(request.match_info["node_id"], await read_json(request))
    return web.json_response(result)


async def handle_subtree(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle GET /v1/nodes/{node_id}/subtree?depth=N - Level-by-level descendants."""
    depth = query_int(request, "depth", default=1)
    result = await servicer.get_subtree(request.match_info["node_id"], depth)
    return web.json_response(result)


async def handle_ancestors(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle GET /v1/nodes/{node_id}/ancestors - Parent chain."""
    result = await servicer.get_ancestors(request.match_info["node_id"])
    return web.json_response(result)


async def handle_create_port(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle POST /v1/nodes/{node_id}/ports - Create port."""
    result = await servicer.create_port(request.match_info["node_id"], await read_json(request))
    return web.json_response(result, status=201)


async def handle_add_tag(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle POST /v1/nodes/{node_id}/tags - Add tag."""
    result = await servicer.add_tag(request.match_info["node_id"], await read_json(request))
    return web.json_response(result, status=201)


async def handle_remove_tag(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle DELETE /v1/nodes/{node_id}/tags - Remove tag."""
    result = await servicer.remove_tag(request.match_info["node_id"], await read_json(request))
    return web.json_response(result)


async def handle_set_port_alive(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle PUT /v1/ports/{port_id}/alive - Soft delete or restore port."""
    result = await servicer.set_port_alive(
        request.match_info["port_id"], await read_json(request)
    )
    return web.json_response(result)


async def handle_delete_port(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle DELETE /v1/ports/{port_id} - Hard delete port."""
    result = await servicer.hard_delete_port(request.match_info["port_id"])
    return web.json_response(result)


async def handle_append_value(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle POST /v1/ports/{port_id}/values - Record observation."""
    result = await servicer.append_value(request.match_info["port_id"], await read_json(request))
    return web.json_response(result, status=201)


async def handle_create_edge(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle POST /v1/edges - Create edge."""
    result = await servicer.create_edge(await read_json(request))
    return web.json_response(result, status=201)


async def handle_delete_edge(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle DELETE /v1/edges/{edge_id} - Hard delete edge."""
    result = await servicer.hard_delete_edge(request.match_info["edge_id"])
    return web.json_response(result)


async def handle_unsynced_values(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle GET /v1/values/unsynced - Unsynced values, newest first."""
    result = await servicer.unsynced_values(
        since_ms=query_int(request, "since_ms"),
        limit=query_int(request, "limit", default=1000),
    )
    return web.json_response(result)


async def handle_unsynced_counts(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle GET /v1/values/unsynced/counts - Unsynced count per node."""
    result = await servicer.unsynced_counts(limit=query_int(request, "limit", default=100))
    return web.json_response(result)


async def handle_mark_synced(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle POST /v1/values/sync - Mark values synced."""
    result = await servicer.mark_synced(await read_json(request))
    return web.json_response(result)


async def handle_tag_search(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle GET /v1/tags/search?tag=k:v&tag=k2:v2&has_key=k3 - Tag search."""
    required = parse_tag_predicates(request.query.getall("tag", []))
    include_nodes = request.query.get("include_nodes", "false").lower() == "true"
    result = await servicer.find_by_tags(
        required,
        optional_key=request.query.get("has_key"),
        include_nodes=include_nodes,
    )
    return web.json_response(result)


async def handle_health(request: web.Request, servicer: TopoDBServicer) -> web.Response:
    """Handle GET /v1/health - Health check."""
    result = await servicer.health()
    status = 200 if result.get("healthy") else 503
    return web.json_response(result, status=status)


async def run_http_server(
    servicer: TopoDBServicer,
    config: HttpConfig | None = None,
) -> None:
    """Run the HTTP server until cancelled.

    Args:
        servicer: TopoDBServicer instance
        config: HTTP server configuration
    """
    config = config or HttpConfig()
    app = create_http_app(servicer, config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"HTTP server running on http://{config.host}:{config.port}")

    # Keep running until cancelled
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()
