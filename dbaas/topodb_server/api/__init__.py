"""
API module for TopoDB server.

This module provides the external interface:
- Service layer shared by every transport
- HTTP server (REST API under /v1)

Invariants:
    - Transports never touch the store directly
    - Soft delete and restore go through the cascade engine

How to change safely:
    - Add new endpoints, don't change the meaning of existing ones
    - HTTP endpoints should match servicer semantics
"""

from .http_server import create_http_app, run_http_server
from .servicer import TopoDBServicer

__all__ = [
    "TopoDBServicer",
    "create_http_app",
    "run_http_server",
]
