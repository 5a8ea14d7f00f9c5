"""
Store module for TopoDB - keyed records and secondary indexes.

This module handles:
- Record types for nodes, ports, edges, values and tags
- The SQLite entity store with its write path
- Indexed range scans with continuation tokens
- Atomic multi-row transactions

Invariants:
    - Foreign keys cascade hard deletes structurally
    - All writes are single transactions
    - Parent links never form a cycle
"""

from .entity_store import INDEXES, EntityStore, StoreTransaction
from .models import Edge, Node, NodeAtLevel, NodeType, Port, PortDirection, ScanPage, Tag, Value

__all__ = [
    "INDEXES",
    "EntityStore",
    "StoreTransaction",
    "Edge",
    "Node",
    "NodeAtLevel",
    "NodeType",
    "Port",
    "PortDirection",
    "ScanPage",
    "Tag",
    "Value",
]
