"""
TopoDB Server - hierarchical, graph-augmented metadata and time-series store.

This package implements a store for IoT-style topologies built on:
- Nodes (networks, devices, points) forming a forest via parent links
- Ports owned by nodes, connected by directed Edges
- Time-stamped Values recorded on ports
- Searchable key/value Tags on nodes
- SQLite as the keyed storage and indexing substrate

Architecture:
    ┌─────────────┐     ┌─────────────┐
    │   Client    │────▶│ HTTP server │
    └─────────────┘     └──────┬──────┘
                               │
                        ┌──────▼──────┐
                        │  Servicer   │
                        └──────┬──────┘
              ┌────────────────┼─────────────────┐
              ▼                ▼                 ▼
       ┌────────────┐   ┌────────────┐    ┌────────────┐
       │  Cascade   │   │ Hierarchy  │    │    Tag     │
       │   Engine   │   │   Query    │    │   Query    │
       └─────┬──────┘   └─────┬──────┘    └─────┬──────┘
             └────────────────┼─────────────────┘
                              ▼
                       ┌────────────┐
                       │Entity Store│
                       │  (SQLite)  │
                       └────────────┘

Invariants:
    - Parent links never form a cycle
    - Every port, edge endpoint and tag references an existing record
    - Hard deletes cascade structurally through foreign keys
    - The alive flag is only changed by the cascade engine
    - A cascade commits atomically or not at all

How to change safely:
    - Schema changes must keep the index layout the queries rely on
    - New entity kinds need their own cascade step and tests
"""

from ._version import __version__

__all__ = ["__version__"]
