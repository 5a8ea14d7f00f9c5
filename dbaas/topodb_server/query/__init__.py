"""
Query module for TopoDB - read paths over the entity store.

This module handles:
- Bounded-depth subtree retrieval (level by level)
- Multi-predicate tag search

Invariants:
    - Queries only return alive records
    - Queries never take the cascade locks; they read committed data
"""

from .hierarchy import HierarchyQueryEngine
from .tags import TagQueryEngine

__all__ = ["HierarchyQueryEngine", "TagQueryEngine"]
