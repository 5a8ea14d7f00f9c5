"""
Cascade module for TopoDB - soft delete and restore propagation.

This module handles:
- The cascade consistency engine (node and port cascades)
- Per-root advisory locks that serialize overlapping cascades

Invariants:
    - A cascade commits atomically or rolls back completely
    - Overlapping cascades never run at the same time
    - Re-running a settled cascade is a no-op
"""

from .engine import CascadeEngine, CascadeResult
from .locks import SubtreeLockManager

__all__ = [
    "CascadeEngine",
    "CascadeResult",
    "SubtreeLockManager",
]
