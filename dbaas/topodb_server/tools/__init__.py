"""
CLI tools for TopoDB.

This module provides command-line tools for:
- Populating a database with a synthetic topology
"""

from .populate import Populator, PopulateStats, populate

__all__ = ["Populator", "PopulateStats", "populate"]
