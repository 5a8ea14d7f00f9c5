"""
Record types for the TopoDB entity store.

Nodes form a forest through parent_id; ports hang off nodes; edges join
two ports; values are observations on a port; tags annotate nodes.
Every record carries an ``alive`` flag that only the cascade engine flips,
and ``deleted_at`` (Unix ms) recording when it was soft-deleted.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class NodeType(Enum):
    """Hierarchy level of a node."""

    NETWORK = "network"
    DEVICE = "device"
    POINT = "point"


class PortDirection(Enum):
    """Direction of a port."""

    INPUT = "input"
    OUTPUT = "output"


@dataclass
class Node:
    """A hierarchical entity.

    Attributes:
        id: Node identifier
        type: Hierarchy level
        parent_id: Parent node, None for roots
        name: Display name
        description: Free text
        alive: Logical presence flag
        deleted_at: Soft-delete timestamp (Unix ms)
    """

    id: str
    type: NodeType
    parent_id: str | None
    name: str
    description: str | None = None
    alive: bool = True
    deleted_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class Port:
    """A directional connection point owned by exactly one node."""

    id: str
    node_id: str
    direction: PortDirection
    name: str
    description: str | None = None
    alive: bool = True
    deleted_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction.value
        return data


@dataclass
class Edge:
    """A directed link between two ports."""

    id: str
    from_port_id: str
    to_port_id: str
    description: str | None = None
    alive: bool = True
    deleted_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Value:
    """A time-stamped observation on a port.

    Attributes:
        id: Value identifier
        port_id: Owning port
        timestamp: Observation time (Unix ms)
        payload: Numeric, text, boolean or structured (dict/list) payload.
            Integers are stored as double precision and read back as float.
        synced: Whether the value was pushed upstream
        synced_at: When it was marked synced (Unix ms)
        alive: Logical presence flag
        deleted_at: Soft-delete timestamp (Unix ms)
    """

    id: str
    port_id: str
    timestamp: int
    payload: Any
    synced: bool = False
    synced_at: int | None = None
    alive: bool = True
    deleted_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Tag:
    """A searchable key/value annotation. Identity is (node_id, key, value)."""

    node_id: str
    key: str
    value: str = ""
    alive: bool = True
    deleted_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NodeAtLevel:
    """A subtree query row: a node and its distance from the query root."""

    id: str
    name: str
    type: NodeType
    description: str | None
    level: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
            "level": self.level,
        }


@dataclass
class ScanPage:
    """One page of an indexed range scan.

    Attributes:
        rows: Rows as dicts keyed by column name, in index order
        next_token: Continuation token, None on the last page
    """

    rows: list[dict[str, Any]] = field(default_factory=list)
    next_token: str | None = None
