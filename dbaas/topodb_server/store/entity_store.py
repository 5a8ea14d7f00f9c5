"""
SQLite entity store for TopoDB.

This module manages the SQLite database that stores:
- Nodes forming a forest via parent_id
- Ports owned by nodes
- Port values (time-series observations)
- Edges between ports
- Tags on nodes

The store is the keyed storage and indexing substrate the engines build on:
point lookup by key, indexed range scan with continuation tokens, and
atomic multi-row writes through StoreTransaction.

Invariants:
    - All foreign keys are ON DELETE CASCADE, so a hard delete of a node
      structurally removes its subtree, ports, values, edges and tags
    - Every write runs in a single BEGIN IMMEDIATE transaction
    - Parent assignments never create a cycle
    - New records inherit the alive state of their owner

How to change safely:
    - Keep the (owner, alive) index layout; the cascade and queries scan it
    - Schema migrations must be backward compatible
    - Use transactions for all write operations

Table schema:
    nodes:        id, type, parent_id, name, description, alive, deleted_at
    ports:        id, node_id, port_type, name, description, alive, deleted_at
    port_values:  id, port_id, timestamp, value_numeric, value_text,
                  value_boolean, value_json, is_synced, last_synced,
                  alive, deleted_at
    edges:        id, from_port_id, to_port_id, description, alive, deleted_at
    tags:         node_id, tag_key, tag_value, alive, deleted_at
                  PRIMARY KEY (node_id, tag_key, tag_value)
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import (
    CycleError,
    InvalidArgumentError,
    NotFoundError,
    StorageFailureError,
)
from .models import Edge, Node, NodeType, Port, PortDirection, ScanPage, Tag, Value

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
IN_CHUNK_SIZE = 500


@dataclass(frozen=True)
class IndexDef:
    """A secondary index that can be range-scanned.

    Attributes:
        table: Table the index belongs to
        columns: Indexed columns, in index order
        key: Primary key columns appended to make the sort order total
    """

    table: str
    columns: tuple[str, ...]
    key: tuple[str, ...]

    @property
    def sort_columns(self) -> tuple[str, ...]:
        return self.columns + tuple(c for c in self.key if c not in self.columns)


INDEXES: dict[str, IndexDef] = {
    "nodes_by_parent": IndexDef("nodes", ("parent_id", "alive"), ("id",)),
    "ports_by_node": IndexDef("ports", ("node_id", "alive"), ("id",)),
    "values_by_port": IndexDef("port_values", ("port_id", "alive"), ("id",)),
    "edges_by_from_port": IndexDef("edges", ("from_port_id", "alive"), ("id",)),
    "edges_by_to_port": IndexDef("edges", ("to_port_id", "alive"), ("id",)),
    "tags_by_node": IndexDef("tags", ("node_id", "alive"), ("tag_key", "tag_value")),
    "tags_by_key_value": IndexDef(
        "tags", ("tag_key", "tag_value", "alive", "node_id"), ("node_id", "tag_key", "tag_value")
    ),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return str(uuid.uuid4())


def _chunks(items: list[str], size: int = IN_CHUNK_SIZE) -> Iterator[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _placeholders(n: int) -> str:
    return ", ".join("?" * n)


def encode_token(sort_key: Iterable[Any]) -> str:
    """Encode the sort key of the last row of a page as an opaque token."""
    raw = json.dumps(list(sort_key), separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_token(token: str) -> list[Any]:
    """Decode a continuation token.

    Raises:
        InvalidArgumentError: If the token is malformed
    """
    try:
        value = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidArgumentError(f"Malformed continuation token: {e}", argument="after")
    if not isinstance(value, list):
        raise InvalidArgumentError("Malformed continuation token", argument="after")
    return value


def _sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value


def scan_page(
    conn: sqlite3.Connection,
    index: str,
    prefix: tuple[Any, ...],
    after: str | None,
    limit: int,
) -> ScanPage:
    """Read one page of an index range scan.

    Args:
        conn: Database connection
        index: Name of an entry in INDEXES
        prefix: Values for the leading index columns (at least one)
        after: Continuation token from the previous page
        limit: Maximum rows to return

    Returns:
        ScanPage ordered by index columns then primary key
    """
    idx = INDEXES.get(index)
    if idx is None:
        raise InvalidArgumentError(f"Unknown index: {index}", argument="index")
    if not prefix or len(prefix) > len(idx.columns):
        raise InvalidArgumentError(
            f"Prefix for {index} must cover 1..{len(idx.columns)} columns", argument="prefix"
        )
    if limit <= 0:
        raise InvalidArgumentError("Scan limit must be positive", argument="limit")

    sort_cols = idx.sort_columns
    bound = [_sql_value(v) for v in prefix]
    where = [f"{col} IS ?" for col in idx.columns[: len(prefix)]]
    params: list[Any] = list(bound)
    rest = sort_cols[len(prefix) :]

    if after is not None:
        last = decode_token(after)
        if len(last) != len(sort_cols) or last[: len(prefix)] != bound:
            raise InvalidArgumentError(
                f"Continuation token does not belong to this scan of {index}", argument="after"
            )
        if not rest:
            return ScanPage()
        where.append(f"({', '.join(rest)}) > ({_placeholders(len(rest))})")
        params.extend(last[len(prefix) :])

    cursor = conn.execute(
        f"SELECT * FROM {idx.table} WHERE {' AND '.join(where)} "
        f"ORDER BY {', '.join(sort_cols)} LIMIT ?",
        (*params, limit + 1),
    )
    rows = [dict(row) for row in cursor.fetchall()]

    next_token = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_token = encode_token(rows[-1][c] for c in sort_cols)
    return ScanPage(rows=rows, next_token=next_token)


def _row_to_node(row: Any) -> Node:
    return Node(
        id=row["id"],
        type=NodeType(row["type"]),
        parent_id=row["parent_id"],
        name=row["name"],
        description=row["description"],
        alive=bool(row["alive"]),
        deleted_at=row["deleted_at"],
    )


def _row_to_port(row: Any) -> Port:
    return Port(
        id=row["id"],
        node_id=row["node_id"],
        direction=PortDirection(row["port_type"]),
        name=row["name"],
        description=row["description"],
        alive=bool(row["alive"]),
        deleted_at=row["deleted_at"],
    )


def _row_to_edge(row: Any) -> Edge:
    return Edge(
        id=row["id"],
        from_port_id=row["from_port_id"],
        to_port_id=row["to_port_id"],
        description=row["description"],
        alive=bool(row["alive"]),
        deleted_at=row["deleted_at"],
    )


def _row_to_value(row: Any) -> Value:
    if row["value_json"] is not None:
        payload: Any = json.loads(row["value_json"])
    elif row["value_boolean"] is not None:
        payload = bool(row["value_boolean"])
    elif row["value_numeric"] is not None:
        payload = row["value_numeric"]
    else:
        payload = row["value_text"]

    return Value(
        id=row["id"],
        port_id=row["port_id"],
        timestamp=row["timestamp"],
        payload=payload,
        synced=bool(row["is_synced"]),
        synced_at=row["last_synced"],
        alive=bool(row["alive"]),
        deleted_at=row["deleted_at"],
    )


def _row_to_tag(row: Any) -> Tag:
    return Tag(
        node_id=row["node_id"],
        key=row["tag_key"],
        value=row["tag_value"],
        alive=bool(row["alive"]),
        deleted_at=row["deleted_at"],
    )


def _ancestor_ids(conn: sqlite3.Connection, node_id: str) -> list[str]:
    chain: list[str] = []
    seen = {node_id}
    current = node_id
    while True:
        row = conn.execute("SELECT parent_id FROM nodes WHERE id = ?", (current,)).fetchone()
        if row is None or row["parent_id"] is None or row["parent_id"] in seen:
            return chain
        current = row["parent_id"]
        seen.add(current)
        chain.append(current)


def _payload_columns(payload: Any) -> tuple[float | None, str | None, int | None, str | None]:
    """Map a payload to (numeric, text, boolean, json) columns."""
    if isinstance(payload, bool):
        return None, None, int(payload), None
    if isinstance(payload, (int, float)):
        try:
            return float(payload), None, None, None
        except OverflowError:
            raise InvalidArgumentError(
                "Numeric payload is out of range for a double", argument="payload"
            )
    if isinstance(payload, str):
        return None, payload, None, None
    if isinstance(payload, (dict, list)):
        return None, None, None, json.dumps(payload)
    raise InvalidArgumentError(
        f"Unsupported payload type: {type(payload).__name__}", argument="payload"
    )


def _coerce_enum(enum_cls: Any, value: Any, argument: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidArgumentError(
            f"Invalid {argument} '{value}'. Must be one of: {allowed}", argument=argument
        )



def _validate_tag(key: Any, value: Any) -> None:
    if not isinstance(key, str) or not key:
        raise InvalidArgumentError("Tag key must be a non-empty string", argument="key")
    if not isinstance(value, str):
        raise InvalidArgumentError("Tag value must be a string", argument="value")


def _insert_tag(tx: StoreTransaction, node_id: str, key: str, value: str, alive: bool) -> None:
    tx.conn.execute(
        """
        INSERT INTO tags (node_id, tag_key, tag_value, alive, deleted_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT DO NOTHING
        """,
        (node_id, key, value, int(alive), None if alive else tx.now_ms),
    )


class StoreTransaction:
    """Atomic multi-row write scope over one SQLite connection.

    Obtained from EntityStore.transaction(); everything done through it
    commits together or is rolled back together.
    """

    def __init__(self, conn: sqlite3.Connection, page_size: int) -> None:
        self.conn = conn
        self.page_size = page_size
        self.now_ms = _now_ms()

    def get_node(self, node_id: str) -> Node | None:
        row = self.conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
        return _row_to_node(row) if row else None

    def get_port(self, port_id: str) -> Port | None:
        row = self.conn.execute("SELECT * FROM ports WHERE id = ?", (port_id,)).fetchone()
        return _row_to_port(row) if row else None

    def require_node(self, node_id: str) -> Node:
        node = self.get_node(node_id)
        if node is None:
            raise NotFoundError(f"Node not found: {node_id}", "node", node_id)
        return node

    def require_port(self, port_id: str) -> Port:
        port = self.get_port(port_id)
        if port is None:
            raise NotFoundError(f"Port not found: {port_id}", "port", port_id)
        return port

    def ancestor_ids(self, node_id: str) -> list[str]:
        """Parent chain of a node, nearest first (the node itself excluded)."""
        return _ancestor_ids(self.conn, node_id)

    def iter_scan(self, index: str, prefix: tuple[Any, ...]) -> Iterator[dict[str, Any]]:
        """Walk every page of an index range scan inside this transaction."""
        token = None
        while True:
            page = scan_page(self.conn, index, prefix, token, self.page_size)
            yield from page.rows
            if page.next_token is None:
                return
            token = page.next_token

    def set_alive(self, table: str, record_id: str, target: bool) -> bool:
        """Flip the alive flag of one nodes/ports row. Returns whether it changed."""
        if table not in ("nodes", "ports"):
            raise InvalidArgumentError(f"Cannot set alive on {table} by id", argument="table")
        cursor = self.conn.execute(
            f"UPDATE {table} SET alive = ?, deleted_at = ? WHERE id = ? AND alive = ?",
            (int(target), None if target else self.now_ms, record_id, int(not target)),
        )
        return cursor.rowcount > 0

    def set_alive_by(self, index: str, owner_id: str, target: bool) -> int:
        """Flip every row under owner_id in an (owner, alive) index.

        Only rows whose alive flag differs from target are touched.

        Returns:
            Number of rows changed
        """
        idx = INDEXES.get(index)
        if idx is None or len(idx.columns) != 2 or idx.columns[1] != "alive":
            raise InvalidArgumentError(f"{index} is not an (owner, alive) index", argument="index")
        cursor = self.conn.execute(
            f"UPDATE {idx.table} SET alive = ?, deleted_at = ? "
            f"WHERE {idx.columns[0]} = ? AND alive = ?",
            (int(target), None if target else self.now_ms, owner_id, int(not target)),
        )
        return cursor.rowcount


class EntityStore:
    """SQLite store for nodes, ports, edges, values and tags.

    This class provides:
    - Schema creation
    - Write path (create/move/tag/append/hard delete)
    - Point lookups and indexed range scans
    - Atomic multi-row transactions for the cascade engine

    Thread safety:
        Each operation opens its own connection. Writers are serialized
        by an asyncio lock; readers run concurrently and see committed
        data only.

    Example:
        >>> store = EntityStore("/var/lib/topodb")
        >>> await store.initialize()
        >>> net = await store.create_node(NodeType.NETWORK, "Network-1")
        >>> dev = await store.create_node(NodeType.DEVICE, "Device-1", parent_id=net.id)
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "topodb.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        scan_page_size: int = 500,
    ) -> None:
        """Initialize the entity store.

        Args:
            data_dir: Directory for the SQLite database file
            db_filename: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            scan_page_size: Default page size for range scans
        """
        self.data_dir = Path(data_dir)
        self.db_filename = db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.scan_page_size = scan_page_size
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection.

        Args:
            create: Whether to create the database if it doesn't exist

        Yields:
            SQLite connection

        Raises:
            StorageFailureError: If the database doesn't exist and create=False
        """
        if not create and not self.db_path.exists():
            raise StorageFailureError(
                f"Database not initialized: {self.db_path}", operation="connect"
            )

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA recursive_triggers = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def _read(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Connection for a read, with sqlite errors mapped to StorageFailureError."""
        try:
            with self._get_connection() as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Storage read failed: {e}", extra={"operation": operation})
            raise StorageFailureError(str(e), operation=operation) from e

    @asynccontextmanager
    async def transaction(self, operation: str = "write") -> AsyncIterator[StoreTransaction]:
        """Open an atomic write transaction.

        Commits when the block exits normally. Any exception, including
        task cancellation, rolls everything back before propagating.

        Args:
            operation: Name used in logs and errors

        Yields:
            StoreTransaction bound to the open connection

        Raises:
            StorageFailureError: If SQLite fails at any point
        """
        async with self._write_lock:
            with self._get_connection() as conn:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    yield StoreTransaction(conn, self.scan_page_size)
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    logger.error(
                        f"Storage write failed, rolled back: {e}",
                        extra={"operation": operation},
                    )
                    raise StorageFailureError(str(e), operation=operation) from e
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS nodes (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                parent_id TEXT REFERENCES nodes(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                description TEXT,
                alive INTEGER NOT NULL DEFAULT 1,
                deleted_at INTEGER
            );

            CREATE TABLE IF NOT EXISTS ports (
                id TEXT PRIMARY KEY,
                node_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
                port_type TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                alive INTEGER NOT NULL DEFAULT 1,
                deleted_at INTEGER
            );

            CREATE TABLE IF NOT EXISTS port_values (
                id TEXT PRIMARY KEY,
                port_id TEXT NOT NULL REFERENCES ports(id) ON DELETE CASCADE,
                timestamp INTEGER NOT NULL,
                value_numeric REAL,
                value_text TEXT,
                value_boolean INTEGER,
                value_json TEXT,
                is_synced INTEGER NOT NULL DEFAULT 0,
                last_synced INTEGER,
                alive INTEGER NOT NULL DEFAULT 1,
                deleted_at INTEGER
            );

            CREATE TABLE IF NOT EXISTS edges (
                id TEXT PRIMARY KEY,
                from_port_id TEXT NOT NULL REFERENCES ports(id) ON DELETE CASCADE,
                to_port_id TEXT NOT NULL REFERENCES ports(id) ON DELETE CASCADE,
                description TEXT,
                alive INTEGER NOT NULL DEFAULT 1,
                deleted_at INTEGER
            );

            CREATE TABLE IF NOT EXISTS tags (
                node_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
                tag_key TEXT NOT NULL,
                tag_value TEXT NOT NULL DEFAULT '',
                alive INTEGER NOT NULL DEFAULT 1,
                deleted_at INTEGER,
                PRIMARY KEY (node_id, tag_key, tag_value)
            );

            -- Ownership indexes, scanned by the cascade and hierarchy queries
            CREATE INDEX IF NOT EXISTS idx_nodes_parent_alive ON nodes(parent_id, alive);
            CREATE INDEX IF NOT EXISTS idx_ports_node_alive ON ports(node_id, alive);
            CREATE INDEX IF NOT EXISTS idx_port_values_port_alive ON port_values(port_id, alive);
            CREATE INDEX IF NOT EXISTS idx_edges_from_port_alive ON edges(from_port_id, alive);
            CREATE INDEX IF NOT EXISTS idx_edges_to_port_alive ON edges(to_port_id, alive);
            CREATE INDEX IF NOT EXISTS idx_tags_node_alive ON tags(node_id, alive);

            -- Tag search
            CREATE INDEX IF NOT EXISTS idx_tags_key_value_alive_node
                ON tags(tag_key, tag_value, alive, node_id);

            -- Time-series reads
            CREATE INDEX IF NOT EXISTS idx_port_values_unsynced
                ON port_values(is_synced, timestamp);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._write_lock:
            try:
                with self._get_connection(create=True) as conn:
                    self._create_schema(conn)
            except sqlite3.Error as e:
                raise StorageFailureError(str(e), operation="initialize") from e
        logger.info(f"Initialized database: {self.db_path}")

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def scan(
        self,
        index: str,
        prefix: tuple[Any, ...],
        after: str | None = None,
        limit: int | None = None,
    ) -> ScanPage:
        """Read one page of an indexed range scan.

        Args:
            index: Index name (see INDEXES)
            prefix: Values for the leading index columns
            after: Continuation token from a previous page
            limit: Page size (defaults to scan_page_size)

        Returns:
            ScanPage with rows in index order and the next token
        """
        with self._read("scan") as conn:
            return scan_page(conn, index, prefix, after, limit or self.scan_page_size)

    async def iter_scan(
        self,
        index: str,
        prefix: tuple[Any, ...],
        page_size: int | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Lazily yield every row of an indexed range scan.

        Pages are fetched on demand; iterating again restarts from the
        first row.
        """
        token = None
        while True:
            page = await self.scan(index, prefix, after=token, limit=page_size)
            for row in page.rows:
                yield row
            if page.next_token is None:
                return
            token = page.next_token

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def create_node(
        self,
        node_type: NodeType | str,
        name: str,
        parent_id: str | None = None,
        description: str | None = None,
        node_id: str | None = None,
        tags: Iterable[tuple[str, str]] | None = None,
    ) -> Node:
        """Create a node, optionally with its initial tags.

        Args:
            node_type: network, device or point
            name: Display name
            parent_id: Parent node (None for a root)
            description: Free text
            node_id: Optional specific id (generated if not provided)
            tags: (key, value) pairs written in the same transaction

        Returns:
            Created Node

        Raises:
            NotFoundError: If the parent doesn't exist
            InvalidArgumentError: If the type is unknown, the id is taken
                or a tag is malformed; nothing is written
        """
        node_type = _coerce_enum(NodeType, node_type, "type")
        node_id = node_id or _new_id()
        tag_pairs = list(tags or ())
        for key, value in tag_pairs:
            _validate_tag(key, value)

        async with self.transaction("create_node") as tx:
            if tx.get_node(node_id) is not None:
                raise InvalidArgumentError(f"Node already exists: {node_id}", argument="id")
            alive = True
            if parent_id is not None:
                alive = tx.require_node(parent_id).alive

            tx.conn.execute(
                """
                INSERT INTO nodes (id, type, parent_id, name, description, alive, deleted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    node_id,
                    node_type.value,
                    parent_id,
                    name,
                    description,
                    int(alive),
                    None if alive else tx.now_ms,
                ),
            )
            for key, value in tag_pairs:
                _insert_tag(tx, node_id, key, value, alive)

        logger.debug(
            "Created node",
            extra={"node_id": node_id, "type": node_type.value, "parent_id": parent_id},
        )

        return Node(
            id=node_id,
            type=node_type,
            parent_id=parent_id,
            name=name,
            description=description,
            alive=alive,
            deleted_at=None if alive else tx.now_ms,
        )

    async def move_node(self, node_id: str, new_parent_id: str | None) -> Node:
        """Re-parent a node.

        Raises:
            NotFoundError: If the node or the new parent doesn't exist
            CycleError: If new_parent_id is the node or one of its descendants
            InvalidArgumentError: If a live node would move under a dead parent
        """
        async with self.transaction("move_node") as tx:
            node = tx.require_node(node_id)
            if new_parent_id is not None:
                parent = tx.require_node(new_parent_id)
                if new_parent_id == node_id or node_id in tx.ancestor_ids(new_parent_id):
                    raise CycleError(node_id, new_parent_id)
                if node.alive and not parent.alive:
                    raise InvalidArgumentError(
                        f"Cannot move live node {node_id} under soft-deleted {new_parent_id}",
                        argument="parent_id",
                    )
            tx.conn.execute(
                "UPDATE nodes SET parent_id = ? WHERE id = ?", (new_parent_id, node_id)
            )

        node.parent_id = new_parent_id
        logger.debug("Moved node", extra={"node_id": node_id, "parent_id": new_parent_id})
        return node

    async def create_port(
        self,
        node_id: str,
        direction: PortDirection | str,
        name: str,
        description: str | None = None,
        port_id: str | None = None,
    ) -> Port:
        """Create a port owned by node_id."""
        direction = _coerce_enum(PortDirection, direction, "direction")
        port_id = port_id or _new_id()

        async with self.transaction("create_port") as tx:
            alive = tx.require_node(node_id).alive
            tx.conn.execute(
                """
                INSERT INTO ports (id, node_id, port_type, name, description, alive, deleted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    port_id,
                    node_id,
                    direction.value,
                    name,
                    description,
                    int(alive),
                    None if alive else tx.now_ms,
                ),
            )

        return Port(
            id=port_id,
            node_id=node_id,
            direction=direction,
            name=name,
            description=description,
            alive=alive,
            deleted_at=None if alive else tx.now_ms,
        )

    async def create_edge(
        self,
        from_port_id: str,
        to_port_id: str,
        description: str | None = None,
        edge_id: str | None = None,
    ) -> Edge:
        """Create a directed edge between two ports.

        The edge starts alive only if both endpoints are alive.
        """
        if from_port_id == to_port_id:
            raise InvalidArgumentError("Edge endpoints must differ", argument="to_port_id")
        edge_id = edge_id or _new_id()

        async with self.transaction("create_edge") as tx:
            alive = tx.require_port(from_port_id).alive and tx.require_port(to_port_id).alive
            tx.conn.execute(
                """
                INSERT INTO edges (id, from_port_id, to_port_id, description, alive, deleted_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    edge_id,
                    from_port_id,
                    to_port_id,
                    description,
                    int(alive),
                    None if alive else tx.now_ms,
                ),
            )

        return Edge(
            id=edge_id,
            from_port_id=from_port_id,
            to_port_id=to_port_id,
            description=description,
            alive=alive,
            deleted_at=None if alive else tx.now_ms,
        )

    async def add_tag(self, node_id: str, key: str, value: str = "") -> Tag:
        """Tag a node. Adding an existing (key, value) pair is a no-op."""
        _validate_tag(key, value)

        async with self.transaction("add_tag") as tx:
            alive = tx.require_node(node_id).alive
            _insert_tag(tx, node_id, key, value, alive)
            row = tx.conn.execute(
                "SELECT * FROM tags WHERE node_id = ? AND tag_key = ? AND tag_value = ?",
                (node_id, key, value),
            ).fetchone()

        return _row_to_tag(row)

    async def remove_tag(self, node_id: str, key: str, value: str = "") -> bool:
        """Hard-delete one tag row. Returns False if it didn't exist."""
        async with self.transaction("remove_tag") as tx:
            cursor = tx.conn.execute(
                "DELETE FROM tags WHERE node_id = ? AND tag_key = ? AND tag_value = ?",
                (node_id, key, value),
            )
            return cursor.rowcount > 0

    async def append_value(
        self,
        port_id: str,
        payload: Any,
        timestamp: int | None = None,
        value_id: str | None = None,
    ) -> Value:
        """Record an observation on a port.

        The payload type picks the storage column: bool, int/float, str,
        or dict/list (stored as JSON).
        """
        numeric, text, boolean, structured = _payload_columns(payload)
        value_id = value_id or _new_id()

        async with self.transaction("append_value") as tx:
            alive = tx.require_port(port_id).alive
            ts = timestamp if timestamp is not None else tx.now_ms
            tx.conn.execute(
                """
                INSERT INTO port_values (id, port_id, timestamp, value_numeric, value_text,
                                         value_boolean, value_json, alive, deleted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    value_id,
                    port_id,
                    ts,
                    numeric,
                    text,
                    boolean,
                    structured,
                    int(alive),
                    None if alive else tx.now_ms,
                ),
            )

        return Value(
            id=value_id,
            port_id=port_id,
            timestamp=ts,
            payload=payload,
            alive=alive,
            deleted_at=None if alive else tx.now_ms,
        )

    async def mark_synced(self, value_ids: list[str], synced_at: int | None = None) -> int:
        """Mark values as synced upstream.

        Returns:
            Number of values that were unsynced and are now synced
        """
        ids = list(dict.fromkeys(value_ids))
        if not ids:
            return 0

        changed = 0
        async with self.transaction("mark_synced") as tx:
            ts = synced_at if synced_at is not None else tx.now_ms
            for chunk in _chunks(ids):
                cursor = tx.conn.execute(
                    f"UPDATE port_values SET is_synced = 1, last_synced = ? "
                    f"WHERE is_synced = 0 AND id IN ({_placeholders(len(chunk))})",
                    (ts, *chunk),
                )
                changed += cursor.rowcount
        return changed

    async def _hard_delete(self, table: str, record_id: str) -> bool:
        async with self.transaction(f"hard_delete_{table}") as tx:
            cursor = tx.conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info("Hard deleted record", extra={"table": table, "id": record_id})
        return deleted

    async def hard_delete_node(self, node_id: str) -> bool:
        """Permanently delete a node, its subtree and everything they own.

        The subtree is collected level by level and removed deepest first,
        so each DELETE only cascades into the rows a node owns directly.
        """
        async with self.transaction("hard_delete_nodes") as tx:
            if tx.get_node(node_id) is None:
                return False

            ids = [node_id]
            level = [node_id]
            while level:
                children: list[str] = []
                for chunk in _chunks(level):
                    rows = tx.conn.execute(
                        f"SELECT id FROM nodes WHERE parent_id IN ({_placeholders(len(chunk))})",
                        chunk,
                    ).fetchall()
                    children.extend(row["id"] for row in rows)
                ids.extend(children)
                level = children

            for chunk in _chunks(ids[::-1]):
                tx.conn.execute(
                    f"DELETE FROM nodes WHERE id IN ({_placeholders(len(chunk))})", chunk
                )

        logger.info("Hard deleted subtree", extra={"node_id": node_id, "nodes": len(ids)})
        return True

    async def hard_delete_port(self, port_id: str) -> bool:
        """Permanently delete a port with its values and incident edges."""
        return await self._hard_delete("ports", port_id)

    async def hard_delete_edge(self, edge_id: str) -> bool:
        return await self._hard_delete("edges", edge_id)

    async def hard_delete_value(self, value_id: str) -> bool:
        return await self._hard_delete("port_values", value_id)

    # ------------------------------------------------------------------
    # Point lookups
    # ------------------------------------------------------------------

    async def get_node(self, node_id: str) -> Node | None:
        """Get a node by ID, alive or not."""
        with self._read("get_node") as conn:
            row = conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
            return _row_to_node(row) if row else None

    async def get_nodes(self, node_ids: list[str]) -> list[Node]:
        """Get several nodes, in the order requested. Unknown ids are skipped."""
        ids = list(dict.fromkeys(node_ids))
        found: dict[str, Node] = {}
        with self._read("get_nodes") as conn:
            for chunk in _chunks(ids):
                cursor = conn.execute(
                    f"SELECT * FROM nodes WHERE id IN ({_placeholders(len(chunk))})", chunk
                )
                for row in cursor.fetchall():
                    found[row["id"]] = _row_to_node(row)
        return [found[i] for i in ids if i in found]

    async def get_port(self, port_id: str) -> Port | None:
        with self._read("get_port") as conn:
            row = conn.execute("SELECT * FROM ports WHERE id = ?", (port_id,)).fetchone()
            return _row_to_port(row) if row else None

    async def get_edge(self, edge_id: str) -> Edge | None:
        with self._read("get_edge") as conn:
            row = conn.execute("SELECT * FROM edges WHERE id = ?", (edge_id,)).fetchone()
            return _row_to_edge(row) if row else None

    async def get_value(self, value_id: str) -> Value | None:
        with self._read("get_value") as conn:
            row = conn.execute("SELECT * FROM port_values WHERE id = ?", (value_id,)).fetchone()
            return _row_to_value(row) if row else None

    async def list_ports(self, node_id: str, include_dead: bool = False) -> list[Port]:
        with self._read("list_ports") as conn:
            query = "SELECT * FROM ports WHERE node_id = ?"
            if not include_dead:
                query += " AND alive = 1"
            rows = conn.execute(query + " ORDER BY id", (node_id,)).fetchall()
            return [_row_to_port(row) for row in rows]

    async def list_tags(self, node_id: str, include_dead: bool = False) -> list[Tag]:
        with self._read("list_tags") as conn:
            query = "SELECT * FROM tags WHERE node_id = ?"
            if not include_dead:
                query += " AND alive = 1"
            rows = conn.execute(query + " ORDER BY tag_key, tag_value", (node_id,)).fetchall()
            return [_row_to_tag(row) for row in rows]

    async def list_values(self, port_id: str, include_dead: bool = False) -> list[Value]:
        with self._read("list_values") as conn:
            query = "SELECT * FROM port_values WHERE port_id = ?"
            if not include_dead:
                query += " AND alive = 1"
            rows = conn.execute(query + " ORDER BY timestamp, id", (port_id,)).fetchall()
            return [_row_to_value(row) for row in rows]

    async def list_edges(self, port_id: str, include_dead: bool = False) -> list[Edge]:
        """Edges with port_id as either endpoint."""
        with self._read("list_edges") as conn:
            alive_clause = "" if include_dead else " AND alive = 1"
            rows = conn.execute(
                f"SELECT * FROM edges WHERE from_port_id = ?{alive_clause} "
                f"UNION SELECT * FROM edges WHERE to_port_id = ?{alive_clause} ORDER BY id",
                (port_id, port_id),
            ).fetchall()
            return [_row_to_edge(row) for row in rows]

    async def ancestor_ids(self, node_id: str) -> list[str]:
        """Parent chain of a node, nearest first.

        Raises:
            NotFoundError: If the node doesn't exist
        """
        with self._read("ancestor_ids") as conn:
            if conn.execute("SELECT 1 FROM nodes WHERE id = ?", (node_id,)).fetchone() is None:
                raise NotFoundError(f"Node not found: {node_id}", "node", node_id)
            return _ancestor_ids(conn, node_id)

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def alive_children(self, parent_ids: list[str]) -> list[dict[str, Any]]:
        """Alive children of a set of parents via the (parent_id, alive) index.

        Returns:
            Rows with id, parent_id, name, type and description
        """
        rows: list[dict[str, Any]] = []
        with self._read("alive_children") as conn:
            for chunk in _chunks(parent_ids):
                cursor = conn.execute(
                    f"""
                    SELECT id, parent_id, name, type, description FROM nodes
                    WHERE parent_id IN ({_placeholders(len(chunk))}) AND alive = 1
                    """,
                    chunk,
                )
                rows.extend(dict(row) for row in cursor.fetchall())
        return rows

    async def nodes_with_tag_key(self, node_ids: list[str], key: str) -> set[str]:
        """Subset of node_ids carrying an alive tag with the given key."""
        matched: set[str] = set()
        with self._read("nodes_with_tag_key") as conn:
            for chunk in _chunks(node_ids):
                cursor = conn.execute(
                    f"""
                    SELECT DISTINCT node_id FROM tags
                    WHERE node_id IN ({_placeholders(len(chunk))})
                      AND alive = 1 AND tag_key = ?
                    """,
                    (*chunk, key),
                )
                matched.update(row["node_id"] for row in cursor.fetchall())
        return matched

    async def unsynced_values(self, since_ms: int | None = None, limit: int = 1000) -> list[Value]:
        """Alive values not yet synced upstream, newest first."""
        query = "SELECT * FROM port_values WHERE is_synced = 0 AND alive = 1"
        params: list[Any] = []
        if since_ms is not None:
            query += " AND timestamp > ?"
            params.append(since_ms)
        query += " ORDER BY timestamp DESC, id LIMIT ?"
        params.append(limit)

        with self._read("unsynced_values") as conn:
            return [_row_to_value(row) for row in conn.execute(query, params).fetchall()]

    async def unsynced_counts(self, limit: int = 100) -> list[dict[str, Any]]:
        """Unsynced alive value count per alive node, largest first."""
        with self._read("unsynced_counts") as conn:
            cursor = conn.execute(
                """
                SELECT n.id AS node_id, n.name AS name, COUNT(pv.id) AS unsynced_count
                FROM nodes n
                JOIN ports p ON p.node_id = n.id
                JOIN port_values pv ON pv.port_id = p.id
                WHERE pv.is_synced = 0 AND pv.alive = 1 AND n.alive = 1
                GROUP BY n.id, n.name
                ORDER BY unsynced_count DESC, n.id
                LIMIT ?
                """,
                (limit,),
            )
            return [dict(row) for row in cursor.fetchall()]

    async def get_stats(self) -> dict[str, dict[str, int]]:
        """Total and alive row counts per table."""
        stats: dict[str, dict[str, int]] = {}
        with self._read("get_stats") as conn:
            for table in ("nodes", "ports", "port_values", "edges", "tags"):
                row = conn.execute(
                    f"SELECT COUNT(*) AS total, COALESCE(SUM(alive), 0) AS alive FROM {table}"
                ).fetchone()
                stats[table] = {"total": row["total"], "alive": row["alive"]}
        return stats
