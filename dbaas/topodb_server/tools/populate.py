"""
Populate CLI tool for TopoDB.

Generates a synthetic IoT topology for benchmarking and manual testing:
networks -> devices -> points, two ports (input/output) per node, random
tags on every node, time-series values on point ports and random edges
from device and network ports.

Usage:
    topodb-populate --data-dir <path> [--networks N] [--devices N] [--points N] [--seed S]

Invariants:
    - Everything is written in one store transaction
    - The same seed produces the same ids, names, tags and edges
    - Value timestamps fall within the day before the run

How to change safely:
    - Keep the tag pools stable; benchmark queries filter on them
    - Write only through StoreTransaction so the schema stays in one place
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import sys
import time
import uuid
from dataclasses import asdict, dataclass

from ..store import EntityStore, StoreTransaction

logger = logging.getLogger(__name__)

TAG_KEYS = (
    "location",
    "category",
    "priority",
    "status",
    "environment",
    "region",
    "zone",
    "criticality",
)
TAG_VALUES = (
    "production",
    "staging",
    "development",
    "high",
    "medium",
    "low",
    "active",
    "inactive",
    "north",
    "south",
    "east",
    "west",
    "zone-a",
    "zone-b",
    "zone-c",
)

DAY_MS = 86_400_000


@dataclass
class PopulateStats:
    """Counts of generated records."""

    nodes: int = 0
    ports: int = 0
    values: int = 0
    tags: int = 0
    edges: int = 0
    duration_ms: int = 0


class Populator:
    """Writes a synthetic topology through one store transaction.

    Attributes:
        networks: Number of root networks
        devices_per_network: Devices under each network
        points_per_device: Points under each device
    """

    def __init__(
        self,
        networks: int = 50,
        devices_per_network: int = 50,
        points_per_device: int = 100,
        seed: int | None = None,
    ) -> None:
        self.networks = networks
        self.devices_per_network = devices_per_network
        self.points_per_device = points_per_device
        self.rng = random.Random(seed)
        self.stats = PopulateStats()
        self.all_ports: list[str] = []

    def _new_id(self) -> str:
        return str(uuid.UUID(int=self.rng.getrandbits(128), version=4))

    def _node(
        self,
        tx: StoreTransaction,
        node_type: str,
        parent_id: str | None,
        name: str,
        description: str,
    ) -> tuple[str, list[str]]:
        node_id = self._new_id()
        tx.conn.execute(
            "INSERT INTO nodes (id, type, parent_id, name, description) VALUES (?, ?, ?, ?, ?)",
            (node_id, node_type, parent_id, name, description),
        )
        self.stats.nodes += 1

        for _ in range(self.rng.randrange(5)):
            cursor = tx.conn.execute(
                "INSERT OR IGNORE INTO tags (node_id, tag_key, tag_value) VALUES (?, ?, ?)",
                (node_id, self.rng.choice(TAG_KEYS), self.rng.choice(TAG_VALUES)),
            )
            self.stats.tags += cursor.rowcount

        ports = []
        for direction in ("input", "output"):
            port_id = self._new_id()
            tx.conn.execute(
                "INSERT INTO ports (id, node_id, port_type, name, description) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    port_id,
                    node_id,
                    direction,
                    f"{direction.capitalize()}-{node_id[:8]}",
                    f"{direction.capitalize()} port",
                ),
            )
            ports.append(port_id)
        self.stats.ports += len(ports)
        self.all_ports.extend(ports)
        return node_id, ports

    def _values(self, tx: StoreTransaction, port_id: str) -> None:
        for _ in range(self.rng.randint(1, 5)):
            tx.conn.execute(
                "INSERT INTO port_values (id, port_id, timestamp, value_numeric, is_synced) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    self._new_id(),
                    port_id,
                    tx.now_ms - self.rng.randrange(DAY_MS),
                    self.rng.random() * 100,
                    self.rng.randrange(2),
                ),
            )
            self.stats.values += 1

    def _edges(self, tx: StoreTransaction, from_ports: list[str], count: int, label: str) -> None:
        for _ in range(count):
            from_port = self.rng.choice(from_ports)
            to_port = self.rng.choice(self.all_ports)
            if from_port == to_port:
                continue
            tx.conn.execute(
                "INSERT INTO edges (id, from_port_id, to_port_id, description) VALUES (?, ?, ?, ?)",
                (self._new_id(), from_port, to_port, label),
            )
            self.stats.edges += 1

    async def run(self, store: EntityStore) -> PopulateStats:
        """Generate the topology into an initialized store."""
        start = time.monotonic()

        async with store.transaction("populate") as tx:
            for i in range(1, self.networks + 1):
                network_id, network_ports = self._node(
                    tx, "network", None, f"Network-{i}", f"Network {i} description"
                )
                for d in range(1, self.devices_per_network + 1):
                    device_id, device_ports = self._node(
                        tx, "device", network_id, f"Device-{i}-{d}", f"Device {d} of Network {i}"
                    )
                    for p in range(1, self.points_per_device + 1):
                        _, point_ports = self._node(
                            tx,
                            "point",
                            device_id,
                            f"Point-{i}-{d}-{p}",
                            f"Point {p} of Device {d}",
                        )
                        for port_id in point_ports:
                            self._values(tx, port_id)
                    if d > 1 and len(self.all_ports) > 10:
                        self._edges(
                            tx, device_ports, self.rng.randint(1, 3), f"Edge from device {d}"
                        )
                if i > 1 and len(self.all_ports) > 100:
                    self._edges(
                        tx, network_ports, self.rng.randint(1, 5), f"Edge from network {i}"
                    )
                logger.info(
                    f"Completed Network-{i}",
                    extra={"total_nodes": self.stats.nodes},
                )
                # Give other tasks a turn between networks
                await asyncio.sleep(0)

        self.stats.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Population complete", extra=asdict(self.stats))
        return self.stats


async def populate(
    data_dir: str,
    db_filename: str = "topodb.db",
    networks: int = 50,
    devices_per_network: int = 50,
    points_per_device: int = 100,
    seed: int | None = None,
) -> PopulateStats:
    """Create (if needed) and populate a database."""
    store = EntityStore(data_dir, db_filename=db_filename)
    await store.initialize()
    populator = Populator(networks, devices_per_network, points_per_device, seed=seed)
    return await populator.run(store)


def main() -> None:
    """CLI entry point for populate tool."""
    parser = argparse.ArgumentParser(description="Populate a TopoDB database with synthetic data")
    parser.add_argument("--data-dir", required=True, help="Directory for the SQLite database")
    parser.add_argument("--db-filename", default="topodb.db", help="Database file name")
    parser.add_argument("--networks", type=int, default=50, help="Number of networks")
    parser.add_argument("--devices", type=int, default=50, help="Devices per network")
    parser.add_argument("--points", type=int, default=100, help="Points per device")
    parser.add_argument("--seed", type=int, help="Random seed for reproducible output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if min(args.networks, args.devices, args.points) < 0:
        parser.error("counts must not be negative")

    stats = asyncio.run(
        populate(
            data_dir=args.data_dir,
            db_filename=args.db_filename,
            networks=args.networks,
            devices_per_network=args.devices,
            points_per_device=args.points,
            seed=args.seed,
        )
    )

    print("Population completed")
    print(f"  Nodes: {stats.nodes}")
    print(f"  Ports: {stats.ports}")
    print(f"  Values: {stats.values}")
    print(f"  Tags: {stats.tags}")
    print(f"  Edges: {stats.edges}")
    print(f"  Duration: {stats.duration_ms}ms")
    sys.exit(0)


if __name__ == "__main__":
    main()
