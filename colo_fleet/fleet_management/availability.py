"""Availability of colo nodes.

The snapshot of node states is taken on demand and then reused until the caller asks for a new
one. Nothing invalidates it automatically; the snapshot is only marked stale when this process
changes the lease state of a node. The snapshot is never a source of truth for mutual exclusion,
that is the advisory lock on each node.
"""

import dataclasses
import datetime
import logging
import threading
import typing as tp

from colo_fleet.fleet_management import common
from colo_fleet.fleet_management import inventory
from colo_fleet.fleet_management import machine_types
from colo_fleet.fleet_management import remote_commands
from colo_fleet.fleet_management import remote_exec
from colo_fleet.fleet_management.remote_commands import NodeState
from colo_fleet.fleet_management.remote_commands import NodeStatus

LOGGER = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, order=True)
class NodeAvailability:
    node: inventory.Node
    status: NodeStatus

    def to_record(self) -> str:
        """Return the status tuple, fields separated by vertical tab."""
        fields = (
            self.node.hostname,
            self.node.public_address,
            self.node.private_address,
            self.status.state.value,
            self.node.zone,
            self.status.holder,
            self.status.instance_name,
        )
        return common.FIELD_SEP.join(fields)

    def format_row(self) -> str:
        return (
            f"{self.node.hostname:<30} | publicIp={self.node.public_address:<16} "
            f"privateIp={self.node.private_address} status={self.status.state.value} "
            f"zone={self.node.zone} inst={self.status.instance_name}"
        )


@dataclasses.dataclass(frozen=True)
class AvailabilitySnapshot:
    entries: tuple[NodeAvailability, ...] = ()
    stale: bool = False
    requisitioned: frozenset[int] = frozenset()
    taken_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC)
    )

    def __iter__(self) -> tp.Iterator[NodeAvailability]:
        return iter(self.entries)

    def status_of(self, node: inventory.Node) -> NodeStatus | None:
        for entry in self.entries:
            if entry.node.index == node.index:
                return entry.status
        return None

    def with_state(self, state: NodeState) -> list[NodeAvailability]:
        return [e for e in self.entries if e.status.state == state]


def format_availability(snapshot: AvailabilitySnapshot) -> str:
    """Return table of node availability for operators."""
    return "\n".join(e.format_row() for e in snapshot.entries)


def find_available(
    snapshot: AvailabilitySnapshot,
    *,
    machine_class: machine_types.MachineClass = machine_types.NO_GPU,
    zone: str | None = None,
) -> list[inventory.Node]:
    """Return free nodes that are compatible with the requested machine class.

    Nodes with the least capabilities go first, so bigger machines stay available for requests
    that need them.
    """
    nodes = [
        e.node
        for e in snapshot.entries
        if e.status.state == NodeState.FREE
        and machine_types.compatible(e.node.machine_class, machine_class)
        and (zone is None or e.node.zone == zone)
    ]
    return sorted(nodes, key=lambda n: (n.machine_class, n.index))


class AvailabilityCache:
    """Cached snapshot of availability of all nodes in the registry.

    The snapshot is always replaced as a whole. The internal lock serializes refreshes, so that a
    snapshot is never replaced by an older one. It has nothing to do with leasing.
    """

    def __init__(
        self, registry: inventory.FleetRegistry, executor: remote_exec.RemoteExecutor
    ) -> None:
        self.registry = registry
        self.executor = executor
        self._snapshot: AvailabilitySnapshot | None = None
        self._requisitioned: frozenset[int] = frozenset()
        self._lock = threading.RLock()

    @property
    def snapshot(self) -> AvailabilitySnapshot | None:
        return self._snapshot

    @property
    def requisitioned(self) -> frozenset[int]:
        return self._requisitioned

    def _query_all(self) -> list[NodeAvailability]:
        command = remote_commands.QueryCommand()
        results = self.executor.run(self.registry.addresses(), command)

        entries = []
        for result in results:
            node = self.registry.by_address(result.address)
            if node is None:
                LOGGER.warning(f"Got status of unknown node '{result.address}'")
                continue
            entries.append(NodeAvailability(node=node, status=command.parse(result)))

        entries.sort(key=lambda e: e.node.private_address)
        return entries

    def refresh(self) -> AvailabilitySnapshot:
        """Query status of all nodes and replace the cached snapshot."""
        with self._lock:
            entries = self._query_all()
            snapshot = AvailabilitySnapshot(
                entries=tuple(entries), requisitioned=self._requisitioned
            )
            self._snapshot = snapshot

        down = [e.node.hostname for e in snapshot.with_state(NodeState.DOWN)]
        if down:
            LOGGER.info(f"Nodes not reachable: {', '.join(down)}")
        return snapshot

    def get(self, use_cache: bool | None = None) -> AvailabilitySnapshot:
        """Return availability snapshot.

        * `use_cache=None` - reuse the cached snapshot if there's one and it's not stale
        * `use_cache=True` - reuse the cached snapshot if there's one, even if stale
        * `use_cache=False` - always take a new snapshot
        """
        snapshot = self._snapshot
        if snapshot is None or use_cache is False:
            return self.refresh()
        if use_cache is None and snapshot.stale:
            return self.refresh()
        return snapshot

    def mark_stale(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._snapshot = dataclasses.replace(self._snapshot, stale=True)

    def _set_requisitioned(self, requisitioned: frozenset[int]) -> None:
        with self._lock:
            self._requisitioned = requisitioned
            if self._snapshot is not None:
                self._snapshot = dataclasses.replace(
                    self._snapshot, requisitioned=requisitioned, stale=True
                )

    def record_requisitioned(self, index: int) -> None:
        with self._lock:
            self._set_requisitioned(self._requisitioned | {index})

    def forget_requisitioned(self, index: int) -> None:
        with self._lock:
            self._set_requisitioned(self._requisitioned - {index})

    def is_requisitioned(self, index: int) -> bool:
        return index in self._requisitioned
