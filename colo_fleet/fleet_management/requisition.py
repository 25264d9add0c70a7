"""Leasing and releasing of colo nodes.

The lease state lives on the nodes. The bookkeeping of nodes requisitioned by this process is
kept only for convenience and is not authoritative.
"""

import logging
import pathlib as pl
import socket

from colo_fleet.fleet_management import availability
from colo_fleet.fleet_management import identity as identity_mod
from colo_fleet.fleet_management import inventory
from colo_fleet.fleet_management import machine_types
from colo_fleet.fleet_management import remote_commands
from colo_fleet.fleet_management import remote_exec
from colo_fleet.fleet_management.remote_commands import LeaseCredentials
from colo_fleet.fleet_management.remote_commands import LeaseOutcome
from colo_fleet.utils import configuration
from colo_fleet.utils import helpers
from colo_fleet.utils import lease_log

LOGGER = logging.getLogger(__name__)

# Outcomes after which it makes sense to try another node
_TRY_NEXT = frozenset(
    {LeaseOutcome.LOCK_CONTENTION, LeaseOutcome.NOT_FREE, LeaseOutcome.CONNECTION_FAILURE}
)


def load_credentials() -> LeaseCredentials | None:
    """Load the keypair and default authorized keys set in configuration.

    Return `None` when the keypair doesn't exist; nodes are then leased without installing keys.
    """
    private_key = pl.Path(configuration.SSH_KEY)
    if not (private_key.exists() and private_key.with_name(f"{private_key.name}.pub").exists()):
        LOGGER.warning(f"SSH keypair '{private_key}' not found, keys won't be installed on nodes")
        return None
    return LeaseCredentials.from_files(
        private_key_file=private_key, authorized_keys_file=configuration.AUTHORIZED_KEYS_FILE
    )


def build_motd(node: inventory.Node, identity: str, instance_name: str, leased_at: str) -> str:
    """Return message of the day describing the lease."""
    return "\n".join(
        (
            "",
            f"  Instance:   {instance_name}",
            f"  Leased by:  {identity} (from {socket.gethostname()})",
            f"  Leased at:  {leased_at}",
            f"  Node:       {node.hostname} ({node.zone})",
            f"  Addresses:  public {node.public_address}, private {node.private_address}",
            f"  Resources:  {node.cpu_cores} cores, {node.ram_gb} GB RAM, "
            f"{node.primary_storage.capacity_gb} GB {node.primary_storage.type}, "
            f"machine class {node.machine_class}",
            "",
        )
    )


class RequisitionService:
    """Acquiring and releasing exclusive use of nodes."""

    def __init__(
        self,
        registry: inventory.FleetRegistry,
        executor: remote_exec.RemoteExecutor,
        cache: availability.AvailabilityCache,
        *,
        credentials: LeaseCredentials | None = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.cache = cache
        self.credentials = credentials
        self._identity = ""

    def get_identity(self) -> str:
        """Return identity of the caller, resolving it on first use."""
        if not self._identity:
            self._identity = identity_mod.require_identity(
                registry=self.registry, executor=self.executor
            )
        return self._identity

    def acquire_detail(
        self, node: inventory.Node, instance_name: str, identity: str | None = None
    ) -> LeaseOutcome:
        """Requisition the node and return the outcome."""
        identity = identity or self.get_identity()
        leased_at = helpers.get_utc_timestamp()
        command = remote_commands.RequisitionCommand(
            identity=identity,
            instance_name=instance_name,
            credentials=self.credentials,
            motd=build_motd(
                node=node, identity=identity, instance_name=instance_name, leased_at=leased_at
            ),
            leased_at=leased_at,
        )
        result = self.executor.run_one(node.private_address, command)
        outcome = command.parse(result)

        if outcome == LeaseOutcome.SUCCESS:
            self.cache.record_requisitioned(node.index)
        lease_log.log_event(
            f"requisition {node.hostname} ({node.private_address}) as '{instance_name}' "
            f"by '{identity}': {outcome}"
        )
        return outcome

    def acquire(
        self, node: inventory.Node, instance_name: str, identity: str | None = None
    ) -> bool:
        """Requisition the node, return `True` on success."""
        return (
            self.acquire_detail(node=node, instance_name=instance_name, identity=identity)
            == LeaseOutcome.SUCCESS
        )

    def release_detail(self, node: inventory.Node, identity: str | None = None) -> LeaseOutcome:
        """Free the node and return the outcome."""
        identity = identity or self.get_identity()
        command = remote_commands.FreeCommand(
            identity=identity,
            default_authorized_keys=(
                self.credentials.default_authorized_keys if self.credentials else ()
            ),
        )
        result = self.executor.run_one(node.private_address, command)
        outcome = command.parse(result)

        if outcome == LeaseOutcome.SUCCESS:
            self.cache.forget_requisitioned(node.index)
        lease_log.log_event(
            f"free {node.hostname} ({node.private_address}) by '{identity}': {outcome}"
        )
        return outcome

    def release(self, node: inventory.Node, identity: str | None = None) -> bool:
        """Free the node, return `True` on success."""
        return self.release_detail(node=node, identity=identity) == LeaseOutcome.SUCCESS

    def acquire_any(
        self,
        instance_name: str,
        *,
        machine_class: machine_types.MachineClass = machine_types.NO_GPU,
        zone: str | None = None,
        identity: str | None = None,
    ) -> inventory.Node | None:
        """Requisition the first free node that is compatible with the request.

        A node that was taken by somebody else in the meantime is not retried, the next candidate
        is tried instead.
        """
        identity = identity or self.get_identity()
        snapshot = self.cache.get(use_cache=False)
        candidates = availability.find_available(snapshot, machine_class=machine_class, zone=zone)

        for node in candidates:
            outcome = self.acquire_detail(
                node=node, instance_name=instance_name, identity=identity
            )
            if outcome == LeaseOutcome.SUCCESS:
                return node
            if outcome not in _TRY_NEXT:
                LOGGER.error(f"Failed to requisition '{node.hostname}': {outcome}")
                return None
            LOGGER.info(f"Node '{node.hostname}' not available ({outcome}), trying next one")

        LOGGER.warning(
            f"No free node with machine class >= {machine_class}"
            + (f" in zone '{zone}'" if zone else "")
        )
        return None

    def is_requisitioned_by_this_process(self, index: int) -> bool:
        return self.cache.is_requisitioned(index)
