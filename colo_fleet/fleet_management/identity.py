"""Identity of the caller, as trusted by the nodes.

Every node knows which identity the connection layer trusts the caller as. All nodes are asked,
and the first identity seen wins. Disagreeing nodes are reported, but don't stop the resolution.
"""

import dataclasses
import logging

from colo_fleet.fleet_management import inventory
from colo_fleet.fleet_management import remote_commands
from colo_fleet.fleet_management import remote_exec
from colo_fleet.fleet_management.errors import IdentityError

LOGGER = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, order=True)
class IdentityConflict:
    address: str
    identity: str
    expected: str

    def __str__(self) -> str:
        return (
            f"Found conflicting identity '{self.identity}' on {self.address}, "
            f"expected '{self.expected}'"
        )


@dataclasses.dataclass(frozen=True)
class IdentityResolution:
    identity: str | None
    # Address -> identity reported by the node; unreachable nodes are left out
    responses: dict[str, str] = dataclasses.field(default_factory=dict)
    conflicts: tuple[IdentityConflict, ...] = ()


def probe_identities(
    registry: inventory.FleetRegistry, executor: remote_exec.RemoteExecutor
) -> IdentityResolution:
    """Ask all nodes for the identity of the caller."""
    command = remote_commands.IdentityProbeCommand()
    results = {r.address: r for r in executor.run(registry.addresses(), command)}

    identity: str | None = None
    responses: dict[str, str] = {}
    conflicts: list[IdentityConflict] = []

    # Evaluate in inventory order, so "first seen" doesn't depend on timing of the fan-out
    for address in registry.addresses():
        result = results.get(address)
        reported = command.parse(result) if result else None
        if reported is None:
            continue

        responses[address] = reported
        if identity is None:
            identity = reported
        elif reported != identity:
            conflict = IdentityConflict(address=address, identity=reported, expected=identity)
            LOGGER.warning(str(conflict))
            conflicts.append(conflict)

    return IdentityResolution(identity=identity, responses=responses, conflicts=tuple(conflicts))


def resolve_identity(
    registry: inventory.FleetRegistry, executor: remote_exec.RemoteExecutor
) -> str | None:
    """Return identity of the caller, or `None` if no node reported it."""
    return probe_identities(registry=registry, executor=executor).identity


def require_identity(
    registry: inventory.FleetRegistry, executor: remote_exec.RemoteExecutor
) -> str:
    """Return identity of the caller, fail if no node reported it."""
    identity = resolve_identity(registry=registry, executor=executor)
    if not identity:
        msg = "Couldn't determine identity, no node reported it."
        raise IdentityError(msg)
    return identity
