#!/usr/bin/env python3
"""Lease colo nodes for ephemeral test clusters.

Commands:
* `list-availability` - print status of all nodes
* `requisition <address> <instance-name>` - lease a node
* `requisition-any <instance-name>` - lease any free node compatible with the request
* `free <address>` - release a node leased by the caller
* `whoami` - print identity of the caller, as trusted by the nodes
* `inventory` - print the parsed inventory
"""

import argparse
import logging
import sys

from colo_fleet.fleet_management import availability
from colo_fleet.fleet_management import identity
from colo_fleet.fleet_management import inventory
from colo_fleet.fleet_management import remote_exec
from colo_fleet.fleet_management import requisition
from colo_fleet.fleet_management.errors import IdentityError
from colo_fleet.fleet_management.errors import ParseError
from colo_fleet.fleet_management.remote_commands import LeaseOutcome
from colo_fleet.utils import configuration
from colo_fleet.utils import helpers

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_LEASE_FAILED = 1
EXIT_USAGE = 2


def get_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Get command line arguments."""
    parser = argparse.ArgumentParser(description=(__doc__ or "").split("\n", maxsplit=1)[0])
    parser.add_argument(
        "-i",
        "--inventory",
        type=helpers.check_file_arg,
        default="",
        help=f"Path to the inventory file (default: {configuration.INVENTORY_FILE})",
    )
    parser.add_argument(
        "-t",
        "--transport",
        choices=("ssh", "local"),
        default="",
        help=f"How to reach the nodes (default: {configuration.TRANSPORT})",
    )
    parser.add_argument(
        "--local-root",
        type=helpers.check_dir_arg,
        default="",
        help="Directory with node home directories, for the 'local' transport",
    )
    parser.add_argument(
        "-j",
        "--max-workers",
        type=int,
        default=configuration.MAX_WORKERS,
        help=f"Max number of concurrent connections (default: {configuration.MAX_WORKERS})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    avail_parser = subparsers.add_parser("list-availability", help="Print status of all nodes")
    avail_parser.add_argument(
        "--records",
        action="store_true",
        help="Print machine-readable records separated by vertical tab",
    )

    req_parser = subparsers.add_parser("requisition", help="Lease a node")
    req_parser.add_argument("address", help="Private or public address of the node")
    req_parser.add_argument("instance_name", help="Name of the instance the node is leased for")

    any_parser = subparsers.add_parser(
        "requisition-any", help="Lease any free node compatible with the request"
    )
    any_parser.add_argument("instance_name", help="Name of the instance the node is leased for")
    any_parser.add_argument(
        "-m",
        "--machine-class",
        type=int,
        default=0,
        help="Minimal machine class (number of GPUs) of the node (default: 0)",
    )
    any_parser.add_argument("-z", "--zone", default=None, help="Zone of the node")

    free_parser = subparsers.add_parser("free", help="Release a node leased by the caller")
    free_parser.add_argument("address", help="Private or public address of the node")

    subparsers.add_parser("whoami", help="Print identity of the caller")
    subparsers.add_parser("inventory", help="Print the parsed inventory")

    return parser.parse_args(argv)


def _get_node(registry: inventory.FleetRegistry, address: str) -> inventory.Node | None:
    node = registry.by_address(address)
    if node is None:
        LOGGER.error(f"Node '{address}' is not in the inventory.")
    return node


def main(argv: list[str] | None = None) -> int:
    args = get_args(argv)
    logging.basicConfig(
        format="%(levelname)s:%(message)s", level=logging.DEBUG if args.verbose else logging.INFO
    )

    try:
        registry = inventory.load_inventory(args.inventory or "")
    except ParseError as exc:
        LOGGER.error(f"Failed to load inventory: {exc}")  # noqa: TRY400
        return EXIT_USAGE

    if args.command == "inventory":
        for node in registry:
            print(node.to_record())
        return EXIT_OK

    try:
        transport = remote_exec.get_transport(args.transport, local_root=args.local_root or "")
        executor = remote_exec.RemoteExecutor(transport, max_workers=args.max_workers)
    except (RuntimeError, ValueError) as exc:
        LOGGER.error(str(exc))  # noqa: TRY400
        return EXIT_USAGE

    cache = availability.AvailabilityCache(registry=registry, executor=executor)

    if args.command == "list-availability":
        snapshot = cache.get(use_cache=False)
        if args.records:
            for entry in snapshot:
                print(entry.to_record())
        else:
            print(availability.format_availability(snapshot))
        return EXIT_OK

    if args.command == "whoami":
        print(identity.resolve_identity(registry=registry, executor=executor) or "")
        return EXIT_OK

    service = requisition.RequisitionService(
        registry=registry,
        executor=executor,
        cache=cache,
        credentials=requisition.load_credentials(),
    )

    try:
        if args.command == "requisition":
            node = _get_node(registry, args.address)
            if node is None:
                return EXIT_USAGE
            outcome = service.acquire_detail(node=node, instance_name=args.instance_name)
            if outcome != LeaseOutcome.SUCCESS:
                LOGGER.error(f"Failed to requisition '{node.hostname}': {outcome}")
                return EXIT_LEASE_FAILED
            LOGGER.info(f"Requisitioned '{node.hostname}' as '{args.instance_name}'")
            return EXIT_OK

        if args.command == "requisition-any":
            node = service.acquire_any(
                args.instance_name, machine_class=args.machine_class, zone=args.zone
            )
            if node is None:
                return EXIT_LEASE_FAILED
            print(node.private_address)
            return EXIT_OK

        if args.command == "free":
            node = _get_node(registry, args.address)
            if node is None:
                return EXIT_USAGE
            outcome = service.release_detail(node=node)
            if outcome != LeaseOutcome.SUCCESS:
                LOGGER.error(f"Failed to free '{node.hostname}': {outcome}")
                return EXIT_LEASE_FAILED
            LOGGER.info(f"Freed '{node.hostname}'")
            return EXIT_OK
    except IdentityError as exc:
        LOGGER.error(str(exc))  # noqa: TRY400
        return EXIT_LEASE_FAILED
    except ValueError as exc:
        LOGGER.error(str(exc))  # noqa: TRY400
        return EXIT_USAGE

    LOGGER.error(f"Unknown command: {args.command}")
    return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
