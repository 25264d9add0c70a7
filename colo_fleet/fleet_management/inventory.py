"""Static inventory of colo nodes.

The inventory is a text file with one pipe-delimited record per node::

    hostname|public_ip|private_ip|cpu_cores|ram_gb|storage_type|storage_cap_gb|add_storage_types|add_storage_caps_gb|machine_class|zone

Additional storage types and capacities are comma-separated lists of the same length (both may be
empty). Blank lines and lines starting with `#` are ignored.

Records are sorted by zone when loaded and every node gets a stable `index` in that order.
"""

import dataclasses
import logging
import pathlib as pl
import typing as tp

from colo_fleet.fleet_management.errors import ParseError
from colo_fleet.utils import configuration
from colo_fleet.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

RECORD_SEP = "|"
LIST_SEP = ","
NUM_FIELDS = 11


@dataclasses.dataclass(frozen=True, order=True)
class Storage:
    type: str
    capacity_gb: int


@dataclasses.dataclass(frozen=True, order=True)
class Node:
    index: int
    hostname: str
    public_address: str
    private_address: str
    cpu_cores: int
    ram_gb: int
    primary_storage: Storage
    additional_storage: tuple[Storage, ...]
    machine_class: int
    zone: str

    @property
    def addresses(self) -> tuple[str, str]:
        return (self.private_address, self.public_address)

    def to_record(self) -> str:
        """Return the node as an inventory record."""
        fields = (
            self.hostname,
            self.public_address,
            self.private_address,
            str(self.cpu_cores),
            str(self.ram_gb),
            self.primary_storage.type,
            str(self.primary_storage.capacity_gb),
            LIST_SEP.join(s.type for s in self.additional_storage),
            LIST_SEP.join(str(s.capacity_gb) for s in self.additional_storage),
            str(self.machine_class),
            self.zone,
        )
        return RECORD_SEP.join(fields)


def _parse_int(value: str, *, field: str, source: str, lineno: int) -> int:
    try:
        return int(value)
    except ValueError:
        msg = f"field '{field}' is not a number: '{value}'"
        raise ParseError(msg, source=source, lineno=lineno) from None


def _parse_additional_storage(
    types_str: str, caps_str: str, *, source: str, lineno: int
) -> tuple[Storage, ...]:
    types = [t.strip() for t in types_str.split(LIST_SEP)] if types_str else []
    caps = [c.strip() for c in caps_str.split(LIST_SEP)] if caps_str else []
    if len(types) != len(caps):
        msg = (
            f"additional storage has {len(types)} type(s) but {len(caps)} capacity value(s)"
        )
        raise ParseError(msg, source=source, lineno=lineno)

    return tuple(
        Storage(
            type=t,
            capacity_gb=_parse_int(
                c, field="additional_storage_capacities_gb", source=source, lineno=lineno
            ),
        )
        for t, c in zip(types, caps)
    )


def _parse_record(line: str, *, source: str, lineno: int) -> dict[str, tp.Any]:
    fields = [f.strip() for f in line.split(RECORD_SEP)]
    if len(fields) != NUM_FIELDS:
        msg = f"expected {NUM_FIELDS} fields, got {len(fields)}"
        raise ParseError(msg, source=source, lineno=lineno)

    (
        hostname,
        public_address,
        private_address,
        cpu_cores,
        ram_gb,
        storage_type,
        storage_cap,
        add_types,
        add_caps,
        machine_class,
        zone,
    ) = fields

    required = {
        "hostname": hostname,
        "public_address": public_address,
        "private_address": private_address,
        "cpu_cores": cpu_cores,
        "ram_gb": ram_gb,
        "storage_type": storage_type,
        "storage_capacity_gb": storage_cap,
        "machine_class": machine_class,
        "zone": zone,
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        msg = f"missing required field(s): {', '.join(missing)}"
        raise ParseError(msg, source=source, lineno=lineno)

    return {
        "hostname": hostname,
        "public_address": public_address,
        "private_address": private_address,
        "cpu_cores": _parse_int(cpu_cores, field="cpu_cores", source=source, lineno=lineno),
        "ram_gb": _parse_int(ram_gb, field="ram_gb", source=source, lineno=lineno),
        "primary_storage": Storage(
            type=storage_type,
            capacity_gb=_parse_int(
                storage_cap, field="storage_capacity_gb", source=source, lineno=lineno
            ),
        ),
        "additional_storage": _parse_additional_storage(
            add_types, add_caps, source=source, lineno=lineno
        ),
        "machine_class": _parse_int(
            machine_class, field="machine_class", source=source, lineno=lineno
        ),
        "zone": zone,
    }


def parse_inventory(text: str, *, source: str = "<string>") -> tuple[Node, ...]:
    """Parse inventory records and return nodes sorted by zone.

    The sort is stable, so nodes in the same zone keep the order of the inventory file.
    """
    records = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        records.append(_parse_record(stripped, source=source, lineno=lineno))

    records.sort(key=lambda r: r["zone"])
    return tuple(Node(index=i, **r) for i, r in enumerate(records))


class FleetRegistry:
    """Immutable collection of the known nodes."""

    def __init__(self, nodes: tp.Iterable[Node], *, source: str = "") -> None:
        self.nodes: tuple[Node, ...] = tuple(nodes)
        self.source = source
        self._by_address = {a: n for n in self.nodes for a in n.addresses}

    @classmethod
    def from_text(cls, text: str, *, source: str = "<string>") -> "FleetRegistry":
        return cls(parse_inventory(text, source=source), source=source)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> tp.Iterator[Node]:
        return iter(self.nodes)

    def by_index(self, index: int) -> Node:
        return self.nodes[index]

    def by_address(self, address: str) -> Node | None:
        """Return node with the given private or public address."""
        return self._by_address.get(address)

    def by_hostname(self, hostname: str) -> Node | None:
        for node in self.nodes:
            if node.hostname == hostname:
                return node
        return None

    def addresses(self) -> list[str]:
        """Return private addresses of all nodes, in inventory order."""
        return [n.private_address for n in self.nodes]

    def zones(self) -> list[str]:
        return sorted({n.zone for n in self.nodes})

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(source={self.source!r}, nodes={len(self.nodes)})"


class Catalog:
    """Inventory loaded from files, loaded once per process."""

    registries: tp.ClassVar[dict[pl.Path, FleetRegistry]] = {}

    @classmethod
    def load(cls, path: ttypes.FileType = "", *, reload: bool = False) -> FleetRegistry:
        """Return registry for the inventory file, parsing it only if it was not loaded yet."""
        inventory_file = pl.Path(path or configuration.INVENTORY_FILE).expanduser().resolve()

        registry = cls.registries.get(inventory_file)
        if registry is not None and not reload:
            return registry

        LOGGER.debug(f"Loading inventory from '{inventory_file}'.")
        try:
            text = inventory_file.read_text(encoding="utf-8")
        except OSError as exc:
            msg = f"Cannot read inventory file: {exc}"
            raise ParseError(msg, source=str(inventory_file)) from exc

        registry = FleetRegistry.from_text(text, source=str(inventory_file))
        cls.registries[inventory_file] = registry
        return registry

    @classmethod
    def clear(cls) -> None:
        cls.registries.clear()


def load_inventory(path: ttypes.FileType = "", *, reload: bool = False) -> FleetRegistry:
    """Load the inventory, see `Catalog.load`."""
    return Catalog.load(path, reload=reload)
