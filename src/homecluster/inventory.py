"""Declarative node inventory (nodes.yaml)."""

import ipaddress
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from homecluster.errors import InventoryError
from homecluster.models import NodeRole, NodeSpec

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "role", "ip", "gateway", "nameservers", "vcpus", "memory_mib", "disk_size_gib")


class Inventory:
    """Ordered, validated collection of NodeSpecs."""

    def __init__(self, nodes: Iterable[NodeSpec], source: Optional[Path] = None):
        self.nodes: List[NodeSpec] = list(nodes)
        self.source = source
        self._validate()

    def _validate(self) -> None:
        seen = set()
        for node in self.nodes:
            if node.name in seen:
                raise InventoryError(f"Duplicate node name in inventory: {node.name}")
            seen.add(node.name)
        if not self.control_planes:
            raise InventoryError("Inventory must contain at least one control-plane node")

    def __iter__(self):
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, name: str) -> NodeSpec:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)

    @property
    def control_planes(self) -> List[NodeSpec]:
        return [n for n in self.nodes if n.is_control_plane]

    @property
    def workers(self) -> List[NodeSpec]:
        return [n for n in self.nodes if n.is_worker]

    @property
    def load_balancers(self) -> List[NodeSpec]:
        return [n for n in self.nodes if n.is_load_balancer]

    @property
    def cluster_nodes(self) -> List[NodeSpec]:
        """Nodes that run Talos: everything except the load balancer."""
        return [n for n in self.nodes if not n.is_load_balancer]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: Optional[Path] = None) -> "Inventory":
        if not isinstance(data, dict) or not isinstance(data.get("nodes"), list):
            raise InventoryError(f"{source or 'inventory'}: expected a top-level 'nodes' list")
        return cls((parse_node(entry, index) for index, entry in enumerate(data["nodes"])), source)

    @classmethod
    def load(cls, path: Path) -> "Inventory":
        """Load and validate the inventory file.

        Raises:
            InventoryError: If the file is missing, unparsable or invalid
        """
        path = Path(path)
        if not path.is_file():
            raise InventoryError(f"Nodes file not found: {path}", hint="Set NODES_FILE or pass --nodes-file")
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InventoryError(f"Could not parse {path}: {e}")

        inventory = cls.from_dict(data, source=path)
        logger.info(
            f"Loaded {len(inventory)} nodes from {path} "
            f"({len(inventory.control_planes)} control-plane, {len(inventory.workers)} worker)"
        )
        return inventory


def parse_node(entry: Any, index: int) -> NodeSpec:
    """Validate one inventory entry and convert it to a NodeSpec."""
    if not isinstance(entry, dict):
        raise InventoryError(f"nodes[{index}] must be a mapping")

    missing = [key for key in REQUIRED_FIELDS if entry.get(key) in (None, "")]
    if missing:
        label = entry.get("name", f"nodes[{index}]")
        raise InventoryError(f"{label}: missing required field(s): {', '.join(missing)}")

    name = str(entry["name"]).strip()
    try:
        role = NodeRole(str(entry["role"]).strip())
    except ValueError:
        valid = ", ".join(r.value for r in NodeRole)
        raise InventoryError(f"{name}: unknown role {entry['role']!r} (expected one of: {valid})")

    ip = str(entry["ip"]).strip()
    gateway = str(entry["gateway"]).strip()
    try:
        ipaddress.ip_interface(ip)
        ipaddress.ip_address(gateway)
    except ValueError as e:
        raise InventoryError(f"{name}: {e}")

    nameservers = entry["nameservers"]
    if isinstance(nameservers, str):
        nameservers = [ns.strip() for ns in nameservers.split(",") if ns.strip()]
    if not isinstance(nameservers, list) or not nameservers:
        raise InventoryError(f"{name}: nameservers must be a non-empty list")

    sizes = {}
    for key in ("vcpus", "memory_mib", "disk_size_gib"):
        try:
            value = int(entry[key])
        except (TypeError, ValueError):
            raise InventoryError(f"{name}: {key} must be an integer")
        if value <= 0:
            raise InventoryError(f"{name}: {key} must be positive")
        sizes[key] = value

    return NodeSpec(
        name=name,
        role=role,
        ip=ip,
        gateway=gateway,
        nameservers=tuple(str(ns) for ns in nameservers),
        vcpus=sizes["vcpus"],
        memory_mib=sizes["memory_mib"],
        disk_size_gib=sizes["disk_size_gib"],
    )
