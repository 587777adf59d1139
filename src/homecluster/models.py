"""Data model for the cluster bootstrap."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class NodeRole(str, Enum):
    """Role a node plays in the cluster."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"
    LOAD_BALANCER = "load-balancer"


class NodeReadiness(str, Enum):
    """How far a node's Talos API can be reached."""

    UNREACHABLE = "unreachable"
    REACHABLE_INSECURE = "reachable-insecure"
    REACHABLE_AUTHENTICATED = "reachable-authenticated"


class Phase(str, Enum):
    """Bootstrap phases in dependency order."""

    IMAGE = "image"
    PROVISION = "provision"
    DISCOVERY = "discovery"
    CONFIG = "config"
    APPLY = "apply"
    BOOTSTRAP = "bootstrap"
    ADDONS = "addons"

    @property
    def label(self) -> str:
        return PHASE_TITLES[self]


PHASE_ORDER: Tuple[Phase, ...] = tuple(Phase)

PHASE_TITLES: Dict[Phase, str] = {
    Phase.IMAGE: "Image Acquisition",
    Phase.PROVISION: "Infrastructure Provisioning",
    Phase.DISCOVERY: "Node Discovery",
    Phase.CONFIG: "Configuration Generation",
    Phase.APPLY: "Configuration Application",
    Phase.BOOTSTRAP: "Cluster Bootstrap",
    Phase.ADDONS: "Post-bootstrap Installation",
}


def normalize_mac(mac: str) -> str:
    """Return MAC address in canonical lowercase, colon separated form."""
    return mac.strip().lower().replace("-", ":")


@dataclass(frozen=True)
class NodeSpec:
    """Static, user-declared node from the inventory file."""

    name: str
    role: NodeRole
    ip: str
    gateway: str
    nameservers: Tuple[str, ...]
    vcpus: int
    memory_mib: int
    disk_size_gib: int

    @property
    def address(self) -> str:
        """Static IP without any prefix length."""
        return self.ip.split("/", 1)[0]

    @property
    def prefix_length(self) -> Optional[int]:
        """Prefix length if the inventory wrote the IP in CIDR form."""
        if "/" not in self.ip:
            return None
        return int(self.ip.split("/", 1)[1])

    @property
    def is_control_plane(self) -> bool:
        return self.role is NodeRole.CONTROL_PLANE

    @property
    def is_worker(self) -> bool:
        return self.role is NodeRole.WORKER

    @property
    def is_load_balancer(self) -> bool:
        return self.role is NodeRole.LOAD_BALANCER


@dataclass
class ProvisionedNode:
    """Runtime view of a node after provisioning and discovery."""

    name: str
    mac_address: str
    static_ip: str
    dhcp_ip: Optional[str] = None

    @property
    def target_ip(self) -> str:
        """Address to reach the node before it reboots onto its static IP."""
        return self.dhcp_ip or self.static_ip


@dataclass
class PhaseState:
    """Which phases completed or were skipped in the current run."""

    completed: List[Phase] = field(default_factory=list)
    skipped: List[Phase] = field(default_factory=list)

    def mark_complete(self, phase: Phase) -> None:
        if phase not in self.completed:
            self.completed.append(phase)

    def mark_skipped(self, phase: Phase) -> None:
        if phase not in self.skipped:
            self.skipped.append(phase)

    def is_complete(self, phase: Phase) -> bool:
        return phase in self.completed

    def is_done(self, phase: Phase) -> bool:
        """A skipped phase counts as done: its postconditions are assumed."""
        return phase in self.completed or phase in self.skipped


PHASE_SKIP_FLAGS: Dict[Phase, str] = {
    Phase.IMAGE: "--skip-iso-download",
    Phase.PROVISION: "--skip-terraform",
    Phase.DISCOVERY: "--skip-discovery",
    Phase.CONFIG: "--skip-config",
    Phase.APPLY: "--skip-apply",
    Phase.BOOTSTRAP: "--skip-bootstrap",
    Phase.ADDONS: "--skip-addons",
}
