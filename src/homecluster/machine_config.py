"""Per-node Talos machine configuration."""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import yaml

from homecluster.config import RunConfig
from homecluster.errors import ConfigGenerationError
from homecluster.models import NodeRole, NodeSpec, normalize_mac
from homecluster.talos_client import TalosClient

logger = logging.getLogger(__name__)

BASE_CONFIG_FILES: Dict[NodeRole, str] = {
    NodeRole.CONTROL_PLANE: "controlplane.yaml",
    NodeRole.WORKER: "worker.yaml",
}


def deep_merge(base: Dict[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Return base with patch merged in. Mappings merge, everything else is replaced."""
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class MachineConfigBuilder:
    """Builds the node-specific patch applied on top of a role base config."""

    def __init__(self, node: NodeSpec, mac_address: str, config: RunConfig):
        self.node = node
        self.mac_address = normalize_mac(mac_address)
        self.config = config

    @property
    def cidr(self) -> str:
        prefix = self.node.prefix_length or self.config.default_prefix_length
        return f"{self.node.address}/{prefix}"

    def interface(self) -> Dict[str, Any]:
        # a fixed interface name wins over MAC selection when configured
        if self.config.interface_name:
            iface: Dict[str, Any] = {"interface": self.config.interface_name}
        else:
            iface = {"deviceSelector": {"hardwareAddr": self.mac_address}}
        iface.update(
            addresses=[self.cidr],
            routes=[{"network": "0.0.0.0/0", "gateway": self.node.gateway}],
            dhcp=False,
        )
        return iface

    def patch(self) -> Dict[str, Any]:
        return {
            "machine": {
                "network": {
                    "hostname": self.node.name,
                    "interfaces": [self.interface()],
                    "nameservers": list(self.node.nameservers),
                },
                "install": {"disk": self.config.install_disk},
            }
        }

    def render(self, base_documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Merge the patch into the machine config document, keeping any others."""
        if not base_documents or not isinstance(base_documents[0], dict):
            raise ConfigGenerationError(f"{self.node.name}: base config is empty")
        return [deep_merge(base_documents[0], self.patch()), *base_documents[1:]]


def load_documents(path: Path) -> List[Dict[str, Any]]:
    try:
        with open(path) as f:
            return [doc for doc in yaml.safe_load_all(f) if doc is not None]
    except OSError as e:
        raise ConfigGenerationError(f"Cannot read base config {path}: {e}", hint="Re-run without --skip-config")
    except yaml.YAMLError as e:
        raise ConfigGenerationError(f"Cannot parse base config {path}: {e}")


def write_documents(path: Path, documents: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump_all(documents, f, default_flow_style=False, sort_keys=False)
    path.chmod(0o600)


class ConfigGenerator:
    """Produces one machine config file per cluster node."""

    def __init__(self, config: RunConfig, talos: TalosClient):
        self.config = config
        self.talos = talos

    def node_config_path(self, node: NodeSpec) -> Path:
        return self.config.node_config_dir / f"{node.name}.yaml"

    def generate(self, nodes: Iterable[NodeSpec], macs: Mapping[str, str]) -> Dict[str, Path]:
        """Generate secrets, role bases and per-node configs.

        Args:
            nodes: Cluster nodes (load balancers excluded)
            macs: Node name to MAC address

        Returns:
            Node name to written config path
        """
        nodes = list(nodes)
        missing = [n.name for n in nodes if n.name not in macs]
        if missing:
            raise ConfigGenerationError(
                f"No MAC address for: {', '.join(missing)}",
                hint="terraform output -json  # check the node MAC output",
            )

        self.talos.gen_secrets()
        self.talos.gen_config()
        self.talos.configure_endpoints([n.address for n in nodes if n.is_control_plane])

        bases = {
            role: load_documents(self.config.cluster_dir / filename) for role, filename in BASE_CONFIG_FILES.items()
        }

        written: Dict[str, Path] = {}
        for node in nodes:
            builder = MachineConfigBuilder(node, macs[node.name], self.config)
            path = self.node_config_path(node)
            write_documents(path, builder.render(bases[node.role]))
            logger.info(f"Wrote {path} ({node.role.value}, {builder.cidr})")
            written[node.name] = path
        return written

    def existing(self, nodes: Iterable[NodeSpec]) -> Dict[str, Path]:
        """Locate configs from a previous run when generation is skipped."""
        found: Dict[str, Path] = {}
        missing = []
        for node in nodes:
            path = self.node_config_path(node)
            if path.is_file():
                found[node.name] = path
            else:
                missing.append(node.name)
        if missing:
            raise ConfigGenerationError(
                f"No generated config for: {', '.join(missing)} in {self.config.node_config_dir}",
                hint="Re-run without --skip-config",
            )
        return found
