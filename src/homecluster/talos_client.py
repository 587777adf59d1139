"""talosctl wrapper: secrets, config generation, probes and bootstrap."""

import logging
import re
import subprocess
from pathlib import Path
from typing import List, Sequence

from homecluster import commands
from homecluster.config import RunConfig
from homecluster.errors import AddonError, ConfigGenerationError
from homecluster.models import NodeReadiness

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 15

# gRPC AlreadyExists status, or the etcd message Talos returns with it
_ALREADY_BOOTSTRAPPED = re.compile(r"code = AlreadyExists|etcd data directory is not empty")


class BootstrapOutcome:
    ISSUED = "issued"
    ALREADY_BOOTSTRAPPED = "already-bootstrapped"


class TalosClient:
    """Runs talosctl against the cluster described by a RunConfig."""

    def __init__(self, config: RunConfig):
        self.config = config

    @property
    def _talosconfig(self) -> List[str]:
        return ["--talosconfig", str(self.config.talosconfig)]

    def gen_secrets(self) -> Path:
        """Create the secrets bundle once; later runs reuse it."""
        secrets = self.config.secrets_file
        if secrets.is_file():
            logger.info(f"Reusing existing secrets bundle {secrets}")
            return secrets
        secrets.parent.mkdir(parents=True, exist_ok=True)
        self._run_config_cmd(["talosctl", "gen", "secrets", "-o", str(secrets)], "generate secrets")
        logger.info(f"✅ Generated secrets bundle {secrets}")
        return secrets

    def gen_config(self) -> None:
        """Generate controlplane.yaml, worker.yaml and talosconfig."""
        cfg = self.config
        cmd = [
            "talosctl", "gen", "config", cfg.cluster_name, cfg.cluster_endpoint,
            "--with-secrets", str(cfg.secrets_file),
            "--install-disk", cfg.install_disk,
            "--output-dir", str(cfg.cluster_dir),
            "--force",
        ]
        self._run_config_cmd(cmd, "generate base configs")
        logger.info(f"✅ Base configs written to {cfg.cluster_dir}")

    def configure_endpoints(self, control_plane_ips: Sequence[str]) -> None:
        """Point talosconfig at the control-plane static IPs."""
        ips = list(control_plane_ips)
        self._run_config_cmd(["talosctl", *self._talosconfig, "config", "endpoint", *ips], "set endpoints")
        self._run_config_cmd(["talosctl", *self._talosconfig, "config", "node", ips[0]], "set default node")

    def _run_config_cmd(self, cmd: List[str], action: str) -> None:
        try:
            commands.run(cmd, timeout=self.config.retry.command_timeout)
        except subprocess.CalledProcessError as e:
            logger.error(f"talosctl failed to {action}: {commands.error_output(e)}")
            raise ConfigGenerationError(f"Failed to {action}: {commands.error_output(e)}", hint=" ".join(cmd))
        except subprocess.TimeoutExpired:
            logger.error(f"Timeout trying to {action}")
            raise ConfigGenerationError(f"Timeout trying to {action}", hint=" ".join(cmd))

    def is_reachable_insecure(self, ip: str) -> bool:
        """True if the node answers its maintenance-mode API."""
        return self._probe(["talosctl", "get", "disks", "--insecure", "--nodes", ip, "--endpoints", ip])

    def is_reachable_authenticated(self, ip: str) -> bool:
        """True if the node answers with the cluster's client certificate."""
        return self._probe(["talosctl", *self._talosconfig, "--nodes", ip, "--endpoints", ip, "version"])

    def readiness(self, ip: str) -> NodeReadiness:
        if self.is_reachable_authenticated(ip):
            return NodeReadiness.REACHABLE_AUTHENTICATED
        if self.is_reachable_insecure(ip):
            return NodeReadiness.REACHABLE_INSECURE
        return NodeReadiness.UNREACHABLE

    def _probe(self, cmd: List[str]) -> bool:
        try:
            result = commands.run(cmd, timeout=PROBE_TIMEOUT, check=False)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.debug(f"Probe {' '.join(cmd)} failed: {e}")
            return False
        if result.returncode != 0:
            logger.debug(f"Probe {' '.join(cmd)} exited {result.returncode}: {(result.stderr or '').strip()}")
        return result.returncode == 0

    def apply_config(self, ip: str, config_file: Path) -> None:
        """Push a machine config to a node in maintenance mode and reboot it.

        Raises:
            subprocess.CalledProcessError: If talosctl rejects the config
            subprocess.TimeoutExpired: If the node does not answer in time
        """
        commands.run(
            ["talosctl", "apply-config", "--insecure", "--nodes", ip, "--file", str(config_file), "--mode", "reboot"],
            timeout=self.config.retry.command_timeout,
        )

    def bootstrap(self, ip: str) -> str:
        """Bootstrap etcd on one control-plane node.

        Returns:
            BootstrapOutcome.ISSUED or BootstrapOutcome.ALREADY_BOOTSTRAPPED

        Raises:
            subprocess.CalledProcessError: On any other failure
        """
        cmd = ["talosctl", *self._talosconfig, "bootstrap", "--nodes", ip, "--endpoints", ip]
        try:
            commands.run(cmd, timeout=self.config.retry.command_timeout)
        except subprocess.CalledProcessError as e:
            output = commands.error_output(e)
            if _ALREADY_BOOTSTRAPPED.search(output):
                logger.info(f"etcd on {ip} is already bootstrapped")
                return BootstrapOutcome.ALREADY_BOOTSTRAPPED
            raise
        return BootstrapOutcome.ISSUED

    def kubeconfig(self, ip: str) -> Path:
        """Fetch the admin kubeconfig into the cluster directory."""
        path = self.config.kubeconfig
        cmd = ["talosctl", *self._talosconfig, "kubeconfig", str(path), "--nodes", ip, "--endpoints", ip, "--force"]
        try:
            commands.run(cmd, timeout=self.config.retry.command_timeout)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to fetch kubeconfig: {e}")
            raise AddonError(f"Failed to fetch kubeconfig from {ip}", hint=" ".join(cmd))
        logger.info(f"✅ kubeconfig written to {path}")
        return path
