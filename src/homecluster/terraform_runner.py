"""Terraform driver for the libvirt VMs and their DNS records."""

import json
import logging
import os
import re
import subprocess
from typing import Dict, List, Optional

from homecluster import commands
from homecluster.config import RunConfig
from homecluster.errors import ProvisioningError
from homecluster.models import normalize_mac

logger = logging.getLogger(__name__)

_BRIDGE_LINE = re.compile(r"^\d+:\s+([^:@\s]+)")


class TerraformRunner:
    """Runs terraform in the VMs directory."""

    def __init__(self, config: RunConfig):
        self.config = config
        self.workdir = str(config.vms_dir)
        self._bridge: Optional[str] = None

    def detect_bridge(self) -> str:
        """Return the first Linux bridge on the host.

        Raises:
            ProvisioningError: If no bridge exists
        """
        try:
            result = commands.run(["ip", "-o", "link", "show", "type", "bridge"], timeout=30)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise ProvisioningError(f"Could not list network bridges: {e}")

        for line in result.stdout.splitlines():
            match = _BRIDGE_LINE.match(line.strip())
            if match:
                logger.info(f"Using bridge {match.group(1)}")
                return match.group(1)

        raise ProvisioningError(
            "No network bridge found on this host",
            hint="Create a bridge (e.g. br0) attached to the LAN interface, then re-run",
        )

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self._bridge is None:
            self._bridge = self.detect_bridge()
        env["TF_VAR_bridge_name"] = self._bridge
        env["TF_IN_AUTOMATION"] = "1"
        return env

    def _terraform(self, *args: str, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        if timeout is None:
            timeout = self.config.retry.terraform_timeout
        cmd = ["terraform", *args]
        try:
            return commands.run(cmd, timeout=timeout, env=self._env(), cwd=self.workdir)
        except subprocess.CalledProcessError as e:
            logger.error(f"terraform {args[0]} failed: {commands.error_output(e)}")
            raise ProvisioningError(
                f"terraform {args[0]} failed (exit {e.returncode})",
                hint=f"cd {self.workdir} && terraform {' '.join(args)}",
            )
        except subprocess.TimeoutExpired:
            logger.error(f"terraform {args[0]} timed out after {timeout}s")
            raise ProvisioningError(
                f"terraform {args[0]} timed out after {timeout}s",
                hint=f"cd {self.workdir} && terraform {' '.join(args)}",
            )

    def init(self) -> None:
        self._terraform("init", "-input=false")
        logger.info("✅ terraform init complete")

    def apply(self) -> None:
        self._terraform("apply", "-input=false", "-auto-approve")
        logger.info("✅ terraform apply complete")

    def provision(self) -> Dict[str, str]:
        """Create the VMs and return their MAC addresses by node name."""
        self.init()
        self.apply()
        return self.output_macs()

    def output_macs(self) -> Dict[str, str]:
        """Read node name to MAC mapping from terraform output.

        Raises:
            ProvisioningError: If the output is missing or malformed
        """
        name = self.config.terraform_mac_output
        result = self._terraform("output", "-json", timeout=self.config.retry.command_timeout)
        try:
            outputs = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ProvisioningError(f"terraform output is not valid JSON: {e}")

        if name not in outputs:
            raise ProvisioningError(
                f"terraform output {name!r} not found",
                hint=f"cd {self.workdir} && terraform output -json {name}",
            )
        value = outputs[name].get("value") if isinstance(outputs[name], dict) else None
        if not isinstance(value, dict) or not value:
            raise ProvisioningError(f"terraform output {name!r} must be a non-empty map of node name to MAC")

        macs = {str(node): normalize_mac(str(mac)) for node, mac in value.items()}
        logger.debug(f"Provisioned MACs: {macs}")
        return macs

    def destroy(self) -> None:
        """Destroy everything terraform manages, DNS records included."""
        self._terraform("destroy", "-input=false", "-auto-approve")
        logger.info("✅ terraform destroy complete")

    def destroy_compute(self) -> None:
        """Destroy only the VMs and their disks, keeping DNS records."""
        targets: List[str] = [f"-target={address}" for address in self.config.terraform_compute_targets]
        if not targets:
            raise ProvisioningError("No compute resources configured", hint="Set TF_COMPUTE_TARGETS")
        self._terraform("destroy", "-input=false", "-auto-approve", *targets)
        logger.info("✅ VMs destroyed, DNS records kept")
