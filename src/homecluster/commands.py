"""Thin wrapper around subprocess for the external CLIs we drive."""

import logging
import shlex
import shutil
import subprocess
from typing import Iterable, List, Mapping, Optional, Sequence

from homecluster.errors import ToolNotFoundError

logger = logging.getLogger(__name__)

INSTALL_HINTS = {
    "terraform": "https://developer.hashicorp.com/terraform/install",
    "talosctl": "curl -sL https://talos.dev/install | sh",
    "kubectl": "https://kubernetes.io/docs/tasks/tools/",
    "cilium": "https://docs.cilium.io/en/stable/gettingstarted/k8s-install-default/#install-the-cilium-cli",
    "flux": "curl -s https://fluxcd.io/install.sh | sudo bash",
    "virsh": "sudo apt install libvirt-clients",
    "arp-scan": "sudo apt install arp-scan",
    "ip": "sudo apt install iproute2",
}


def run(
    args: Sequence[str],
    *,
    timeout: Optional[float] = 120,
    check: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a command with captured text output.

    Raises:
        subprocess.CalledProcessError: If check is set and the command fails
        subprocess.TimeoutExpired: If the command exceeds timeout
    """
    logger.debug(f"$ {shlex.join(args)}")
    result = subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=check,
        input=input_text,
        env=dict(env) if env is not None else None,
        cwd=cwd,
    )
    if result.stdout:
        logger.debug(result.stdout.rstrip())
    return result


def error_output(e: subprocess.CalledProcessError) -> str:
    """Best-effort text of a failed command's stderr (or stdout)."""
    for stream in (e.stderr, e.stdout):
        if not stream:
            continue
        if isinstance(stream, bytes):
            stream = stream.decode(errors="replace")
        return stream.strip()
    return str(e)


def missing_tools(tools: Iterable[str]) -> List[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def require_tools(tools: Iterable[str]) -> None:
    """Fail fast when any of the given binaries is not on PATH."""
    missing = missing_tools(tools)
    if not missing:
        return
    for tool in missing:
        logger.error(f"Required tool not found: {tool}")
    hints = "; ".join(f"{tool}: {INSTALL_HINTS.get(tool, 'install it and add it to PATH')}" for tool in missing)
    raise ToolNotFoundError(f"Missing required tools: {', '.join(missing)}", hint=hints)
