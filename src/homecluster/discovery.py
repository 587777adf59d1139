"""Node discovery: correlate provisioned MACs with addresses seen on the LAN."""

import logging
import re
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from homecluster import commands, console
from homecluster.config import RunConfig
from homecluster.errors import DiscoveryError
from homecluster.models import NodeSpec, ProvisionedNode, normalize_mac
from homecluster.poller import wait_until

logger = logging.getLogger(__name__)

_IPV4 = re.compile(r"\b((?:\d{1,3}\.){3}\d{1,3})\b")
_MAC = re.compile(r"\b((?:[0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2})\b")


def parse_scan(output: str) -> List[Tuple[str, str]]:
    """Extract (mac, ip) pairs from arp-scan style output.

    Any line holding both an IPv4 address and a MAC counts; headers and
    summary lines are ignored.
    """
    pairs = []
    for line in output.splitlines():
        ip = _IPV4.search(line)
        mac = _MAC.search(line)
        if ip and mac:
            pairs.append((normalize_mac(mac.group(1)), ip.group(1)))
    return pairs


def correlate(expected_macs: Mapping[str, str], observed: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Join name->MAC with observed MAC->IP into name->IP.

    MACs compare case-insensitively. If the same MAC shows up with several
    addresses, the first observation wins.
    """
    by_mac: Dict[str, str] = {}
    for mac, ip in observed:
        by_mac.setdefault(normalize_mac(mac), ip)

    resolved: Dict[str, str] = {}
    for name, mac in expected_macs.items():
        ip = by_mac.get(normalize_mac(mac))
        if ip is not None and name not in resolved:
            resolved[name] = ip
    return resolved


@dataclass
class DiscoveryResult:
    resolved: Dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    last_scan: str = ""

    def missing(self, expected: Iterable[str]) -> List[str]:
        return [name for name in expected if name not in self.resolved]


class NodeDiscovery:
    """Finds the DHCP addresses of freshly booted nodes."""

    def __init__(
        self,
        config: RunConfig,
        is_live: Callable[[str], bool],
        interface: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.is_live = is_live
        self.interface = interface
        self.sleep = sleep
        self.clock = clock

    def scan_command(self) -> List[str]:
        interface = self.config.scan_interface or self.interface or "br0"
        return shlex.split(self.config.scan_command.format(interface=interface))

    def scan(self) -> str:
        """Run the network scan and return its raw output ('' on failure)."""
        try:
            result = commands.run(self.scan_command(), timeout=self.config.retry.command_timeout, check=False)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"Network scan failed: {e}")
            return ""
        if result.returncode != 0:
            logger.warning(f"Network scan exited {result.returncode}: {(result.stderr or '').strip()}")
        return result.stdout or ""

    def discover(self, expected_macs: Mapping[str, str]) -> DiscoveryResult:
        """Scan until every expected node has an address and one of them answers.

        Args:
            expected_macs: Node name to MAC for every node that runs Talos

        Returns:
            DiscoveryResult with one address per expected node

        Raises:
            DiscoveryError: If the attempts run out
        """
        retry = self.config.retry
        result = DiscoveryResult()
        expected = len(expected_macs)

        def attempt() -> bool:
            result.attempts += 1
            result.last_scan = self.scan()
            resolved = correlate(expected_macs, parse_scan(result.last_scan))
            logger.info(f"Discovery attempt {result.attempts}: resolved {len(resolved)}/{expected} nodes")
            if len(resolved) < expected:
                return False
            if not any(self.is_live(ip) for ip in resolved.values()):
                logger.info("All nodes resolved but none answers the Talos API yet")
                return False
            result.resolved = resolved
            return True

        poll = wait_until(
            attempt,
            interval=retry.discovery_interval,
            timeout=retry.discovery_interval * (retry.discovery_attempts - 1),
            description=f"{expected} nodes to appear on the network",
            progress_every=retry.progress_every,
            sleep=self.sleep,
            clock=self.clock,
        )
        if poll.ready:
            for name, ip in sorted(result.resolved.items()):
                console.success(f"{name} → {ip}")
            return result

        partial = correlate(expected_macs, parse_scan(result.last_scan))
        missing = [name for name in expected_macs if name not in partial]
        self._dump_diagnostics(result.last_scan)
        raise DiscoveryError(
            f"Discovered {len(partial)}/{expected} nodes after {result.attempts} attempts "
            f"(missing: {', '.join(missing) or 'none, but no node answered the Talos API'})",
            hint=f"{' '.join(self.scan_command())}  # then re-run with --skip-iso-download --skip-terraform",
        )

    def _dump_diagnostics(self, last_scan: str) -> None:
        console.failure("Node discovery failed; current VM power states:")
        try:
            states = commands.run(["virsh", "list", "--all"], timeout=30, check=False).stdout
        except (subprocess.TimeoutExpired, OSError) as e:
            states = f"(virsh unavailable: {e})"
        console.console.print(states or "(no output)", markup=False)
        console.failure("Last network scan output:")
        console.console.print(last_scan or "(empty)", markup=False)
        logger.error(f"Discovery failed. Last scan:\n{last_scan}")


def provisioned_nodes(
    nodes: Iterable[NodeSpec], macs: Mapping[str, str], resolved: Mapping[str, str]
) -> List[ProvisionedNode]:
    """Join inventory, terraform MACs and discovered DHCP addresses."""
    return [ProvisionedNode(n.name, macs[n.name], n.address, resolved.get(n.name)) for n in nodes]
