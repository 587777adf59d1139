"""Bootstrap state machine: runs the phases in order, honouring skips."""

import logging
import shlex
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from homecluster import commands, console
from homecluster.addons import AddonInstaller
from homecluster.cleanup import offer_cleanup
from homecluster.config import RunConfig, RunOptions
from homecluster.config_applier import ApplyReport, ConfigApplier
from homecluster.discovery import DiscoveryResult, NodeDiscovery, provisioned_nodes
from homecluster.errors import BootstrapError, ProvisioningError, ToolNotFoundError
from homecluster.inventory import Inventory
from homecluster.iso_manager import IsoManager
from homecluster.machine_config import ConfigGenerator
from homecluster.models import PHASE_ORDER, Phase, PhaseState, ProvisionedNode
from homecluster.poller import tcp_port_open, wait_until
from homecluster.quorum import QuorumResult, QuorumSequencer
from homecluster.talos_client import TalosClient
from homecluster.terraform_runner import TerraformRunner

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    state: PhaseState = field(default_factory=PhaseState)
    failed_phase: Optional[Phase] = None
    error: Optional[str] = None
    discovery: Optional[DiscoveryResult] = None
    nodes: List[ProvisionedNode] = field(default_factory=list)
    apply_report: Optional[ApplyReport] = None
    quorum: Optional[QuorumResult] = None
    cleaned_up: bool = False

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_phase or self.error else 0


class BootstrapOrchestrator:
    """Drives a cluster from nothing to running, one phase at a time.

    Skipping a phase assumes its postconditions already hold; nothing checks
    them. Data later phases need from a skipped phase is re-read from the
    artifacts it leaves behind (terraform outputs, generated node configs).
    """

    def __init__(
        self,
        config: RunConfig,
        options: RunOptions,
        inventory: Inventory,
        talos: TalosClient,
        iso: IsoManager,
        terraform: TerraformRunner,
        discovery: NodeDiscovery,
        generator: ConfigGenerator,
        applier: ConfigApplier,
        quorum: QuorumSequencer,
        addons: AddonInstaller,
        confirm: Optional[Callable[..., bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.options = options
        self.inventory = inventory
        self.talos = talos
        self.iso = iso
        self.terraform = terraform
        self.discovery = discovery
        self.generator = generator
        self.applier = applier
        self.quorum = quorum
        self.addons = addons
        self.confirm = confirm
        self.sleep = sleep
        self.clock = clock

        self._macs: Optional[Dict[str, str]] = None
        self._provisioned: Optional[List[ProvisionedNode]] = None
        self._config_files = None
        self._first_control_plane: Optional[str] = None

    @classmethod
    def from_config(cls, config: RunConfig, options: RunOptions, inventory: Inventory) -> "BootstrapOrchestrator":
        talos = TalosClient(config)
        return cls(
            config=config,
            options=options,
            inventory=inventory,
            talos=talos,
            iso=IsoManager(config),
            terraform=TerraformRunner(config),
            discovery=NodeDiscovery(config, is_live=talos.is_reachable_insecure),
            generator=ConfigGenerator(config, talos),
            applier=ConfigApplier(config, talos),
            quorum=QuorumSequencer(config, talos),
            addons=AddonInstaller(config, talos),
        )

    def required_tools(self) -> List[str]:
        """Binaries needed by the phases this run will execute."""
        runs = {phase for phase in PHASE_ORDER if not self.options.skips(phase)}
        tools: List[str] = []

        def need(*names: str) -> None:
            tools.extend(n for n in names if n not in tools)

        if Phase.PROVISION in runs:
            need("terraform", "ip")
        elif runs & {Phase.DISCOVERY, Phase.CONFIG}:
            need("terraform")
        if Phase.DISCOVERY in runs:
            scan = [arg for arg in shlex.split(self.config.scan_command) if arg != "sudo"]
            if scan:
                need(scan[0])
        if runs & {Phase.DISCOVERY, Phase.CONFIG, Phase.APPLY, Phase.BOOTSTRAP, Phase.ADDONS}:
            need("talosctl")
        if Phase.ADDONS in runs:
            need("kubectl", "cilium")
            if self.config.gitops.engine == "flux":
                need("flux")
        return tools

    def run(self) -> RunSummary:
        """Run every phase in order.

        Returns:
            RunSummary; exit_code is 1 if the tool preflight or a phase failed.
            A failed preflight runs no phase and offers no teardown.
        """
        summary = RunSummary()
        state = summary.state
        try:
            commands.require_tools(self.required_tools())
        except ToolNotFoundError as e:
            logger.error(f"Preflight failed: {e}")
            console.failure(str(e))
            if e.hint:
                console.info(e.hint)
            summary.error = str(e)
            return summary

        current = PHASE_ORDER[0]
        try:
            for number, phase in enumerate(PHASE_ORDER, start=1):
                current = phase
                if self.options.skips(phase):
                    console.phase_header(number, f"{phase.label} (skipped)")
                    logger.info(f"Skipping phase {phase.value}")
                    state.mark_skipped(phase)
                    continue
                console.phase_header(number, phase.label)
                self._run_phase(phase, summary)
                state.mark_complete(phase)
        except BootstrapError as e:
            logger.error(f"Phase {current.value} failed: {e}")
            summary.failed_phase = current
            summary.error = str(e)
            summary.cleaned_up = offer_cleanup(
                current, e, state, self.config, self.options, self.terraform, confirm=self.confirm
            )
            return summary

        self._print_summary(summary)
        return summary

    def _run_phase(self, phase: Phase, summary: RunSummary) -> None:
        if phase is Phase.IMAGE:
            self.iso.acquire()
        elif phase is Phase.PROVISION:
            self._macs = self.terraform.provision()
            console.success(f"Provisioned {len(self._macs)} VMs")
        elif phase is Phase.DISCOVERY:
            summary.discovery = self._discover()
            self._provisioned = summary.nodes = provisioned_nodes(
                self.inventory.cluster_nodes, self._node_macs(), summary.discovery.resolved
            )
        elif phase is Phase.CONFIG:
            self._config_files = self.generator.generate(self.inventory.cluster_nodes, self._node_macs())
            console.success(f"Generated {len(self._config_files)} machine configs")
        elif phase is Phase.APPLY:
            summary.apply_report = self._apply()
        elif phase is Phase.BOOTSTRAP:
            summary.quorum = self.quorum.run(self.inventory.control_planes, self.inventory.workers)
            self._first_control_plane = self.inventory.get(summary.quorum.bootstrap_node).address
        elif phase is Phase.ADDONS:
            self.addons.install(self._first_control_plane or self.inventory.control_planes[0].address)

    def _node_macs(self) -> Dict[str, str]:
        """MACs from this run's provisioning, or from terraform state if it was skipped."""
        if self._macs is None:
            self._macs = self.terraform.output_macs()
        missing = [n.name for n in self.inventory.cluster_nodes if n.name not in self._macs]
        if missing:
            raise ProvisioningError(
                f"terraform output has no MAC for: {', '.join(missing)}",
                hint="terraform output -json",
            )
        return {n.name: self._macs[n.name] for n in self.inventory.cluster_nodes}

    def _discover(self) -> DiscoveryResult:
        expected = self._node_macs()
        if not self.config.scan_interface and self.discovery.interface is None:
            self.discovery.interface = self.terraform.detect_bridge()
        return self.discovery.discover(expected)

    def _apply(self) -> ApplyReport:
        if self._config_files is None:
            self._config_files = self.generator.existing(self.inventory.cluster_nodes)
        self._wait_for_load_balancers()

        if self._provisioned is None:
            logger.info("Discovery skipped; applying configs to static addresses")
            targets = {n.name: n.address for n in self.inventory.cluster_nodes}
        else:
            targets = {p.name: p.target_ip for p in self._provisioned}
        return self.applier.apply_all(targets, self._config_files)

    def _wait_for_load_balancers(self) -> None:
        port = self.config.api_port
        for lb in self.inventory.load_balancers:
            poll = wait_until(
                lambda: tcp_port_open(lb.address, port),
                interval=self.config.retry.poll_interval,
                timeout=self.config.retry.haproxy_timeout,
                description=f"load balancer {lb.name} on port {port}",
                progress_every=self.config.retry.progress_every,
                sleep=self.sleep,
                clock=self.clock,
            )
            if poll.ready:
                console.success(f"Load balancer {lb.name} is listening on {lb.address}:{port}")
            else:
                console.warning(f"Load balancer {lb.name} not reachable on {lb.address}:{port}; continuing")

    def _print_summary(self, summary: RunSummary) -> None:
        state = summary.state
        console.console.print()
        console.success(
            f"Bootstrap finished: {len(state.completed)} phase(s) run, {len(state.skipped)} skipped"
        )
        if summary.apply_report and summary.apply_report.failed:
            console.warning(f"Config application failed for: {', '.join(summary.apply_report.failed)}")
        if summary.quorum:
            if summary.quorum.missing_control_planes:
                console.warning(f"Control-plane nodes not up: {', '.join(summary.quorum.missing_control_planes)}")
            if summary.quorum.missing_workers:
                console.warning(f"Workers not up: {', '.join(summary.quorum.missing_workers)}")
        if state.is_complete(Phase.ADDONS):
            console.info(f"export KUBECONFIG={self.config.kubeconfig}")
