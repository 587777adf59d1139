"""Control-plane bootstrap sequencing."""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from homecluster import commands, console
from homecluster.config import RunConfig
from homecluster.errors import QuorumError
from homecluster.models import NodeSpec
from homecluster.poller import wait_until
from homecluster.talos_client import BootstrapOutcome, TalosClient

logger = logging.getLogger(__name__)


@dataclass
class QuorumResult:
    bootstrap_node: str
    bootstrap_outcome: str
    ready_control_planes: List[str] = field(default_factory=list)
    missing_control_planes: List[str] = field(default_factory=list)
    ready_workers: List[str] = field(default_factory=list)
    missing_workers: List[str] = field(default_factory=list)

    @property
    def full_quorum(self) -> bool:
        return not self.missing_control_planes


class QuorumSequencer:
    """Bootstraps etcd exactly once and waits for the rest of the cluster.

    The first control-plane node to answer authenticated requests on its
    static address gets the bootstrap call. The call is never repeated
    against another node in the same run.
    """

    def __init__(
        self,
        config: RunConfig,
        talos: TalosClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.talos = talos
        self.sleep = sleep
        self.clock = clock
        self._lock = threading.Lock()
        self._bootstrapped_on: Optional[str] = None
        self._bootstrap_outcome: Optional[str] = None

    def _wait(self, predicate: Callable[[], bool], timeout: float, description: str):
        return wait_until(
            predicate,
            interval=self.config.retry.poll_interval,
            timeout=timeout,
            description=description,
            progress_every=self.config.retry.progress_every,
            sleep=self.sleep,
            clock=self.clock,
        )

    def wait_for_first_control_plane(self, control_planes: Sequence[NodeSpec]) -> NodeSpec:
        """Return the first control-plane node that is authenticated-reachable.

        Raises:
            QuorumError: If none becomes reachable before the timeout
        """
        found: List[NodeSpec] = []

        def any_ready() -> bool:
            for node in control_planes:
                if self.talos.is_reachable_authenticated(node.address):
                    found.append(node)
                    return True
            return False

        poll = self._wait(any_ready, self.config.retry.node_ready_timeout, "a control-plane node to come up")
        if not poll.ready:
            names = ", ".join(n.name for n in control_planes)
            raise QuorumError(
                f"No control-plane node ({names}) became reachable within {self.config.retry.node_ready_timeout:.0f}s",
                hint=f"talosctl --talosconfig {self.config.talosconfig} -n {control_planes[0].address} version",
            )
        console.success(f"{found[0].name} is up ({found[0].address})")
        return found[0]

    def bootstrap_once(self, node: NodeSpec) -> str:
        """Issue the bootstrap call against node, at most once per run.

        Raises:
            QuorumError: If every attempt fails, or a different node was already bootstrapped
        """
        with self._lock:
            if self._bootstrapped_on is not None:
                if self._bootstrapped_on != node.name:
                    raise QuorumError(
                        f"Refusing to bootstrap {node.name}: {self._bootstrapped_on} was already bootstrapped"
                    )
                return self._bootstrap_outcome

            attempts = self.config.retry.bootstrap_attempts
            for attempt in range(1, attempts + 1):
                try:
                    outcome = self.talos.bootstrap(node.address)
                except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
                    detail = commands.error_output(e) if isinstance(e, subprocess.CalledProcessError) else str(e)
                    logger.warning(f"Bootstrap of {node.name} failed, attempt {attempt}/{attempts}: {detail}")
                    if attempt < attempts:
                        self.sleep(self.config.retry.bootstrap_retry_delay)
                    continue

                self._bootstrapped_on = node.name
                self._bootstrap_outcome = outcome
                if outcome == BootstrapOutcome.ALREADY_BOOTSTRAPPED:
                    console.success(f"{node.name} was already bootstrapped")
                else:
                    console.success(f"Bootstrapped etcd on {node.name}")
                return outcome

        raise QuorumError(
            f"Bootstrap of {node.name} failed after {attempts} attempts",
            hint=f"talosctl --talosconfig {self.config.talosconfig} bootstrap -n {node.address} -e {node.address}",
        )

    def wait_for_nodes(self, nodes: Sequence[NodeSpec], timeout: float, description: str) -> List[str]:
        """Poll until every node is authenticated-reachable; return the names that are."""
        ready: List[str] = []

        def all_ready() -> bool:
            for node in nodes:
                if node.name not in ready and self.talos.is_reachable_authenticated(node.address):
                    ready.append(node.name)
                    logger.info(f"{node.name} is reachable")
            return len(ready) == len(nodes)

        if nodes:
            self._wait(all_ready, timeout, description)
        return ready

    def run(self, control_planes: Sequence[NodeSpec], workers: Sequence[NodeSpec]) -> QuorumResult:
        first = self.wait_for_first_control_plane(control_planes)
        outcome = self.bootstrap_once(first)
        result = QuorumResult(bootstrap_node=first.name, bootstrap_outcome=outcome)

        others = [n for n in control_planes if n.name != first.name]
        ready = self.wait_for_nodes(others, self.config.retry.quorum_timeout, "remaining control-plane nodes")
        result.ready_control_planes = [first.name] + [n.name for n in others if n.name in ready]
        result.missing_control_planes = [n.name for n in others if n.name not in ready]
        if result.missing_control_planes:
            console.warning(
                f"Partial quorum: {len(result.ready_control_planes)}/{len(control_planes)} control-plane nodes up, "
                f"missing {', '.join(result.missing_control_planes)}"
            )
        else:
            console.success(f"All {len(control_planes)} control-plane nodes are up")

        ready = self.wait_for_nodes(workers, self.config.retry.node_ready_timeout, "worker nodes")
        result.ready_workers = [n.name for n in workers if n.name in ready]
        result.missing_workers = [n.name for n in workers if n.name not in ready]
        if result.missing_workers:
            console.warning(f"Workers not reachable yet: {', '.join(result.missing_workers)}")
        elif workers:
            console.success(f"All {len(workers)} workers are up")
        return result
