"""Parallel machine config application."""

import logging
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from homecluster import commands, console
from homecluster.config import RunConfig
from homecluster.talos_client import TalosClient

logger = logging.getLogger(__name__)


@dataclass
class NodeApplyOutcome:
    name: str
    ip: str
    attempts: int
    success: bool
    error: Optional[str] = None


@dataclass
class ApplyReport:
    """Outcome of applying configs to every node."""

    outcomes: List[NodeApplyOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return sorted(o.name for o in self.outcomes if o.success)

    @property
    def failed(self) -> List[str]:
        return sorted(o.name for o in self.outcomes if not o.success)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


class ConfigApplier:
    """Pushes every node's config concurrently, retrying each node independently."""

    def __init__(
        self,
        config: RunConfig,
        talos: TalosClient,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: Optional[int] = None,
    ):
        self.config = config
        self.talos = talos
        self.sleep = sleep
        self.max_workers = max_workers

    def apply_one(self, name: str, ip: str, config_file: Path) -> NodeApplyOutcome:
        """Apply one node's config with bounded retries. Never raises."""
        attempts = self.config.retry.apply_attempts
        error = None
        for attempt in range(1, attempts + 1):
            try:
                self.talos.apply_config(ip, config_file)
                logger.info(f"✅ Applied config to {name} ({ip}) on attempt {attempt}")
                return NodeApplyOutcome(name, ip, attempt, True)
            except subprocess.CalledProcessError as e:
                error = commands.error_output(e)
            except (subprocess.TimeoutExpired, OSError) as e:
                error = str(e)
            logger.warning(f"Apply to {name} ({ip}) failed, attempt {attempt}/{attempts}: {error}")
            if attempt < attempts:
                self.sleep(self.config.retry.apply_retry_delay)

        logger.error(f"Giving up on {name} ({ip}) after {attempts} attempts")
        return NodeApplyOutcome(name, ip, attempts, False, error)

    def apply_all(self, targets: Mapping[str, str], config_files: Mapping[str, Path]) -> ApplyReport:
        """Apply configs to all nodes and wait for every one to finish.

        A node that exhausts its retries is recorded as failed; the others
        are unaffected.

        Args:
            targets: Node name to the address to reach it on
            config_files: Node name to its machine config file
        """
        report = ApplyReport()
        if not targets:
            return report

        workers = self.max_workers or len(targets)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="apply") as pool:
            futures = {
                pool.submit(self.apply_one, name, ip, config_files[name]): name for name, ip in targets.items()
            }
            for future in as_completed(futures):
                outcome = future.result()
                report.outcomes.append(outcome)
                if outcome.success:
                    console.success(f"{outcome.name}: config applied ({outcome.ip})")
                else:
                    console.failure(f"{outcome.name}: apply failed after {outcome.attempts} attempts: {outcome.error}")

        if report.failed:
            console.warning(f"Config application failed for: {', '.join(report.failed)}")
        return report
