"""Teardown after a failed run, and the explicit teardown commands."""

import logging
import shutil
from typing import Callable, List, Optional

import typer

from homecluster import console
from homecluster.config import RunConfig, RunOptions
from homecluster.errors import BootstrapError
from homecluster.models import PHASE_ORDER, PHASE_SKIP_FLAGS, Phase, PhaseState
from homecluster.terraform_runner import TerraformRunner

logger = logging.getLogger(__name__)

GENERATED_FILES = ("controlplane.yaml", "worker.yaml", "talosconfig", "kubeconfig")


def resume_command(state: PhaseState) -> str:
    """Command line that re-runs from the first phase that did not finish."""
    flags = [PHASE_SKIP_FLAGS[phase] for phase in PHASE_ORDER if state.is_done(phase)]
    return " ".join(["homecluster", "bootstrap", *flags])


def remove_generated(config: RunConfig) -> List[str]:
    """Delete generated configs. The secrets bundle is kept."""
    removed = []
    for name in GENERATED_FILES:
        path = config.cluster_dir / name
        if path.exists():
            path.unlink()
            removed.append(str(path))
    if config.node_config_dir.exists():
        shutil.rmtree(config.node_config_dir)
        removed.append(str(config.node_config_dir))
    for path in removed:
        logger.info(f"Removed {path}")
    return removed


def destroy_all(config: RunConfig, terraform: TerraformRunner) -> None:
    """Tear down VMs, disks and DNS records, then remove generated configs."""
    terraform.destroy()
    remove_generated(config)
    console.success(f"Infrastructure destroyed; kept {config.secrets_file}")


def destroy_compute(terraform: TerraformRunner) -> None:
    """Tear down only the VMs and their disks, keeping DNS records."""
    terraform.destroy_compute()
    console.success("VMs destroyed; DNS records kept")


def report_failure(phase: Phase, error: BootstrapError) -> None:
    console.failure(f"Phase '{phase.label}' failed: {error}")
    if error.hint:
        console.info(f"To retry just this step: {error.hint}")


def offer_cleanup(
    phase: Phase,
    error: BootstrapError,
    state: PhaseState,
    config: RunConfig,
    options: RunOptions,
    terraform: TerraformRunner,
    confirm: Optional[Callable[..., bool]] = None,
) -> bool:
    """Explain a fatal failure and offer to tear everything down.

    Nothing is destroyed without an explicit yes.

    Returns:
        True if the operator agreed and the teardown ran
    """
    report_failure(phase, error)
    resume = resume_command(state)

    if options.no_cleanup:
        console.info(f"Resume with: {resume}")
        return False

    confirm = confirm or typer.confirm
    if not confirm("Destroy the provisioned VMs and generated configs?", default=False):
        console.info(f"Nothing was destroyed. Resume with: {resume}")
        console.info("Tear down later with: homecluster bootstrap --destroy-all (or --cleanup-vms to keep DNS)")
        return False

    try:
        destroy_all(config, terraform)
    except BootstrapError as e:
        console.failure(f"Teardown failed: {e}")
        if e.hint:
            console.info(f"Finish it manually: {e.hint}")
        return False
    return True
