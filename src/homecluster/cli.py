"""
Command-line interface for the Talos cluster bootstrap.
Runs the full bootstrap, tears clusters down and reports node status.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
import typer
from rich.markup import escape
from rich.table import Table

from homecluster import __version__
from homecluster.cleanup import destroy_all, destroy_compute
from homecluster.config import RunConfig, RunOptions
from homecluster.console import console
from homecluster.errors import BootstrapError
from homecluster.inventory import Inventory
from homecluster.models import NodeReadiness, Phase
from homecluster.orchestrator import BootstrapOrchestrator
from homecluster.poller import tcp_port_open
from homecluster.talos_client import TalosClient
from homecluster.terraform_runner import TerraformRunner

app = typer.Typer(
    name="homecluster",
    help="Bootstrap a Talos Kubernetes cluster on KVM/libvirt",
    add_completion=False,
)

LOG_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s: %(message)s"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

logger = logging.getLogger(__name__)

READINESS_STYLE = {
    NodeReadiness.REACHABLE_AUTHENTICATED: "green",
    NodeReadiness.REACHABLE_INSECURE: "yellow",
    NodeReadiness.UNREACHABLE: "red",
}


def configure_logging(debug: bool, log_file: Optional[Path] = None) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


def load_config(env_file: Optional[Path], nodes_file: Optional[Path]) -> RunConfig:
    try:
        config = RunConfig.from_env(env_file=env_file)
    except ValueError as e:
        console.print(f"❌ Invalid configuration: {escape(str(e))}")
        raise typer.Exit(1)
    if nodes_file:
        config = config.with_overrides(nodes_file=nodes_file)
    return config


def load_inventory(config: RunConfig) -> Inventory:
    try:
        return Inventory.load(config.nodes_file)
    except BootstrapError as e:
        console.print(f"❌ {escape(str(e))}")
        if e.hint:
            console.print(f"   {escape(e.hint)}")
        raise typer.Exit(1)


@app.command()
def bootstrap(
    skip_iso_download: bool = typer.Option(False, "--skip-iso-download", help="Skip Talos ISO download"),
    skip_terraform: bool = typer.Option(False, "--skip-terraform", help="Skip VM provisioning"),
    skip_discovery: bool = typer.Option(False, "--skip-discovery", help="Skip node discovery, use static IPs"),
    skip_config: bool = typer.Option(False, "--skip-config", help="Reuse previously generated configs"),
    skip_apply: bool = typer.Option(False, "--skip-apply", help="Skip config application"),
    skip_bootstrap: bool = typer.Option(False, "--skip-bootstrap", help="Skip etcd bootstrap"),
    skip_addons: bool = typer.Option(False, "--skip-addons", help="Skip Cilium and GitOps installation"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    no_cleanup: bool = typer.Option(False, "--no-cleanup", help="Never offer teardown on failure"),
    cleanup_vms: bool = typer.Option(False, "--cleanup-vms", help="Destroy VMs only (keep DNS) and exit"),
    destroy: bool = typer.Option(False, "--destroy-all", help="Destroy all infrastructure and exit"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask before --cleanup-vms/--destroy-all"),
    nodes_file: Optional[Path] = typer.Option(None, "--nodes-file", help="Node inventory (default: nodes.yaml)"),
    env_file: Optional[Path] = typer.Option(None, "--env-file", help=".env file to load"),
) -> None:
    """Run the cluster bootstrap, or tear the cluster down."""
    config = load_config(env_file, nodes_file)
    configure_logging(debug, config.log_file)

    if cleanup_vms or destroy:
        what = "all VMs, disks and DNS records" if destroy else "all VMs and disks (DNS records are kept)"
        if not yes:
            typer.confirm(f"Destroy {what}?", default=False, abort=True)
        terraform = TerraformRunner(config)
        try:
            if destroy:
                destroy_all(config, terraform)
            else:
                destroy_compute(terraform)
        except BootstrapError as e:
            console.print(f"❌ Teardown failed: {escape(str(e))}")
            raise typer.Exit(1)
        return

    flags = {
        Phase.IMAGE: skip_iso_download,
        Phase.PROVISION: skip_terraform,
        Phase.DISCOVERY: skip_discovery,
        Phase.CONFIG: skip_config,
        Phase.APPLY: skip_apply,
        Phase.BOOTSTRAP: skip_bootstrap,
        Phase.ADDONS: skip_addons,
    }
    options = RunOptions(
        skip=frozenset(phase for phase, skipped in flags.items() if skipped),
        debug=debug,
        no_cleanup=no_cleanup,
    )
    logger.debug(f"Run options: {options}")
    inventory = load_inventory(config)

    console.print(f"🚀 Bootstrapping cluster [bold]{config.cluster_name}[/bold] ({len(inventory)} nodes)")
    summary = BootstrapOrchestrator.from_config(config, options, inventory).run()
    if summary.exit_code:
        raise typer.Exit(summary.exit_code)


@app.command("inventory")
def show_inventory(
    nodes_file: Optional[Path] = typer.Option(None, "--nodes-file", help="Node inventory (default: nodes.yaml)"),
    env_file: Optional[Path] = typer.Option(None, "--env-file", help=".env file to load"),
) -> None:
    """Validate the node inventory and print it."""
    config = load_config(env_file, nodes_file)
    inventory = load_inventory(config)

    table = Table(title=f"Nodes ({config.nodes_file})")
    table.add_column("Name", style="cyan")
    table.add_column("Role")
    table.add_column("IP", style="green")
    table.add_column("Gateway")
    table.add_column("vCPUs", justify="right")
    table.add_column("Memory (MiB)", justify="right")
    table.add_column("Disk (GiB)", justify="right")
    for node in inventory:
        table.add_row(
            node.name,
            node.role.value,
            node.ip,
            node.gateway,
            str(node.vcpus),
            str(node.memory_mib),
            str(node.disk_size_gib),
        )
    console.print(table)
    console.print(f"✅ {len(inventory)} nodes valid")


@app.command()
def status(
    nodes_file: Optional[Path] = typer.Option(None, "--nodes-file", help="Node inventory (default: nodes.yaml)"),
    env_file: Optional[Path] = typer.Option(None, "--env-file", help=".env file to load"),
) -> None:
    """Probe every node's Talos API on its static address."""
    config = load_config(env_file, nodes_file)
    inventory = load_inventory(config)
    talos = TalosClient(config)

    table = Table(title="Node Status")
    table.add_column("Name", style="cyan")
    table.add_column("Role")
    table.add_column("IP")
    table.add_column("Status")
    for node in inventory:
        if node.is_load_balancer:
            up = tcp_port_open(node.address, config.api_port)
            state = f"[{'green' if up else 'red'}]{'listening' if up else 'down'}[/]"
        else:
            readiness = talos.readiness(node.address)
            state = f"[{READINESS_STYLE[readiness]}]{readiness.value}[/]"
        table.add_row(node.name, node.role.value, node.address, state)
    console.print(table)


@app.command()
def version() -> None:
    """Print the version."""
    console.print(f"homecluster {__version__}")


def main() -> None:
    """Console entry point; usage errors exit with status 1."""
    command = typer.main.get_command(app)
    try:
        rv = command.main(standalone_mode=False)
    except click.UsageError as e:
        e.show()
        sys.exit(1)
    except click.Abort:
        console.print("Aborted.")
        sys.exit(1)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    sys.exit(rv or 0)


if __name__ == "__main__":
    main()
