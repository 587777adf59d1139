"""Run configuration loaded from .env and environment variables."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

from homecluster.models import Phase

DEFAULT_ISO_URL = "https://github.com/siderolabs/talos/releases/latest/download/metal-amd64.iso"
DEFAULT_CHECKSUM_URL = "https://github.com/siderolabs/talos/releases/latest/download/sha256sum.txt"
DEFAULT_SCAN_COMMAND = "sudo arp-scan --localnet --plain --interface {interface}"


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}")


def _list(env: Mapping[str, str], key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = env.get(key)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and timeout settings shared by the phases (seconds)."""

    discovery_interval: float = 5.0
    discovery_attempts: int = 24
    apply_attempts: int = 3
    apply_retry_delay: float = 5.0
    bootstrap_attempts: int = 3
    bootstrap_retry_delay: float = 15.0
    poll_interval: float = 10.0
    node_ready_timeout: float = 600.0
    quorum_timeout: float = 600.0
    haproxy_timeout: float = 120.0
    k8s_api_timeout: float = 600.0
    cilium_timeout: float = 600.0
    iso_download_attempts: int = 5
    iso_download_delay: float = 5.0
    command_timeout: float = 120.0
    terraform_timeout: float = 1800.0
    progress_every: int = 6


@dataclass(frozen=True)
class GitOpsSettings:
    """Settings for the GitOps controller installed after bootstrap."""

    engine: str = "flux"
    github_owner: Optional[str] = None
    github_repository: Optional[str] = None
    github_token: Optional[str] = None
    flux_branch: str = "main"
    flux_path: str = "clusters"
    argocd_install_url: str = "https://raw.githubusercontent.com/argoproj/argo-cd/stable/manifests/install.yaml"
    argocd_repo_url: Optional[str] = None
    argocd_repo_username: Optional[str] = None
    argocd_repo_password: Optional[str] = None


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for one bootstrap run.

    Built once by ``RunConfig.from_env`` and passed explicitly to every phase.
    """

    root_dir: Path
    vms_dir: Path
    cluster_dir: Path
    nodes_file: Path
    cluster_name: str = "my-cluster"
    cluster_endpoint: str = "https://192.168.1.244:6443"
    install_disk: str = "/dev/vda"
    default_prefix_length: int = 24
    interface_name: Optional[str] = None
    talos_version: str = "latest"
    iso_url: str = DEFAULT_ISO_URL
    checksum_url: str = DEFAULT_CHECKSUM_URL
    iso_name: str = "metal-amd64.iso"
    schematic_file: Optional[Path] = None
    image_factory_url: str = "https://factory.talos.dev"
    terraform_mac_output: str = "node_macs"
    terraform_compute_targets: Tuple[str, ...] = ("libvirt_domain.node", "libvirt_volume.node_disk")
    scan_command: str = DEFAULT_SCAN_COMMAND
    scan_interface: Optional[str] = None
    api_port: int = 6443
    cilium_version: Optional[str] = None
    cilium_values: Tuple[str, ...] = (
        "ipam.mode=kubernetes",
        "kubeProxyReplacement=true",
        "securityContext.capabilities.ciliumAgent={CHOWN,KILL,NET_ADMIN,NET_RAW,IPC_LOCK,SYS_ADMIN,SYS_RESOURCE,DAC_OVERRIDE,FOWNER,SETGID,SETUID}",
        "securityContext.capabilities.cleanCiliumState={NET_ADMIN,SYS_ADMIN,SYS_RESOURCE}",
        "cgroup.autoMount.enabled=false",
        "cgroup.hostRoot=/sys/fs/cgroup",
        "k8sServiceHost=localhost",
        "k8sServicePort=7445",
    )
    cloudflare_token: Optional[str] = None
    pihole_password: Optional[str] = None
    pihole_server: Optional[str] = None
    gitops: GitOpsSettings = field(default_factory=GitOpsSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    log_file: Optional[Path] = None

    @property
    def secrets_file(self) -> Path:
        """Cluster secrets bundle; survives cleanup so retries keep the same PKI."""
        return self.cluster_dir / "secrets.yaml"

    @property
    def talosconfig(self) -> Path:
        return self.cluster_dir / "talosconfig"

    @property
    def kubeconfig(self) -> Path:
        return self.cluster_dir / "kubeconfig"

    @property
    def node_config_dir(self) -> Path:
        return self.cluster_dir / "nodes"

    @property
    def iso_path(self) -> Path:
        return self.vms_dir / self.iso_name

    def with_overrides(self, **changes: Any) -> "RunConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "RunConfig":
        """Load configuration from an optional .env file and the environment.

        Args:
            env_file: Explicit .env file; defaults to ``.env`` in the working directory
            environ: Mapping to read instead of ``os.environ`` (tests)
            **overrides: Field values that win over the environment

        Returns:
            Frozen RunConfig
        """
        if environ is None:
            load_dotenv(dotenv_path=env_file or find_dotenv(usecwd=True), override=False)
            environ = os.environ
        env: Dict[str, str] = dict(environ)

        root = Path(env.get("HOMECLUSTER_ROOT", os.getcwd())).expanduser()
        vms_dir = root / env.get("VMS_DIR", "vms")
        cluster_dir = root / env.get("CLUSTER_DIR", "cluster")
        nodes_file = root / env.get("NODES_FILE", "nodes.yaml")

        retry = RetryPolicy(
            discovery_interval=_float(env, "DISCOVERY_INTERVAL", 5.0),
            discovery_attempts=_int(env, "DISCOVERY_ATTEMPTS", 24),
            apply_attempts=_int(env, "APPLY_ATTEMPTS", 3),
            apply_retry_delay=_float(env, "APPLY_RETRY_DELAY", 5.0),
            bootstrap_attempts=_int(env, "BOOTSTRAP_ATTEMPTS", 3),
            bootstrap_retry_delay=_float(env, "BOOTSTRAP_RETRY_DELAY", 15.0),
            poll_interval=_float(env, "POLL_INTERVAL", 10.0),
            node_ready_timeout=_float(env, "NODE_READY_TIMEOUT", 600.0),
            quorum_timeout=_float(env, "QUORUM_TIMEOUT", 600.0),
            haproxy_timeout=_float(env, "HAPROXY_TIMEOUT", 120.0),
            k8s_api_timeout=_float(env, "K8S_API_TIMEOUT", 600.0),
            cilium_timeout=_float(env, "CILIUM_TIMEOUT", 600.0),
            iso_download_attempts=_int(env, "ISO_DOWNLOAD_ATTEMPTS", 5),
            iso_download_delay=_float(env, "ISO_DOWNLOAD_DELAY", 5.0),
            command_timeout=_float(env, "COMMAND_TIMEOUT", 120.0),
            terraform_timeout=_float(env, "TERRAFORM_TIMEOUT", 1800.0),
        )

        gitops = GitOpsSettings(
            engine=env.get("GITOPS_ENGINE", "flux").strip().lower(),
            github_owner=env.get("GITHUB_OWNER") or None,
            github_repository=env.get("GITHUB_REPOSITORY") or None,
            github_token=env.get("GITHUB_TOKEN") or None,
            flux_branch=env.get("FLUX_BRANCH", "main"),
            flux_path=env.get("FLUX_PATH", "clusters"),
            argocd_repo_url=env.get("ARGOCD_REPO_URL") or None,
            argocd_repo_username=env.get("ARGOCD_REPO_USERNAME") or None,
            argocd_repo_password=env.get("ARGOCD_REPO_PASSWORD") or None,
        )
        if gitops.engine not in ("flux", "argocd", "none"):
            raise ValueError(f"GITOPS_ENGINE must be flux, argocd or none, got {gitops.engine!r}")

        schematic = env.get("TALOS_SCHEMATIC_FILE")
        log_file = env.get("LOG_FILE")

        values: Dict[str, Any] = {
            "root_dir": root,
            "vms_dir": vms_dir,
            "cluster_dir": cluster_dir,
            "nodes_file": nodes_file,
            "cluster_name": env.get("CLUSTER_NAME", "my-cluster"),
            "cluster_endpoint": env.get("CLUSTER_ENDPOINT", "https://192.168.1.244:6443"),
            "install_disk": env.get("INSTALL_DISK", "/dev/vda"),
            "default_prefix_length": _int(env, "NETWORK_PREFIX_LENGTH", 24),
            "interface_name": env.get("NODE_INTERFACE") or None,
            "talos_version": env.get("TALOS_VERSION", "latest"),
            "iso_url": env.get("TALOS_ISO_URL", DEFAULT_ISO_URL),
            "checksum_url": env.get("TALOS_CHECKSUM_URL", DEFAULT_CHECKSUM_URL),
            "schematic_file": Path(schematic).expanduser() if schematic else None,
            "image_factory_url": env.get("IMAGE_FACTORY_URL", "https://factory.talos.dev").rstrip("/"),
            "terraform_mac_output": env.get("TF_MAC_OUTPUT", "node_macs"),
            "terraform_compute_targets": _list(
                env, "TF_COMPUTE_TARGETS", ("libvirt_domain.node", "libvirt_volume.node_disk")
            ),
            "scan_command": env.get("SCAN_COMMAND", DEFAULT_SCAN_COMMAND),
            "scan_interface": env.get("SCAN_INTERFACE") or None,
            "api_port": _int(env, "API_PORT", 6443),
            "cilium_version": env.get("CILIUM_VERSION") or None,
            "cloudflare_token": env.get("CLOUDFLARE_TOKEN") or None,
            "pihole_password": env.get("PIHOLE_PASSWORD") or None,
            "pihole_server": env.get("PIHOLE_SERVER") or None,
            "gitops": gitops,
            "retry": retry,
            "log_file": Path(log_file).expanduser() if log_file else None,
        }
        if "CILIUM_VALUES" in env:
            values["cilium_values"] = _list(env, "CILIUM_VALUES", ())
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class RunOptions:
    """Operator choices for a single invocation."""

    skip: FrozenSet[Phase] = frozenset()
    debug: bool = False
    no_cleanup: bool = False

    def skips(self, phase: Phase) -> bool:
        return phase in self.skip
