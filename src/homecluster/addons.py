"""Post-bootstrap installation: Kubernetes API, Cilium, secrets and GitOps."""

import base64
import json
import logging
import os
import subprocess
import time
from typing import Any, Callable, Dict, List, Optional

import yaml

from homecluster import commands, console
from homecluster.config import RunConfig
from homecluster.errors import AddonError
from homecluster.poller import wait_until
from homecluster.talos_client import TalosClient

logger = logging.getLogger(__name__)

CILIUM_SELECTOR = "k8s-app=cilium"


def namespace_manifest(name: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def secret_manifest(
    name: str, namespace: str, data: Dict[str, str], labels: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """Opaque Secret with base64-encoded values."""
    metadata: Dict[str, Any] = {"name": name, "namespace": namespace}
    if labels:
        metadata["labels"] = dict(labels)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": metadata,
        "data": {key: base64.b64encode(value.encode()).decode() for key, value in data.items()},
    }


def pods_ready(pods: Dict[str, Any]) -> bool:
    """True if the pod list is non-empty and every pod reports Ready."""
    items = pods.get("items", [])
    if not items:
        return False
    for pod in items:
        conditions = pod.get("status", {}).get("conditions", [])
        if not any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions):
            return False
    return True


class AddonInstaller:
    """Brings a freshly bootstrapped cluster to a usable state."""

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

    @property
    def env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["KUBECONFIG"] = str(self.config.kubeconfig)
        return env

    def _kubectl(self, *args: str, input_text: Optional[str] = None, check: bool = True) -> subprocess.CompletedProcess:
        return commands.run(
            ["kubectl", *args],
            timeout=self.config.retry.command_timeout,
            check=check,
            input_text=input_text,
            env=self.env,
        )

    def _poll(self, predicate: Callable[[], bool], timeout: float, description: str):
        return wait_until(
            predicate,
            interval=self.config.retry.poll_interval,
            timeout=timeout,
            description=description,
            progress_every=self.config.retry.progress_every,
            sleep=self.sleep,
            clock=self.clock,
        )

    def api_ready(self) -> bool:
        try:
            result = self._kubectl("get", "--raw=/readyz", check=False)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.debug(f"Kubernetes API probe failed: {e}")
            return False
        return result.returncode == 0 and result.stdout.strip() == "ok"

    def wait_for_api(self) -> None:
        """Raises AddonError if the API server never reports ready."""
        poll = self._poll(self.api_ready, self.config.retry.k8s_api_timeout, "the Kubernetes API")
        if not poll.ready:
            raise AddonError(
                f"Kubernetes API not ready after {poll.elapsed:.0f}s",
                hint=f"KUBECONFIG={self.config.kubeconfig} kubectl get --raw=/readyz",
            )
        console.success("Kubernetes API is ready")

    def install_cilium(self) -> bool:
        """Install Cilium and wait for its agents. Returns False on readiness timeout."""
        cmd = ["cilium", "install"]
        if self.config.cilium_version:
            cmd += ["--version", self.config.cilium_version]
        for value in self.config.cilium_values:
            cmd += ["--set", value]
        try:
            commands.run(cmd, timeout=self.config.retry.cilium_timeout, env=self.env)
        except subprocess.CalledProcessError as e:
            output = commands.error_output(e)
            if "already installed" not in output.lower():
                logger.error(f"cilium install failed: {output}")
                raise AddonError(f"cilium install failed: {output}", hint=" ".join(cmd))
            logger.info("Cilium is already installed")
        except subprocess.TimeoutExpired:
            raise AddonError("cilium install timed out", hint=" ".join(cmd))

        poll = self._poll(self.cilium_ready, self.config.retry.cilium_timeout, "Cilium pods")
        if not poll.ready:
            console.warning(f"Cilium pods not ready after {poll.elapsed:.0f}s; check with 'cilium status'")
            return False
        console.success("Cilium is ready")
        return True

    def cilium_ready(self) -> bool:
        try:
            result = self._kubectl("-n", "kube-system", "get", "pods", "-l", CILIUM_SELECTOR, "-o", "json", check=False)
            return result.returncode == 0 and pods_ready(json.loads(result.stdout or "{}"))
        except (subprocess.TimeoutExpired, OSError, json.JSONDecodeError) as e:
            logger.debug(f"Cilium readiness probe failed: {e}")
            return False

    def prerequisite_manifests(self) -> List[Dict[str, Any]]:
        """DNS provider secrets, for whichever values are configured."""
        cfg = self.config
        manifests: List[Dict[str, Any]] = []
        if cfg.cloudflare_token:
            manifests += [
                namespace_manifest("cert-manager"),
                secret_manifest("cloudflare-token", "cert-manager", {"token": cfg.cloudflare_token}),
            ]
        if cfg.pihole_password and cfg.pihole_server:
            manifests += [
                namespace_manifest("external-dns"),
                secret_manifest(
                    "pihole",
                    "external-dns",
                    {
                        "EXTERNAL_DNS_PIHOLE_PASSWORD": cfg.pihole_password,
                        "EXTERNAL_DNS_PIHOLE_SERVER": cfg.pihole_server,
                        "EXTERNAL_DNS_PIHOLE_API_VERSION": "6",
                    },
                ),
            ]
        return manifests

    def apply_manifests(self, manifests: List[Dict[str, Any]], what: str) -> None:
        if not manifests:
            return
        document = yaml.safe_dump_all(manifests, default_flow_style=False, sort_keys=False)
        try:
            self._kubectl("apply", "-f", "-", input_text=document)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            detail = commands.error_output(e) if isinstance(e, subprocess.CalledProcessError) else str(e)
            logger.error(f"Failed to apply {what}: {detail}")
            raise AddonError(f"Failed to apply {what}: {detail}")
        console.success(f"Applied {what}")

    def bootstrap_flux(self) -> None:
        gitops = self.config.gitops
        if not (gitops.github_owner and gitops.github_repository and gitops.github_token):
            raise AddonError(
                "Flux bootstrap needs GITHUB_OWNER, GITHUB_REPOSITORY and GITHUB_TOKEN",
                hint="Set them in .env, or set GITOPS_ENGINE=none",
            )
        cmd = [
            "flux", "bootstrap", "github",
            "--token-auth",
            f"--owner={gitops.github_owner}",
            f"--repository={gitops.github_repository}",
            f"--branch={gitops.flux_branch}",
            f"--path={gitops.flux_path}",
            "--personal",
            "--private=true",
        ]
        env = self.env
        env["GITHUB_TOKEN"] = gitops.github_token
        try:
            commands.run(cmd, timeout=self.config.retry.k8s_api_timeout, env=env)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            detail = commands.error_output(e) if isinstance(e, subprocess.CalledProcessError) else str(e)
            logger.error(f"flux bootstrap failed: {detail}")
            raise AddonError(f"flux bootstrap failed: {detail}", hint=" ".join(cmd))
        console.success(f"Flux bootstrapped from {gitops.github_owner}/{gitops.github_repository}")

    def bootstrap_argocd(self) -> None:
        gitops = self.config.gitops
        try:
            self._kubectl("create", "namespace", "argocd", check=False)
            self._kubectl("apply", "-n", "argocd", "--server-side", "-f", gitops.argocd_install_url)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            detail = commands.error_output(e) if isinstance(e, subprocess.CalledProcessError) else str(e)
            raise AddonError(f"Argo CD install failed: {detail}", hint=f"kubectl apply -n argocd -f {gitops.argocd_install_url}")
        console.success("Argo CD installed")

        if gitops.argocd_repo_url:
            data = {"type": "git", "url": gitops.argocd_repo_url}
            if gitops.argocd_repo_username:
                data["username"] = gitops.argocd_repo_username
            if gitops.argocd_repo_password:
                data["password"] = gitops.argocd_repo_password
            secret = secret_manifest(
                "github-creds", "argocd", data, labels={"argocd.argoproj.io/secret-type": "repository"}
            )
            self.apply_manifests([secret], "Argo CD repository secret")

    def install(self, first_control_plane_ip: str) -> None:
        """Run the whole post-bootstrap sequence.

        Raises:
            AddonError: On a fatal failure; a slow Cilium rollout is only a warning
        """
        self.talos.kubeconfig(first_control_plane_ip)
        self.wait_for_api()
        self.install_cilium()
        self.apply_manifests(self.prerequisite_manifests(), "DNS provider secrets")

        engine = self.config.gitops.engine
        if engine == "flux":
            self.bootstrap_flux()
        elif engine == "argocd":
            self.bootstrap_argocd()
        else:
            logger.info("GitOps engine disabled")
