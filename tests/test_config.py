"""Tests for config module."""

from pathlib import Path
from unittest import mock

import pytest

from homecluster.config import DEFAULT_ISO_URL, RunConfig, RunOptions
from homecluster.models import Phase


class TestRunConfig:
    def test_defaults(self, tmp_path):
        config = RunConfig.from_env(environ={"HOMECLUSTER_ROOT": str(tmp_path)})

        assert config.vms_dir == tmp_path / "vms"
        assert config.cluster_dir == tmp_path / "cluster"
        assert config.nodes_file == tmp_path / "nodes.yaml"
        assert config.iso_url == DEFAULT_ISO_URL
        assert config.retry.discovery_attempts == 24
        assert config.retry.discovery_interval == 5.0
        assert config.retry.apply_attempts == 3
        assert config.retry.bootstrap_retry_delay == 15.0
        assert config.retry.terraform_timeout == 1800.0
        assert config.gitops.engine == "flux"

    def test_derived_paths(self, tmp_path):
        config = RunConfig.from_env(environ={"HOMECLUSTER_ROOT": str(tmp_path), "CLUSTER_DIR": "out"})

        assert config.secrets_file == tmp_path / "out" / "secrets.yaml"
        assert config.talosconfig == tmp_path / "out" / "talosconfig"
        assert config.node_config_dir == tmp_path / "out" / "nodes"
        assert config.iso_path == tmp_path / "vms" / "metal-amd64.iso"

    def test_environment_values(self, tmp_path):
        env = {
            "HOMECLUSTER_ROOT": str(tmp_path),
            "CLUSTER_NAME": "lab",
            "APPLY_ATTEMPTS": "5",
            "DISCOVERY_INTERVAL": "2.5",
            "TERRAFORM_TIMEOUT": "900",
            "TF_COMPUTE_TARGETS": "libvirt_domain.vm, libvirt_volume.disk",
            "CILIUM_VALUES": "ipam.mode=kubernetes",
            "GITOPS_ENGINE": "ArgoCD",
            "ARGOCD_REPO_URL": "https://github.com/example/repo.git",
        }
        config = RunConfig.from_env(environ=env)

        assert config.cluster_name == "lab"
        assert config.retry.apply_attempts == 5
        assert config.retry.discovery_interval == 2.5
        assert config.retry.terraform_timeout == 900.0
        assert config.terraform_compute_targets == ("libvirt_domain.vm", "libvirt_volume.disk")
        assert config.cilium_values == ("ipam.mode=kubernetes",)
        assert config.gitops.engine == "argocd"
        assert config.gitops.argocd_repo_url == "https://github.com/example/repo.git"

    def test_invalid_integer(self, tmp_path):
        with pytest.raises(ValueError, match="APPLY_ATTEMPTS"):
            RunConfig.from_env(environ={"HOMECLUSTER_ROOT": str(tmp_path), "APPLY_ATTEMPTS": "many"})

    def test_invalid_gitops_engine(self, tmp_path):
        with pytest.raises(ValueError, match="GITOPS_ENGINE"):
            RunConfig.from_env(environ={"HOMECLUSTER_ROOT": str(tmp_path), "GITOPS_ENGINE": "jenkins"})

    def test_overrides_win(self, tmp_path):
        config = RunConfig.from_env(environ={"HOMECLUSTER_ROOT": str(tmp_path)}, cluster_name="override")
        assert config.cluster_name == "override"

    def test_with_overrides_returns_copy(self, run_config):
        other = run_config.with_overrides(nodes_file=Path("/tmp/other.yaml"))

        assert other.nodes_file == Path("/tmp/other.yaml")
        assert run_config.nodes_file != other.nodes_file

    def test_frozen(self, run_config):
        with pytest.raises(Exception):
            run_config.cluster_name = "changed"

    def test_loads_dotenv_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("CLUSTER_NAME=from-dotenv\n")
        monkeypatch.delenv("CLUSTER_NAME", raising=False)
        monkeypatch.setenv("HOMECLUSTER_ROOT", str(tmp_path))

        with mock.patch.dict("os.environ", {}, clear=False):
            config = RunConfig.from_env(env_file=env_file)

        assert config.cluster_name == "from-dotenv"

    def test_environment_beats_dotenv(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("CLUSTER_NAME=from-dotenv\n")
        monkeypatch.setenv("CLUSTER_NAME", "from-env")
        monkeypatch.setenv("HOMECLUSTER_ROOT", str(tmp_path))

        config = RunConfig.from_env(env_file=env_file)

        assert config.cluster_name == "from-env"


class TestRunOptions:
    def test_skips(self):
        options = RunOptions(skip=frozenset({Phase.IMAGE, Phase.PROVISION}))

        assert options.skips(Phase.IMAGE)
        assert options.skips(Phase.PROVISION)
        assert not options.skips(Phase.DISCOVERY)

    def test_default_runs_everything(self):
        options = RunOptions()
        assert not any(options.skips(phase) for phase in Phase)
