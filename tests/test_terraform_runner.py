"""Tests for terraform_runner module."""

import json
import subprocess
from unittest import mock

import pytest

from conftest import completed
from homecluster.errors import ProvisioningError
from homecluster.terraform_runner import TerraformRunner

BRIDGES = "4: br0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc noqueue state UP mode DEFAULT\n"


def outputs(value):
    return json.dumps({"node_macs": {"sensitive": False, "type": ["map", "string"], "value": value}})


class TestTerraformRunner:
    def test_detect_bridge(self, run_config):
        with mock.patch("subprocess.run", return_value=completed(BRIDGES)) as mock_run:
            assert TerraformRunner(run_config).detect_bridge() == "br0"

        assert mock_run.call_args[0][0] == ["ip", "-o", "link", "show", "type", "bridge"]

    def test_no_bridge_is_fatal(self, run_config):
        with mock.patch("subprocess.run", return_value=completed("")):
            with pytest.raises(ProvisioningError, match="No network bridge"):
                TerraformRunner(run_config).detect_bridge()

    def test_provision_runs_init_apply_output(self, run_config):
        macs = {"cp-1": "52:54:00:AA:BB:01", "worker-1": "52-54-00-aa-bb-11"}
        with mock.patch("subprocess.run") as mock_run:
            mock_run.side_effect = [completed(BRIDGES), completed(), completed(), completed(outputs(macs))]

            result = TerraformRunner(run_config).provision()

        assert result == {"cp-1": "52:54:00:aa:bb:01", "worker-1": "52:54:00:aa:bb:11"}
        commands = [c[0][0] for c in mock_run.call_args_list]
        assert commands[1] == ["terraform", "init", "-input=false"]
        assert commands[2] == ["terraform", "apply", "-input=false", "-auto-approve"]
        assert commands[3] == ["terraform", "output", "-json"]

        kwargs = mock_run.call_args_list[2][1]
        assert kwargs["env"]["TF_VAR_bridge_name"] == "br0"
        assert kwargs["cwd"] == str(run_config.vms_dir)

    def test_apply_failure(self, run_config):
        with mock.patch("subprocess.run") as mock_run:
            mock_run.side_effect = [
                completed(BRIDGES),
                subprocess.CalledProcessError(1, "terraform", stderr="Error: libvirt unreachable"),
            ]
            with pytest.raises(ProvisioningError, match="terraform apply failed") as exc:
                TerraformRunner(run_config).apply()

        assert "terraform apply" in exc.value.hint

    def test_every_terraform_call_is_bounded(self, run_config):
        runner = TerraformRunner(run_config)
        with mock.patch("subprocess.run") as mock_run:
            mock_run.side_effect = [completed(BRIDGES), completed(), completed(), completed(), completed()]
            runner.init()
            runner.apply()
            runner.destroy()
            runner.destroy_compute()

        for call in mock_run.call_args_list[1:]:
            assert call[1]["timeout"] == run_config.retry.terraform_timeout

    def test_apply_timeout(self, run_config):
        with mock.patch("subprocess.run") as mock_run:
            mock_run.side_effect = [completed(BRIDGES), subprocess.TimeoutExpired("terraform", 1800)]
            with pytest.raises(ProvisioningError, match="timed out after 1800.0s"):
                TerraformRunner(run_config).apply()

    def test_missing_mac_output(self, run_config):
        with mock.patch("subprocess.run") as mock_run:
            mock_run.side_effect = [completed(BRIDGES), completed("{}")]
            with pytest.raises(ProvisioningError, match="node_macs"):
                TerraformRunner(run_config).output_macs()

    def test_empty_mac_output(self, run_config):
        with mock.patch("subprocess.run") as mock_run:
            mock_run.side_effect = [completed(BRIDGES), completed(outputs({}))]
            with pytest.raises(ProvisioningError, match="non-empty map"):
                TerraformRunner(run_config).output_macs()

    def test_destroy(self, run_config):
        with mock.patch("subprocess.run") as mock_run:
            mock_run.side_effect = [completed(BRIDGES), completed()]
            TerraformRunner(run_config).destroy()

        assert mock_run.call_args[0][0] == ["terraform", "destroy", "-input=false", "-auto-approve"]

    def test_destroy_compute_targets_vms_only(self, run_config):
        with mock.patch("subprocess.run") as mock_run:
            mock_run.side_effect = [completed(BRIDGES), completed()]
            TerraformRunner(run_config).destroy_compute()

        cmd = mock_run.call_args[0][0]
        assert "-target=libvirt_domain.node" in cmd
        assert "-target=libvirt_volume.node_disk" in cmd
        assert not any("dns" in arg for arg in cmd)
