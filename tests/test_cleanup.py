"""Tests for cleanup module."""

from unittest import mock

from homecluster.cleanup import offer_cleanup, remove_generated, resume_command
from homecluster.config import RunOptions
from homecluster.errors import DiscoveryError, ProvisioningError
from homecluster.models import Phase, PhaseState


def populate(config):
    for name in ("secrets.yaml", "controlplane.yaml", "worker.yaml", "talosconfig"):
        (config.cluster_dir / name).write_text("x")
    config.node_config_dir.mkdir()
    (config.node_config_dir / "cp-1.yaml").write_text("x")


def state(*done):
    s = PhaseState()
    for phase in done:
        s.mark_complete(phase)
    return s


class TestResumeCommand:
    def test_skips_finished_phases(self):
        s = state(Phase.IMAGE, Phase.PROVISION)
        s.mark_skipped(Phase.DISCOVERY)
        assert resume_command(s) == "homecluster bootstrap --skip-iso-download --skip-terraform --skip-discovery"

    def test_nothing_done(self):
        assert resume_command(PhaseState()) == "homecluster bootstrap"


class TestRemoveGenerated:
    def test_keeps_secrets(self, run_config):
        populate(run_config)

        remove_generated(run_config)

        assert run_config.secrets_file.exists()
        assert not (run_config.cluster_dir / "controlplane.yaml").exists()
        assert not run_config.node_config_dir.exists()


class TestOfferCleanup:
    error = DiscoveryError("Discovered 2/5 nodes", hint="sudo arp-scan --localnet")

    def test_consent_destroys(self, run_config):
        populate(run_config)
        terraform = mock.MagicMock()
        confirm = mock.Mock(return_value=True)

        destroyed = offer_cleanup(
            Phase.DISCOVERY, self.error, state(Phase.IMAGE), run_config, RunOptions(), terraform, confirm=confirm
        )

        assert destroyed
        confirm.assert_called_once()
        terraform.destroy.assert_called_once()
        assert run_config.secrets_file.exists()
        assert not run_config.node_config_dir.exists()

    def test_declined_destroys_nothing(self, run_config):
        populate(run_config)
        terraform = mock.MagicMock()

        with mock.patch("homecluster.cleanup.console.info") as mock_info:
            destroyed = offer_cleanup(
                Phase.DISCOVERY, self.error, state(Phase.IMAGE, Phase.PROVISION), run_config, RunOptions(),
                terraform, confirm=mock.Mock(return_value=False),
            )

        assert not destroyed
        terraform.destroy.assert_not_called()
        assert run_config.node_config_dir.exists()
        printed = " ".join(c[0][0] for c in mock_info.call_args_list)
        assert "sudo arp-scan --localnet" in printed
        assert "--skip-terraform" in printed

    def test_no_cleanup_never_prompts(self, run_config):
        terraform = mock.MagicMock()
        confirm = mock.Mock()

        destroyed = offer_cleanup(
            Phase.DISCOVERY, self.error, state(), run_config, RunOptions(no_cleanup=True), terraform, confirm=confirm
        )

        assert not destroyed
        confirm.assert_not_called()
        terraform.destroy.assert_not_called()

    def test_teardown_failure_is_reported(self, run_config):
        terraform = mock.MagicMock()
        terraform.destroy.side_effect = ProvisioningError("terraform destroy failed", hint="terraform destroy")

        destroyed = offer_cleanup(
            Phase.DISCOVERY, self.error, state(), run_config, RunOptions(), terraform,
            confirm=mock.Mock(return_value=True),
        )

        assert not destroyed
