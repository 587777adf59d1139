"""Tests for discovery module."""

from unittest import mock

import pytest

from conftest import DHCP_IPS, MACS, completed
from homecluster.discovery import NodeDiscovery, correlate, parse_scan, provisioned_nodes
from homecluster.errors import DiscoveryError


def scan_output(names):
    lines = ["Interface: br0, type: EN10MB, MAC: 52:54:00:ff:ff:ff, IPv4: 192.168.1.5"]
    for name in names:
        lines.append(f"{DHCP_IPS[name]}\t{MACS[name].upper()}\tQEMU virtual NIC")
    lines.append("")
    lines.append(f"{len(names)} packets received by filter, 0 packets dropped by kernel")
    return "\n".join(lines)


class TestParseScan:
    def test_extracts_pairs(self):
        pairs = parse_scan(scan_output(["cp-1", "worker-1"]))

        assert ("52:54:00:00:00:01", "192.168.1.101") in pairs
        assert ("52:54:00:00:00:11", "192.168.1.111") in pairs

    def test_ignores_header_and_summary(self):
        pairs = parse_scan(scan_output([]))
        # the header line carries both a MAC and an IP; that is the host itself
        assert all(mac == "52:54:00:ff:ff:ff" for mac, _ in pairs)

    def test_dash_separated_macs(self):
        assert parse_scan("192.168.1.9 52-54-00-AB-CD-EF") == [("52:54:00:ab:cd:ef", "192.168.1.9")]


class TestCorrelate:
    def test_case_insensitive_join(self):
        resolved = correlate({"cp-1": "52:54:00:00:00:01"}, [("52:54:00:00:00:01".upper(), "192.168.1.101")])
        assert resolved == {"cp-1": "192.168.1.101"}

    def test_first_observation_wins(self):
        observed = [("52:54:00:00:00:01", "192.168.1.101"), ("52:54:00:00:00:01", "192.168.1.199")]
        assert correlate({"cp-1": "52:54:00:00:00:01"}, observed) == {"cp-1": "192.168.1.101"}

    def test_unknown_macs_ignored(self):
        assert correlate({"cp-1": MACS["cp-1"]}, [("aa:bb:cc:dd:ee:ff", "192.168.1.50")]) == {}


class TestNodeDiscovery:
    def discovery(self, run_config, fake_clock, is_live=None):
        return NodeDiscovery(
            run_config,
            is_live=is_live or mock.Mock(return_value=True),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

    def test_scan_command_uses_interface(self, run_config, fake_clock):
        assert self.discovery(run_config, fake_clock).scan_command() == [
            "sudo", "arp-scan", "--localnet", "--plain", "--interface", "br0",
        ]

    def test_discovers_all_nodes(self, run_config, fake_clock):
        with mock.patch("subprocess.run", return_value=completed(scan_output(list(MACS)))):
            result = self.discovery(run_config, fake_clock).discover(MACS)

        assert result.resolved == DHCP_IPS
        assert result.attempts == 1

    def test_retries_until_all_nodes_seen(self, run_config, fake_clock):
        scans = [
            completed(scan_output(["cp-1"])),
            completed(scan_output(["cp-1", "cp-2", "cp-3"])),
            completed(scan_output(list(MACS))),
        ]
        with mock.patch("subprocess.run", side_effect=scans):
            result = self.discovery(run_config, fake_clock).discover(MACS)

        assert result.attempts == 3
        assert fake_clock.sleeps == [5.0, 5.0]

    def test_liveness_is_required(self, run_config, fake_clock):
        is_live = mock.Mock(side_effect=[False] * len(MACS) + [True])
        with mock.patch("subprocess.run", return_value=completed(scan_output(list(MACS)))):
            result = self.discovery(run_config, fake_clock, is_live=is_live).discover(MACS)

        assert result.attempts == 2

    def test_fails_after_24_attempts(self, run_config, fake_clock):
        partial = completed(scan_output(["cp-1", "cp-2"]))
        with mock.patch("subprocess.run", return_value=partial) as mock_run:
            with pytest.raises(DiscoveryError, match="2/5") as exc:
                self.discovery(run_config, fake_clock).discover(MACS)

        scans = [c for c in mock_run.call_args_list if "arp-scan" in c[0][0]]
        assert len(scans) == 24
        assert any(c[0][0] == ["virsh", "list", "--all"] for c in mock_run.call_args_list)
        assert "worker-1" in str(exc.value)
        assert "arp-scan" in exc.value.hint

    def test_scan_failure_counts_as_empty(self, run_config, fake_clock):
        scans = [completed("", returncode=1, stderr="permission denied"), completed(scan_output(list(MACS)))]
        with mock.patch("subprocess.run", side_effect=scans):
            result = self.discovery(run_config, fake_clock).discover(MACS)

        assert result.attempts == 2


class TestProvisionedNodes:
    def test_prefers_discovered_ip(self, control_planes):
        nodes = provisioned_nodes(control_planes[:1], MACS, {"cp-1": "192.168.1.101"})

        assert nodes[0].mac_address == MACS["cp-1"]
        assert nodes[0].static_ip == "192.168.1.21"
        assert nodes[0].target_ip == "192.168.1.101"

    def test_falls_back_to_static(self, control_planes):
        nodes = provisioned_nodes(control_planes[:1], MACS, {})

        assert nodes[0].dhcp_ip is None
        assert nodes[0].target_ip == "192.168.1.21"
