"""Shared test fixtures for homecluster tests."""

from typing import List
from unittest import mock

import pytest
import yaml

from homecluster.config import RetryPolicy, RunConfig
from homecluster.inventory import Inventory
from homecluster.models import NodeRole, NodeSpec

MACS = {
    "cp-1": "52:54:00:00:00:01",
    "cp-2": "52:54:00:00:00:02",
    "cp-3": "52:54:00:00:00:03",
    "worker-1": "52:54:00:00:00:11",
    "worker-2": "52:54:00:00:00:12",
}

DHCP_IPS = {
    "cp-1": "192.168.1.101",
    "cp-2": "192.168.1.102",
    "cp-3": "192.168.1.103",
    "worker-1": "192.168.1.111",
    "worker-2": "192.168.1.112",
}


class FakeClock:
    """Monotonic clock that only moves when sleep is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_node(name, role, ip, **kwargs):
    values = dict(
        name=name,
        role=role,
        ip=ip,
        gateway="192.168.1.1",
        nameservers=("192.168.1.1", "1.1.1.1"),
        vcpus=2,
        memory_mib=4096,
        disk_size_gib=20,
    )
    values.update(kwargs)
    return NodeSpec(**values)


def nodes_data(with_lb: bool = True) -> dict:
    """nodes.yaml content: 3 control-plane, 2 workers and optionally a load balancer."""
    entries = []
    for i in (1, 2, 3):
        entries.append({"name": f"cp-{i}", "role": "control-plane", "ip": f"192.168.1.2{i}/24"})
    for i in (1, 2):
        entries.append({"name": f"worker-{i}", "role": "worker", "ip": f"192.168.1.3{i}"})
    if with_lb:
        entries.append({"name": "haproxy", "role": "load-balancer", "ip": "192.168.1.244"})
    for entry in entries:
        entry.update(gateway="192.168.1.1", nameservers=["192.168.1.1"], vcpus=2, memory_mib=2048, disk_size_gib=10)
    return {"nodes": entries}


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def run_config(tmp_path):
    """RunConfig rooted in a temp dir with short, test-friendly timings."""
    config = RunConfig(
        root_dir=tmp_path,
        vms_dir=tmp_path / "vms",
        cluster_dir=tmp_path / "cluster",
        nodes_file=tmp_path / "nodes.yaml",
        scan_interface="br0",
        retry=RetryPolicy(
            poll_interval=10.0,
            node_ready_timeout=60.0,
            quorum_timeout=60.0,
            haproxy_timeout=20.0,
            k8s_api_timeout=60.0,
            cilium_timeout=60.0,
        ),
    )
    config.vms_dir.mkdir()
    config.cluster_dir.mkdir()
    return config


@pytest.fixture
def nodes_file(run_config):
    with open(run_config.nodes_file, "w") as f:
        yaml.safe_dump(nodes_data(), f)
    return run_config.nodes_file


@pytest.fixture
def inventory(nodes_file):
    return Inventory.load(nodes_file)


@pytest.fixture
def control_planes():
    return [make_node(f"cp-{i}", NodeRole.CONTROL_PLANE, f"192.168.1.2{i}") for i in (1, 2, 3)]


@pytest.fixture
def workers():
    return [make_node(f"worker-{i}", NodeRole.WORKER, f"192.168.1.3{i}") for i in (1, 2)]


@pytest.fixture
def mock_talos():
    talos = mock.MagicMock()
    talos.is_reachable_insecure.return_value = True
    talos.is_reachable_authenticated.return_value = True
    talos.bootstrap.return_value = "issued"
    return talos


def completed(stdout="", returncode=0, stderr=""):
    return mock.MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)
