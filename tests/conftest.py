"""Shared test fixtures and an in-memory hypervisor."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from provisioner.hypervisor import Hypervisor, HypervisorError
from provisioner.models import DhcpLease, PoolInfo, ProvisionerConfig


class FakeHypervisor(Hypervisor):
    """Hypervisor double keeping networks, pools and domains in dictionaries.

    ``fail`` maps a method name to the raw error text that method should
    raise. When ``auto_lease`` is set, starting a domain publishes a DHCP
    lease for it on its network.
    """

    def __init__(self) -> None:
        self.networks: Dict[str, Dict[str, object]] = {}
        self.leases: Dict[str, List[DhcpLease]] = {}
        self.pools: Dict[str, PoolInfo] = {}
        self.domains: Dict[str, Dict[str, object]] = {}
        self.addresses: Dict[str, List[str]] = {}
        self.fail: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.auto_lease = True
        self.closed = False

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        if method in self.fail:
            raise HypervisorError(self.fail[method])

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def network_exists(self, name: str) -> bool:
        return name in self.networks

    def network_is_active(self, name: str) -> bool:
        self._record("network_is_active", name)
        return bool(self.networks.get(name, {}).get("active"))

    def define_network(self, xml: str) -> None:
        self._record("define_network", xml)
        name = ET.fromstring(xml).findtext("name")
        self.networks[name] = {"xml": xml, "active": False}

    def start_network(self, name: str) -> None:
        self._record("start_network", name)
        self.networks[name]["active"] = True

    def list_leases(self, network_name: str) -> List[DhcpLease]:
        self._record("list_leases", network_name)
        return list(self.leases.get(network_name, []))

    def lookup_pool(self, name: str) -> Optional[PoolInfo]:
        self._record("lookup_pool", name)
        return self.pools.get(name)

    def refresh_pool(self, name: str) -> None:
        self._record("refresh_pool", name)

    def domain_exists(self, name: str) -> bool:
        return name in self.domains

    def define_domain(self, xml: str) -> None:
        self._record("define_domain", xml)
        name = ET.fromstring(xml).findtext("name")
        self.domains[name] = {"xml": xml, "state": 5}

    def start_domain(self, name: str) -> None:
        self._record("start_domain", name)
        domain = self.domains[name]
        domain["state"] = 1
        if self.auto_lease:
            root = ET.fromstring(domain["xml"])
            iface = root.find("./devices/interface")
            network = iface.find("source").get("network")
            mac = iface.find("mac").get("address")
            tag = network.rsplit("-", 1)[1]
            leases = self.leases.setdefault(network, [])
            address = f"192.168.{tag}.{10 + len(leases)}"
            leases.append(DhcpLease(hostname=name, mac=mac, ipaddr=address))

    def undefine_domain(self, name: str) -> None:
        self._record("undefine_domain", name)
        self.domains.pop(name, None)

    def domain_state(self, name: str) -> Optional[int]:
        domain = self.domains.get(name)
        return None if domain is None else int(domain["state"])

    def list_domains(self) -> List[str]:
        return sorted(self.domains)

    def interface_addresses(self, name: str) -> List[str]:
        self._record("interface_addresses", name)
        return list(self.addresses.get(name, []))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_hypervisor(provisioner_config) -> FakeHypervisor:
    hv = FakeHypervisor()
    hv.pools["default"] = PoolInfo(name="default", path=provisioner_config.images_dir, active=True)
    return hv


@pytest.fixture
def provisioner_config(tmp_path) -> ProvisionerConfig:
    """Return a configuration rooted in a temporary directory with a fake base image."""
    images_dir = tmp_path / "images"
    images_dir.mkdir()
    base_image = tmp_path / "base" / "golden.img"
    base_image.parent.mkdir()
    base_image.write_bytes(b"QFI\xfb" + b"\0" * 1020)
    return ProvisionerConfig(
        libvirt_uri="test:///default",
        storage_pool="default",
        images_dir=images_dir,
        base_image=base_image,
        seed_dir=tmp_path / "seeds",
        scratch_dir=None,
        guest_username="ubuntu",
        password_length=16,
        ssh_pubkey=None,
        seed_tool="genisoimage",
        lease_poll_attempts=3,
        lease_poll_interval=0.01,
        lease_poll_backoff=2.0,
        lease_poll_max_interval=0.05,
        lease_poll_timeout=5.0,
    )


@pytest.fixture
def fake_tools(monkeypatch):
    """Replace external image tools with in-process stand-ins.

    genisoimage writes its ``-output`` file, qemu-img is recorded, and
    password hashing returns a fixed value.
    """
    calls: Dict[str, List[List[str]]] = {"seed": [], "storage": []}

    def _seed_run(cmd, check=True, **kwargs):
        calls["seed"].append(cmd)
        Path(cmd[cmd.index("-output") + 1]).write_bytes(b"iso")

    def _storage_run(cmd, check=True, **kwargs):
        calls["storage"].append(cmd)

    monkeypatch.setattr("provisioner.seed.run", _seed_run)
    monkeypatch.setattr("provisioner.seed.hash_password", lambda password: "$2b$12$fakehash")
    monkeypatch.setattr("provisioner.storage.run", _storage_run)
    monkeypatch.setattr("provisioner.storage.virtual_size", lambda image: 2 * 1024**3)
    return calls


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that load_config() reads, used to ensure a clean slate.
_CONFIG_ENV_VARS = [
    "PROVISIONER_CONFIG",
    "LIBVIRT_URI",
    "STORAGE_POOL",
    "IMAGES_DIR",
    "BASE_IMAGE",
    "SEED_DIR",
    "SCRATCH_DIR",
    "GUEST_USERNAME",
    "PASSWORD_LENGTH",
    "SSH_PUBKEY",
    "SEED_TOOL",
    "CPU_MIN",
    "CPU_MAX",
    "MEMORY_MIN",
    "MEMORY_MAX",
    "DISK_MIN",
    "DISK_MAX",
    "LEASE_POLL_ATTEMPTS",
    "LEASE_POLL_INTERVAL",
    "LEASE_POLL_BACKOFF",
    "LEASE_POLL_MAX_INTERVAL",
    "LEASE_POLL_TIMEOUT",
    "ROLLBACK_ON_FAILURE",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear all environment variables that load_config() reads and hide the system config file."""
    for key in _CONFIG_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("provisioner.config.DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
