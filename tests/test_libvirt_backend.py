"""Tests for provisioner.libvirt_backend module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

libvirt = pytest.importorskip("libvirt")

from provisioner.exceptions import ConnectionFailed, NotConnected, PermissionDenied  # noqa: E402
from provisioner.hypervisor import HypervisorError, open_hypervisor  # noqa: E402
from provisioner.libvirt_backend import LibvirtHypervisor  # noqa: E402
from provisioner.models import DhcpLease, PoolInfo  # noqa: E402


def _error(message: str) -> "libvirt.libvirtError":
    err = libvirt.libvirtError(message)
    err.get_error_message = lambda: message
    return err


@pytest.fixture
def conn():
    return MagicMock()


@pytest.fixture
def hv(conn):
    return LibvirtHypervisor(conn, "qemu:///system")


class TestConnect:
    def test_open(self):
        with patch("provisioner.libvirt_backend.libvirt.open", return_value=MagicMock()) as mock_open:
            hv = LibvirtHypervisor.connect("qemu:///system")
        mock_open.assert_called_once_with("qemu:///system")
        assert hv.uri == "qemu:///system"

    def test_open_hypervisor_factory(self):
        with patch("provisioner.libvirt_backend.libvirt.open", return_value=MagicMock()):
            assert isinstance(open_hypervisor("test:///default"), LibvirtHypervisor)

    def test_connection_failed(self):
        with patch("provisioner.libvirt_backend.libvirt.open", side_effect=_error("Failed to connect socket")):
            with pytest.raises(ConnectionFailed) as exc:
                LibvirtHypervisor.connect("qemu:///system")
        assert exc.value.context["libvirt_error"] == "Failed to connect socket"

    def test_permission_denied(self):
        with patch("provisioner.libvirt_backend.libvirt.open", side_effect=_error("Permission denied")):
            with pytest.raises(PermissionDenied):
                LibvirtHypervisor.connect("qemu:///system")

    def test_none_connection(self):
        with patch("provisioner.libvirt_backend.libvirt.open", return_value=None):
            with pytest.raises(ConnectionFailed):
                LibvirtHypervisor.connect("qemu:///system")

    def test_close_then_use(self, hv, conn):
        hv.close()
        conn.close.assert_called_once()
        with pytest.raises(NotConnected):
            hv.list_domains()


class TestNetworks:
    def test_missing_network(self, hv, conn):
        conn.networkLookupByName.side_effect = _error("Network not found")
        assert hv.network_exists("vm-network-100") is False
        assert hv.network_is_active("vm-network-100") is False

    def test_define_sets_autostart(self, hv, conn):
        network = MagicMock()
        conn.networkDefineXML.return_value = network
        hv.define_network("<network/>")
        conn.networkDefineXML.assert_called_once_with("<network/>")
        network.setAutostart.assert_called_once_with(1)

    def test_define_error_text(self, hv, conn):
        conn.networkDefineXML.side_effect = _error("operation failed: bridge exists")
        with pytest.raises(HypervisorError) as exc:
            hv.define_network("<network/>")
        assert exc.value.detail == "operation failed: bridge exists"

    def test_start(self, hv, conn):
        network = conn.networkLookupByName.return_value
        hv.start_network("vm-network-100")
        network.create.assert_called_once_with()

    def test_leases(self, hv, conn):
        conn.networkLookupByName.return_value.DHCPLeases.return_value = [
            {"hostname": "web", "mac": "52:54:00:AA:BB:CC", "ipaddr": "192.168.100.10"},
            {"mac": "52:54:00:00:00:01", "ipaddr": "192.168.100.11"},
        ]
        assert hv.list_leases("vm-network-100") == [
            DhcpLease("web", "52:54:00:aa:bb:cc", "192.168.100.10"),
            DhcpLease("", "52:54:00:00:00:01", "192.168.100.11"),
        ]


class TestStorage:
    def test_lookup_pool(self, hv, conn):
        pool = conn.storagePoolLookupByName.return_value
        pool.XMLDesc.return_value = "<pool type='dir'><name>default</name><target><path>/var/lib/libvirt/images</path></target></pool>"
        pool.isActive.return_value = 1
        assert hv.lookup_pool("default") == PoolInfo("default", Path("/var/lib/libvirt/images"), True)

    def test_missing_pool(self, hv, conn):
        conn.storagePoolLookupByName.side_effect = _error("Storage pool not found")
        assert hv.lookup_pool("default") is None

    def test_refresh(self, hv, conn):
        hv.refresh_pool("default")
        conn.storagePoolLookupByName.return_value.refresh.assert_called_once_with(0)


class TestDomains:
    def test_define_and_start(self, hv, conn):
        hv.define_domain("<domain/>")
        conn.defineXML.assert_called_once_with("<domain/>")
        hv.start_domain("web")
        conn.lookupByName.return_value.create.assert_called_once_with()

    def test_start_error(self, hv, conn):
        conn.lookupByName.return_value.create.side_effect = _error("internal error: process exited")
        with pytest.raises(HypervisorError, match="process exited"):
            hv.start_domain("web")

    def test_undefine_running_domain(self, hv, conn):
        domain = conn.lookupByName.return_value
        domain.isActive.return_value = 1
        hv.undefine_domain("web")
        domain.destroy.assert_called_once_with()
        domain.undefine.assert_called_once_with()

    def test_undefine_missing_domain(self, hv, conn):
        conn.lookupByName.side_effect = _error("Domain not found")
        hv.undefine_domain("web")

    def test_state(self, hv, conn):
        conn.lookupByName.return_value.state.return_value = [1, 1]
        assert hv.domain_state("web") == 1

    def test_list_domains(self, hv, conn):
        b, a = MagicMock(), MagicMock()
        b.name.return_value = "b"
        a.name.return_value = "a"
        conn.listAllDomains.return_value = [b, a]
        assert hv.list_domains() == ["a", "b"]

    def test_interface_addresses(self, hv, conn):
        conn.lookupByName.return_value.interfaceAddresses.return_value = {
            "vnet0": {
                "hwaddr": "52:54:00:aa:bb:cc",
                "addrs": [
                    {"type": libvirt.VIR_IP_ADDR_TYPE_IPV6, "addr": "fe80::1", "prefix": 64},
                    {"type": libvirt.VIR_IP_ADDR_TYPE_IPV4, "addr": "192.168.100.10", "prefix": 24},
                ],
            }
        }
        assert hv.interface_addresses("web") == ["192.168.100.10"]
