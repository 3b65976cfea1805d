"""libvirt-python implementation of the hypervisor interface."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from provisioner.exceptions import ConnectionFailed, NotConnected, PermissionDenied
from provisioner.hypervisor import Hypervisor, HypervisorError
from provisioner.models import DhcpLease, PoolInfo
from provisioner.utils import log


def _message(exc: "libvirt.libvirtError") -> str:
    message = exc.get_error_message() if hasattr(exc, "get_error_message") else None
    return message or str(exc)


class LibvirtHypervisor(Hypervisor):
    def __init__(self, conn: "libvirt.virConnect", uri: str) -> None:
        self.conn: Optional[libvirt.virConnect] = conn
        self.uri = uri

    @classmethod
    def connect(cls, uri: str) -> "LibvirtHypervisor":
        try:
            conn = libvirt.open(uri)
        except libvirt.libvirtError as exc:
            message = _message(exc)
            if "permission denied" in message.lower() or "authentication" in message.lower():
                raise PermissionDenied(uri, message) from exc
            raise ConnectionFailed(uri, message) from exc
        if conn is None:
            raise ConnectionFailed(uri, "libvirt.open returned no connection")
        log("DEBUG", f"Connected to libvirt at {uri}")
        return cls(conn, uri)

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except libvirt.libvirtError as exc:
                log("WARN", f"Failed to close libvirt connection: {_message(exc)}")
            self.conn = None

    def _conn(self) -> "libvirt.virConnect":
        if self.conn is None:
            raise NotConnected()
        return self.conn

    # networks --------------------------------------------------------------

    def _network(self, name: str):
        try:
            return self._conn().networkLookupByName(name)
        except libvirt.libvirtError:
            return None

    def network_exists(self, name: str) -> bool:
        return self._network(name) is not None

    def network_is_active(self, name: str) -> bool:
        network = self._network(name)
        if network is None:
            return False
        try:
            return bool(network.isActive())
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc

    def define_network(self, xml: str) -> None:
        try:
            network = self._conn().networkDefineXML(xml)
            if network is None:
                raise HypervisorError("networkDefineXML returned no network")
            network.setAutostart(1)
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc

    def start_network(self, name: str) -> None:
        network = self._network(name)
        if network is None:
            raise HypervisorError(f"network '{name}' is not defined")
        try:
            network.create()
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc

    def list_leases(self, network_name: str) -> List[DhcpLease]:
        network = self._network(network_name)
        if network is None:
            raise HypervisorError(f"network '{network_name}' is not defined")
        try:
            leases = network.DHCPLeases() or []
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc
        return [
            DhcpLease(
                hostname=lease.get("hostname") or "",
                mac=(lease.get("mac") or "").lower(),
                ipaddr=lease.get("ipaddr") or "",
            )
            for lease in leases
        ]

    # storage ---------------------------------------------------------------

    def _pool(self, name: str):
        try:
            return self._conn().storagePoolLookupByName(name)
        except libvirt.libvirtError:
            return None

    def lookup_pool(self, name: str) -> Optional[PoolInfo]:
        pool = self._pool(name)
        if pool is None:
            return None
        try:
            root = ET.fromstring(pool.XMLDesc(0))
            active = bool(pool.isActive())
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc
        target = root.findtext("./target/path") or ""
        return PoolInfo(name=name, path=Path(target), active=active)

    def refresh_pool(self, name: str) -> None:
        pool = self._pool(name)
        if pool is None:
            raise HypervisorError(f"storage pool '{name}' is not defined")
        try:
            pool.refresh(0)
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc

    # domains ---------------------------------------------------------------

    def _domain(self, name: str):
        try:
            return self._conn().lookupByName(name)
        except libvirt.libvirtError:
            return None

    def domain_exists(self, name: str) -> bool:
        return self._domain(name) is not None

    def define_domain(self, xml: str) -> None:
        try:
            domain = self._conn().defineXML(xml)
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc
        if domain is None:
            raise HypervisorError("defineXML returned no domain")

    def start_domain(self, name: str) -> None:
        domain = self._domain(name)
        if domain is None:
            raise HypervisorError(f"domain '{name}' is not defined")
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc

    def undefine_domain(self, name: str) -> None:
        domain = self._domain(name)
        if domain is None:
            return
        try:
            if domain.isActive():
                domain.destroy()
            domain.undefine()
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc

    def domain_state(self, name: str) -> Optional[int]:
        domain = self._domain(name)
        if domain is None:
            return None
        try:
            state, _reason = domain.state()
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc
        return int(state)

    def list_domains(self) -> List[str]:
        try:
            return sorted(domain.name() for domain in self._conn().listAllDomains(0))
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc

    def interface_addresses(self, name: str) -> List[str]:
        domain = self._domain(name)
        if domain is None:
            return []
        try:
            interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0)
        except libvirt.libvirtError as exc:
            raise HypervisorError(_message(exc)) from exc
        addresses = []
        for iface in (interfaces or {}).values():
            for addr in iface.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4 and addr.get("addr"):
                    addresses.append(addr["addr"])
        return addresses
