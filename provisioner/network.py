"""Per-user isolation networks and guest address discovery."""

from __future__ import annotations

import threading
from typing import Dict, Optional, Union
from xml.etree.ElementTree import Element, SubElement

from provisioner.exceptions import (
    DhcpLeaseFailed,
    InvalidNetworkConfig,
    IpAddressNotFound,
    NetworkDefineFailed,
    NetworkNotFound,
    NetworkStartFailed,
)
from provisioner.hypervisor import Hypervisor, HypervisorError
from provisioner.models import ISOLATION_TAGS, IsolationNetwork, UserIdentity
from provisioner.utils import element_to_str, log


def parse_user(user: Union[str, UserIdentity]) -> Optional[UserIdentity]:
    if isinstance(user, UserIdentity):
        return user
    try:
        return UserIdentity(str(user))
    except ValueError:
        return None


def isolation_tag_for(user: Union[str, UserIdentity]) -> int:
    identity = parse_user(user)
    if identity is None or identity not in ISOLATION_TAGS:
        raise InvalidNetworkConfig(user, "no isolation tag is assigned to this user")
    return ISOLATION_TAGS[identity]


def network_for(user: Union[str, UserIdentity]) -> IsolationNetwork:
    return IsolationNetwork(tag=isolation_tag_for(user))


def network_name_for(user: Union[str, UserIdentity]) -> str:
    return network_for(user).name


def ip_range_for(user: Union[str, UserIdentity]) -> Dict[str, object]:
    network = network_for(user)
    dhcp_start, dhcp_end = network.dhcp_range
    return {
        "network": str(network.subnet),
        "gateway": network.gateway,
        "dhcp_start": dhcp_start,
        "dhcp_end": dhcp_end,
        "vlan_id": network.tag,
    }


def render_network_xml(network: IsolationNetwork) -> str:
    """Render a NAT network definition with a DHCP range on its bridge."""
    root = Element("network")
    SubElement(root, "name").text = network.name
    SubElement(root, "forward", mode="nat")
    SubElement(root, "bridge", name=network.bridge, stp="on", delay="0")
    ip_el = SubElement(root, "ip", address=network.gateway, netmask=network.netmask)
    dhcp = SubElement(ip_el, "dhcp")
    start, end = network.dhcp_range
    SubElement(dhcp, "range", start=start, end=end)
    return element_to_str(root)


def interface_element(network: IsolationNetwork, mac_address: str) -> Element:
    """Build the domain <interface> attaching a guest to ``network``."""
    iface = Element("interface", type="network")
    SubElement(iface, "mac", address=mac_address.lower())
    SubElement(iface, "source", network=network.name)
    SubElement(iface, "model", type="virtio")
    return iface


class NetworkProvisioner:
    """Get-or-create the isolation network of each user."""

    def __init__(self, hypervisor: Hypervisor) -> None:
        self.hypervisor = hypervisor
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, tag: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(tag, threading.Lock())

    def resolve_network(self, user: Union[str, UserIdentity]) -> IsolationNetwork:
        network = network_for(user)
        with self._lock_for(network.tag):
            if not self.hypervisor.network_exists(network.name):
                log("INFO", f"Defining isolation network {network.name} ({network.subnet})")
                try:
                    self.hypervisor.define_network(render_network_xml(network))
                except HypervisorError as exc:
                    raise NetworkDefineFailed(network.name, exc.detail) from exc
            try:
                active = self.hypervisor.network_is_active(network.name)
            except HypervisorError as exc:
                raise NetworkStartFailed(network.name, exc.detail) from exc
            if not active:
                log("INFO", f"Starting isolation network {network.name}")
                try:
                    self.hypervisor.start_network(network.name)
                except HypervisorError as exc:
                    raise NetworkStartFailed(network.name, exc.detail) from exc
            network.active = True
        log("DEBUG", f"Network {network.name} ready on {network.bridge}")
        return network

    def get_address_for(self, vm_name: str, network_name: str, mac_address: Optional[str] = None) -> str:
        """Return the leased IPv4 address of ``vm_name`` on ``network_name``.

        Leases are matched by hostname, then by MAC. When the lease table has
        no entry the hypervisor's interface view of the domain is consulted.
        """
        if not self.hypervisor.network_exists(network_name):
            raise NetworkNotFound(network_name)
        try:
            leases = self.hypervisor.list_leases(network_name)
        except HypervisorError as exc:
            raise DhcpLeaseFailed(network_name, exc.detail) from exc

        mac = mac_address.lower() if mac_address else None
        for lease in leases:
            if lease.ipaddr and (lease.hostname == vm_name or (mac and lease.mac == mac)):
                return lease.ipaddr

        try:
            addresses = self.hypervisor.interface_addresses(vm_name)
        except HypervisorError as exc:
            raise DhcpLeaseFailed(network_name, exc.detail) from exc
        if addresses:
            return addresses[0]
        raise IpAddressNotFound(vm_name, network_name)
