"""Hypervisor control-plane interface used by the provisioners.

The provisioners only talk to a ``Hypervisor``; ``open_hypervisor`` returns
the libvirt-backed implementation. Raw control-plane failures surface as
``HypervisorError`` and are translated into the typed provisioning errors
by the component that issued the call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from provisioner.exceptions import ManagerError
from provisioner.models import DhcpLease, PoolInfo


class HypervisorError(ManagerError):
    """A control-plane call was rejected; ``detail`` holds the raw text."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class Hypervisor(ABC):
    # networks
    @abstractmethod
    def network_exists(self, name: str) -> bool: ...

    @abstractmethod
    def network_is_active(self, name: str) -> bool: ...

    @abstractmethod
    def define_network(self, xml: str) -> None: ...

    @abstractmethod
    def start_network(self, name: str) -> None: ...

    @abstractmethod
    def list_leases(self, network_name: str) -> List[DhcpLease]: ...

    # storage
    @abstractmethod
    def lookup_pool(self, name: str) -> Optional[PoolInfo]: ...

    @abstractmethod
    def refresh_pool(self, name: str) -> None: ...

    # domains
    @abstractmethod
    def domain_exists(self, name: str) -> bool: ...

    @abstractmethod
    def define_domain(self, xml: str) -> None: ...

    @abstractmethod
    def start_domain(self, name: str) -> None: ...

    @abstractmethod
    def undefine_domain(self, name: str) -> None: ...

    @abstractmethod
    def domain_state(self, name: str) -> Optional[int]:
        """Return the numeric domain state, or None when the domain is unknown."""

    @abstractmethod
    def list_domains(self) -> List[str]: ...

    @abstractmethod
    def interface_addresses(self, name: str) -> List[str]:
        """IPv4 addresses the hypervisor reports for the domain's interfaces."""

    def close(self) -> None:
        pass

    def __enter__(self) -> "Hypervisor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def open_hypervisor(uri: str) -> Hypervisor:
    from provisioner.libvirt_backend import LibvirtHypervisor

    return LibvirtHypervisor.connect(uri)
