"""Data models for the VM provisioner."""

from __future__ import annotations

import ipaddress
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional, Tuple

from provisioner.constants import (
    BRIDGE_NAME_TEMPLATE,
    CPU_BOUNDS,
    DEFAULT_CPU,
    DEFAULT_DISK_GB,
    DEFAULT_GUEST_USERNAME,
    DEFAULT_MEMORY_MB,
    DHCP_RANGE_OFFSETS,
    DISK_BOUNDS_GB,
    LEASE_POLL_ATTEMPTS,
    LEASE_POLL_BACKOFF,
    LEASE_POLL_INTERVAL,
    LEASE_POLL_MAX_INTERVAL,
    LEASE_POLL_TIMEOUT,
    MEMORY_BOUNDS_MB,
    NETWORK_NAME_TEMPLATE,
    SUBNET_TEMPLATE,
)
from provisioner.exceptions import ManagerError


class UserIdentity(str, Enum):
    USER1 = "user1"
    USER2 = "user2"
    USER3 = "user3"


# Fixed at build time; the network layout of each user depends on it.
ISOLATION_TAGS: Dict[UserIdentity, int] = {
    UserIdentity.USER1: 100,
    UserIdentity.USER2: 101,
    UserIdentity.USER3: 102,
}


class VMState(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    FAILED = "failed"


_TRANSITIONS = {
    VMState.CREATING: {VMState.RUNNING, VMState.FAILED},
    VMState.RUNNING: set(),
    VMState.FAILED: set(),
}


class DhcpLease(NamedTuple):
    hostname: str
    mac: str
    ipaddr: str


class PoolInfo(NamedTuple):
    name: str
    path: Path
    active: bool


@dataclass
class VMRequest:
    name: str
    user: str
    cpu: int = DEFAULT_CPU
    memory_mb: int = DEFAULT_MEMORY_MB
    disk_gb: int = DEFAULT_DISK_GB


@dataclass
class IsolationNetwork:
    tag: int
    active: bool = False

    @property
    def name(self) -> str:
        return NETWORK_NAME_TEMPLATE.format(tag=self.tag)

    @property
    def bridge(self) -> str:
        return BRIDGE_NAME_TEMPLATE.format(tag=self.tag)

    @property
    def subnet(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(SUBNET_TEMPLATE.format(tag=self.tag))

    @property
    def gateway(self) -> str:
        return str(self.subnet.network_address + 1)

    @property
    def netmask(self) -> str:
        return str(self.subnet.netmask)

    @property
    def dhcp_range(self) -> Tuple[str, str]:
        start, end = DHCP_RANGE_OFFSETS
        base = self.subnet.network_address
        return str(base + start), str(base + end)


@dataclass
class StorageVolume:
    path: Path
    format: str
    size_gb: int = 0
    source: Optional[Path] = None

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class VMRecord:
    """State of one provisioned VM as seen by the caller.

    ``state`` only moves forward (creating -> running | failed). ``address``
    and ``secret`` may each be assigned once. ``pending_reason`` says why the
    address wait ended without a lease.
    """

    name: str
    user: UserIdentity
    isolation_tag: int
    cpu: int
    memory_mb: int
    disk_gb: int
    username: str = DEFAULT_GUEST_USERNAME
    network_name: str = ""
    mac_address: str = ""
    state: VMState = VMState.CREATING
    address: str = ""
    address_pending: bool = False
    pending_reason: str = ""
    secret: str = field(default="", repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def advance(self, state: VMState) -> None:
        with self._lock:
            if state not in _TRANSITIONS[self.state]:
                raise ManagerError(f"VM '{self.name}' cannot move from {self.state.value} to {state.value}")
            self.state = state

    def set_secret(self, secret: str) -> None:
        with self._lock:
            if self.secret:
                raise ManagerError(f"Secret for VM '{self.name}' is already set")
            self.secret = secret

    def set_address(self, address: str) -> None:
        with self._lock:
            if self.address:
                raise ManagerError(f"Address for VM '{self.name}' is already set")
            self.address = address
            self.address_pending = False
            self.pending_reason = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "user": self.user.value,
            "isolation_tag": self.isolation_tag,
            "status": self.state.value,
            "address_pending": self.address_pending,
            "ssh": {
                "address": self.address,
                "username": self.username,
                "secret": self.secret,
            },
        }


@dataclass
class ProvisionerConfig:
    libvirt_uri: str
    storage_pool: str
    images_dir: Path
    base_image: Path
    seed_dir: Path
    scratch_dir: Optional[Path]
    guest_username: str
    password_length: int
    ssh_pubkey: Optional[str]
    seed_tool: str
    cpu_bounds: Tuple[int, int] = CPU_BOUNDS
    memory_bounds_mb: Tuple[int, int] = MEMORY_BOUNDS_MB
    disk_bounds_gb: Tuple[int, int] = DISK_BOUNDS_GB
    lease_poll_attempts: int = LEASE_POLL_ATTEMPTS
    lease_poll_interval: float = LEASE_POLL_INTERVAL
    lease_poll_backoff: float = LEASE_POLL_BACKOFF
    lease_poll_max_interval: float = LEASE_POLL_MAX_INTERVAL
    lease_poll_timeout: float = LEASE_POLL_TIMEOUT
    rollback_on_failure: bool = True
