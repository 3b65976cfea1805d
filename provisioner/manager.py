"""VM provisioning orchestration."""

from __future__ import annotations

import socket
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from provisioner.constants import DOMAIN_STATES, VM_NAME_MAX_LENGTH, VM_NAME_RE
from provisioner.credentials import generate_password
from provisioner.domain import DomainLauncher
from provisioner.exceptions import (
    DhcpLeaseFailed,
    DomainNotFound,
    DomainStartFailed,
    EmptyParameter,
    InvalidCharacters,
    InvalidCPU,
    InvalidDisk,
    InvalidMemory,
    InvalidUser,
    InvalidVMName,
    IpAddressNotFound,
    NetworkNotFound,
    ParameterTooLong,
    ProvisionerError,
    ProvisioningCancelled,
    SshInfoFailed,
    UnexpectedProvisioningError,
    VmAlreadyExists,
)
from provisioner.hypervisor import Hypervisor, open_hypervisor
from provisioner.models import (
    ISOLATION_TAGS,
    ProvisionerConfig,
    StorageVolume,
    UserIdentity,
    VMRecord,
    VMRequest,
    VMState,
)
from provisioner.network import NetworkProvisioner, isolation_tag_for, network_name_for, parse_user
from provisioner.seed import SeedBuilder
from provisioner.storage import StorageProvisioner
from provisioner.utils import log

RequestLike = Union[VMRequest, Mapping[str, Any]]


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


class VMManager:
    """Runs one create-and-start request through every provisioning stage.

    Stages: validate, reserve the name, resolve the user's network, generate
    the login secret, build the seed, provision disk and seed volumes, define
    and start the domain, then poll for the guest address.
    """

    def __init__(
        self,
        hypervisor: Hypervisor,
        config: ProvisionerConfig,
        networks: Optional[NetworkProvisioner] = None,
        storage: Optional[StorageProvisioner] = None,
        seeds: Optional[SeedBuilder] = None,
        launcher: Optional[DomainLauncher] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.hypervisor = hypervisor
        self.config = config
        self.networks = networks or NetworkProvisioner(hypervisor)
        self.storage = storage or StorageProvisioner(hypervisor, config.storage_pool, config.base_image)
        self.seeds = seeds or SeedBuilder(
            config.seed_dir,
            tool=config.seed_tool,
            scratch_dir=config.scratch_dir,
            ssh_pubkey=config.ssh_pubkey,
        )
        self.launcher = launcher or DomainLauncher(hypervisor)
        self._clock = clock
        self._sleep = sleep
        self._inflight: Set[str] = set()
        self._inflight_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ProvisionerConfig) -> "VMManager":
        return cls(open_hypervisor(config.libvirt_uri), config)

    def close(self) -> None:
        self.hypervisor.close()

    # validation ------------------------------------------------------------

    def validate_params(self, params: Mapping[str, Any]) -> VMRequest:
        """Check a raw request and return it normalised with defaults applied."""
        name = params.get("name")
        name = name.strip() if isinstance(name, str) else name
        if not name:
            raise EmptyParameter("name")
        if not isinstance(name, str):
            raise InvalidVMName(str(name), "name must be a string")
        if len(name) > VM_NAME_MAX_LENGTH:
            raise ParameterTooLong("name", len(name), VM_NAME_MAX_LENGTH)
        if not VM_NAME_RE.match(name):
            raise InvalidCharacters("name", name)

        user = params.get("user")
        if user is None or (isinstance(user, str) and not user.strip()):
            raise EmptyParameter("user")
        identity = parse_user(user.strip() if isinstance(user, str) else user)
        if identity is None or identity not in ISOLATION_TAGS:
            raise InvalidUser(user, [u.value for u in ISOLATION_TAGS])

        defaults = VMRequest(name=name, user=identity.value)
        checks = (
            ("cpu", "cpu", defaults.cpu, self.config.cpu_bounds, InvalidCPU),
            ("memory", "memory_mb", defaults.memory_mb, self.config.memory_bounds_mb, InvalidMemory),
            ("disk", "disk_gb", defaults.disk_gb, self.config.disk_bounds_gb, InvalidDisk),
        )
        values: Dict[str, int] = {}
        for key, attr, default, (low, high), error in checks:
            raw = params.get(key, params.get(attr))
            if raw is None or raw == "":
                values[attr] = default
                continue
            value = _as_int(raw)
            if value is None or not low <= value <= high:
                raise error(raw, low, high)
            values[attr] = value
        return VMRequest(name=name, user=identity.value, **values)

    def create_vm_instance(self, params: Mapping[str, Any]) -> VMRecord:
        request = self.validate_params(params)
        return self._new_record(request)

    def _new_record(self, request: VMRequest) -> VMRecord:
        return VMRecord(
            name=request.name,
            user=UserIdentity(request.user),
            isolation_tag=isolation_tag_for(request.user),
            cpu=request.cpu,
            memory_mb=request.memory_mb,
            disk_gb=request.disk_gb,
            username=self.config.guest_username,
            network_name=network_name_for(request.user),
        )

    # create ----------------------------------------------------------------

    def _reserve(self, name: str) -> None:
        with self._inflight_lock:
            if name in self._inflight or self.hypervisor.domain_exists(name):
                raise VmAlreadyExists(name)
            self._inflight.add(name)

    def _release_name(self, name: str) -> None:
        with self._inflight_lock:
            self._inflight.discard(name)

    def _checkpoint(
        self,
        name: str,
        stage: str,
        cancel: Optional[threading.Event],
        deadline: Optional[float],
    ) -> None:
        if cancel is not None and cancel.is_set():
            raise ProvisioningCancelled(name, stage)
        if deadline is not None and self._clock() >= deadline:
            raise ProvisioningCancelled(name, stage, "deadline exceeded")

    def create_and_start(
        self,
        request: RequestLike,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> VMRecord:
        """Provision and boot a VM, returning its record with SSH details.

        ``deadline`` is an absolute value of the manager's clock
        (``time.monotonic`` by default). Cancellation or an expired deadline
        before the domain starts releases everything created so far and
        raises ``ProvisioningCancelled``; afterwards the record is returned
        with ``address_pending`` set.
        """
        if isinstance(request, VMRequest):
            params: Mapping[str, Any] = {
                "name": request.name,
                "user": request.user,
                "cpu": request.cpu,
                "memory": request.memory_mb,
                "disk": request.disk_gb,
            }
        else:
            params = request
        validated = self.validate_params(params)
        self._reserve(validated.name)
        try:
            record = self._new_record(validated)
            try:
                self._provision(record, cancel, deadline)
            except ProvisionerError:
                record.advance(VMState.FAILED)
                raise
            except Exception as exc:
                record.advance(VMState.FAILED)
                raise UnexpectedProvisioningError(record.name, f"{type(exc).__name__}: {exc}") from exc
            except BaseException:
                record.advance(VMState.FAILED)
                raise
            record.advance(VMState.RUNNING)
            self._await_address(record, cancel, deadline)
        finally:
            self._release_name(validated.name)

        if record.address_pending:
            log("WARN", f"VM {record.name} is running; address not yet known ({record.pending_reason})")
        else:
            log("SUCCESS", f"VM {record.name} ready at {record.address}")
        return record

    def _provision(
        self,
        record: VMRecord,
        cancel: Optional[threading.Event],
        deadline: Optional[float],
    ) -> None:
        self._checkpoint(record.name, "network", cancel, deadline)
        network = self.networks.resolve_network(record.user)

        self._checkpoint(record.name, "seed", cancel, deadline)
        secret = generate_password(self.config.password_length)
        record.set_secret(secret)
        seed_image: Optional[Path] = self.seeds.build_seed(record.name, record.username, secret)

        volumes: List[StorageVolume] = []
        defined = False
        try:
            self._checkpoint(record.name, "storage", cancel, deadline)
            volumes.append(self.storage.provision_disk(record.name, record.disk_gb))
            seed_volume = self.storage.provision_seed_volume(record.name, seed_image)
            volumes.append(seed_volume)
            seed_image = None

            self._checkpoint(record.name, "domain", cancel, deadline)
            try:
                record.mac_address = self.launcher.define_and_start(record, volumes[0], seed_volume, network)
            except DomainStartFailed:
                defined = True
                raise
        except ProvisioningCancelled:
            log("WARN", f"Provisioning of {record.name} cancelled; releasing volumes")
            self._discard(seed_image, volumes)
            raise
        except ProvisionerError as exc:
            if self.config.rollback_on_failure:
                log("WARN", f"Rolling back {record.name} after {exc.error_code}")
                if defined:
                    self.launcher.undefine(record.name)
                self._discard(seed_image, volumes)
            else:
                log("WARN", f"Leaving artifacts of {record.name} in place for inspection")
                self._discard(seed_image, [])
            raise
        except BaseException as exc:
            # Unknown failure point: the domain may or may not exist.
            log("WARN", f"Releasing artifacts of {record.name} after {type(exc).__name__}")
            if defined or self.hypervisor.domain_exists(record.name):
                self.launcher.undefine(record.name)
            self._discard(seed_image, volumes)
            raise

    def _discard(self, seed_image: Optional[Path], volumes: List[StorageVolume]) -> None:
        if seed_image is not None:
            try:
                seed_image.unlink(missing_ok=True)
            except OSError as exc:
                log("WARN", f"Failed to remove seed image {seed_image}: {exc}")
        if volumes:
            self.storage.release(volumes)

    def _await_address(
        self,
        record: VMRecord,
        cancel: Optional[threading.Event],
        deadline: Optional[float],
    ) -> None:
        cfg = self.config
        stop_at = self._clock() + cfg.lease_poll_timeout
        if deadline is not None:
            stop_at = min(stop_at, deadline)
        interval = cfg.lease_poll_interval

        for attempt in range(1, cfg.lease_poll_attempts + 1):
            if cancel is not None and cancel.is_set():
                break
            try:
                address = self.networks.get_address_for(record.name, record.network_name, record.mac_address)
            except IpAddressNotFound:
                log("DEBUG", f"No lease for {record.name} yet (attempt {attempt}/{cfg.lease_poll_attempts})")
            except (DhcpLeaseFailed, NetworkNotFound) as exc:
                log("WARN", f"Lease lookup failed for {record.name}: {exc.details}")
            else:
                record.set_address(address)
                return

            remaining = stop_at - self._clock()
            if attempt == cfg.lease_poll_attempts or remaining <= 0:
                break
            delay = min(interval, remaining)
            if cancel is not None:
                if cancel.wait(delay):
                    break
            else:
                self._sleep(delay)
            interval = min(interval * cfg.lease_poll_backoff, cfg.lease_poll_max_interval)

        if cancel is not None and cancel.is_set():
            reason = "cancelled"
        elif deadline is not None and self._clock() >= deadline:
            reason = "deadline exceeded"
        else:
            reason = "no lease yet"
        record.address_pending = True
        record.pending_reason = reason

    # read-only helpers -----------------------------------------------------

    def vm_status(self, name: str) -> Dict[str, Any]:
        state = self.hypervisor.domain_state(name)
        if state is None:
            raise DomainNotFound(name)
        return {"name": name, "state": DOMAIN_STATES.get(state, "unknown"), "state_code": state}

    def list_vms(self) -> List[Dict[str, Any]]:
        vms = []
        for name in self.hypervisor.list_domains():
            state = self.hypervisor.domain_state(name)
            vms.append({"name": name, "state": DOMAIN_STATES.get(state, "unknown") if state is not None else "unknown"})
        return vms

    def wait_for_ssh(self, address: str, timeout: float = 60.0, port: int = 22, interval: float = 2.0) -> bool:
        """Poll until a TCP connection to ``address:port`` succeeds."""
        stop_at = self._clock() + timeout
        while True:
            try:
                with socket.create_connection((address, port), timeout=min(5.0, max(timeout, 0.1))):
                    return True
            except OSError:
                pass
            if self._clock() + interval > stop_at:
                return False
            self._sleep(interval)

    def get_ssh_info(self, name: str, user: Union[str, UserIdentity], timeout: float = 60.0) -> Dict[str, Any]:
        if not self.hypervisor.domain_exists(name):
            raise DomainNotFound(name)
        network_name = network_name_for(user)
        try:
            address = self.networks.get_address_for(name, network_name)
        except (IpAddressNotFound, DhcpLeaseFailed, NetworkNotFound) as exc:
            raise SshInfoFailed(name, exc.message) from exc
        ready = self.wait_for_ssh(address, timeout=timeout)
        if not ready:
            log("WARN", f"SSH on {address} did not answer within {int(timeout)}s")
        return {
            "name": name,
            "address": address,
            "port": 22,
            "username": self.config.guest_username,
            "ssh_ready": ready,
            "command": f"ssh {self.config.guest_username}@{address}",
        }
