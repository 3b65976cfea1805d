"""Error taxonomy for the VM provisioner.

Every failure raised by the provisioning pipeline is a ``ProvisionerError``.
Each concrete class carries a stable numeric ``code``, a symbolic
``error_code`` used in API envelopes, a ``category`` (configuration,
connection, resource, creation, network, cancelled, internal) and a ``context`` map
holding the resource identifier and, when available, the raw text reported
by the failing subsystem.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


def _compact(**context: Any) -> Dict[str, Any]:
    return {key: value for key, value in context.items() if value is not None}


def _with_cause(message: str, cause: Optional[str]) -> str:
    return f"{message}: {cause}" if cause else message


class ProvisionerError(ManagerError):
    code = 0
    error_code = "PROVISIONER_ERROR"
    category = "internal"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    @property
    def details(self) -> str:
        """Subsystem diagnostic text, falling back to the message."""
        for key in ("libvirt_error", "output", "error", "reason"):
            value = self.context.get(key)
            if value:
                return str(value)
        return self.message


# --- configuration -----------------------------------------------------------


class ValidationError(ProvisionerError):
    code = 4000
    error_code = "VALIDATION_ERROR"
    category = "configuration"

    @property
    def field(self) -> Optional[str]:
        return self.context.get("field")


class InvalidVMName(ValidationError):
    code = 4001
    error_code = "INVALID_VM_NAME"

    def __init__(self, vm_name: str, reason: str) -> None:
        super().__init__(
            f'Invalid VM name "{vm_name}": {reason}',
            {"field": "name", "vm_name": vm_name, "reason": reason},
        )


class InvalidUser(ValidationError):
    code = 4002
    error_code = "INVALID_USER"

    def __init__(self, user: Any, valid_users: Iterable[str]) -> None:
        valid = sorted(valid_users)
        super().__init__(
            f'Invalid user "{user}". Must be one of: {", ".join(valid)}',
            {"field": "user", "user": str(user), "valid_users": valid},
        )


class _OutOfBounds(ValidationError):
    field_name = ""
    label = ""
    unit = ""

    def __init__(self, value: Any, minimum: int, maximum: int) -> None:
        unit = f" {self.unit}" if self.unit else ""
        super().__init__(
            f"Invalid {self.label} {value!r}{unit}. Must be an integer between {minimum} and {maximum}",
            {"field": self.field_name, self.field_name: value, "min": minimum, "max": maximum},
        )


class InvalidCPU(_OutOfBounds):
    code = 4003
    error_code = "INVALID_CPU"
    field_name = "cpu"
    label = "CPU count"


class InvalidMemory(_OutOfBounds):
    code = 4004
    error_code = "INVALID_MEMORY"
    field_name = "memory"
    label = "memory"
    unit = "MB"


class InvalidDisk(_OutOfBounds):
    code = 4005
    error_code = "INVALID_DISK"
    field_name = "disk"
    label = "disk size"
    unit = "GB"


class EmptyParameter(ValidationError):
    code = 4006
    error_code = "EMPTY_PARAMETER"

    def __init__(self, parameter: str) -> None:
        super().__init__(f'Parameter "{parameter}" cannot be empty', {"field": parameter})


class ParameterTooLong(ValidationError):
    code = 4007
    error_code = "PARAMETER_TOO_LONG"

    def __init__(self, parameter: str, length: int, max_length: int) -> None:
        super().__init__(
            f'Parameter "{parameter}" is too long ({length} characters). Maximum allowed: {max_length}',
            {"field": parameter, "length": length, "max_length": max_length},
        )


class InvalidCharacters(ValidationError):
    code = 4008
    error_code = "INVALID_CHARACTERS"

    def __init__(self, parameter: str, value: str) -> None:
        super().__init__(
            f'Parameter "{parameter}" contains invalid characters: "{value}"',
            {"field": parameter, "value": value},
        )


# --- connection --------------------------------------------------------------


class LibvirtConnectionError(ProvisionerError):
    code = 1000
    error_code = "CONNECTION_ERROR"
    category = "connection"


class ConnectionFailed(LibvirtConnectionError):
    code = 1001
    error_code = "CONNECTION_FAILED"

    def __init__(self, uri: str, libvirt_error: Optional[str] = None) -> None:
        super().__init__(
            _with_cause(f'Failed to connect to libvirt at "{uri}"', libvirt_error),
            _compact(uri=uri, libvirt_error=libvirt_error),
        )


class NotConnected(LibvirtConnectionError):
    code = 1004
    error_code = "NOT_CONNECTED"

    def __init__(self) -> None:
        super().__init__("Not connected to libvirt")


class PermissionDenied(LibvirtConnectionError):
    code = 1005
    error_code = "PERMISSION_DENIED"

    def __init__(self, uri: str, libvirt_error: Optional[str] = None) -> None:
        super().__init__(
            f'Permission denied connecting to libvirt at "{uri}"',
            _compact(uri=uri, libvirt_error=libvirt_error),
        )


# --- storage -----------------------------------------------------------------


class StorageError(ProvisionerError):
    code = 2100
    error_code = "STORAGE_ERROR"
    category = "resource"


class StoragePoolNotFound(StorageError):
    code = 2005
    error_code = "STORAGE_POOL_NOT_FOUND"

    def __init__(self, pool_name: str, libvirt_error: Optional[str] = None) -> None:
        super().__init__(
            f'Storage pool "{pool_name}" not found',
            _compact(pool_name=pool_name, libvirt_error=libvirt_error),
        )


class StoragePoolInactive(StorageError):
    code = 2011
    error_code = "STORAGE_POOL_INACTIVE"

    def __init__(self, pool_name: str) -> None:
        super().__init__(f'Storage pool "{pool_name}" is not active', {"pool_name": pool_name})


class BaseImageNotFound(StorageError):
    code = 2012
    error_code = "BASE_IMAGE_NOT_FOUND"

    def __init__(self, image_path: str) -> None:
        super().__init__(f'Base image "{image_path}" does not exist', {"image_path": image_path})


class InsufficientSpace(StorageError):
    code = 2013
    error_code = "INSUFFICIENT_SPACE"

    def __init__(self, path: str, required: int, available: int) -> None:
        super().__init__(
            f"Not enough free space in {path}: need {required // (1024**3)}G, "
            f"have {available // (1024**3)}G",
            {"path": path, "required_bytes": required, "available_bytes": available},
        )


class VolumeAlreadyExists(StorageError):
    code = 2014
    error_code = "VOLUME_ALREADY_EXISTS"
    category = "creation"

    def __init__(self, volume_path: str) -> None:
        super().__init__(f'Storage volume "{volume_path}" already exists', {"volume_path": volume_path})


class VolumeCreateFailed(StorageError):
    code = 2006
    error_code = "VOLUME_CREATE_FAILED"
    category = "creation"

    def __init__(self, volume_name: str, error: Optional[str] = None) -> None:
        super().__init__(
            _with_cause(f'Failed to create storage volume "{volume_name}"', error),
            _compact(volume_name=volume_name, error=error),
        )


class DiskImageFailed(StorageError):
    code = 2007
    error_code = "DISK_IMAGE_FAILED"
    category = "creation"

    def __init__(self, image_path: str, output: str) -> None:
        super().__init__(
            f'Failed to create disk image "{image_path}": {output}',
            {"image_path": image_path, "output": output},
        )


# --- domain ------------------------------------------------------------------


class DomainError(ProvisionerError):
    code = 2000
    error_code = "DOMAIN_ERROR"
    category = "creation"


class DomainDefineFailed(DomainError):
    code = 2001
    error_code = "DOMAIN_DEFINE_FAILED"

    def __init__(self, vm_name: str, libvirt_error: Optional[str] = None) -> None:
        super().__init__(
            _with_cause(f'Failed to define VM domain "{vm_name}"', libvirt_error),
            _compact(vm_name=vm_name, libvirt_error=libvirt_error),
        )


class DomainStartFailed(DomainError):
    code = 2002
    error_code = "DOMAIN_START_FAILED"

    def __init__(self, vm_name: str, libvirt_error: Optional[str] = None) -> None:
        super().__init__(
            _with_cause(f'Failed to start VM "{vm_name}"', libvirt_error),
            _compact(vm_name=vm_name, libvirt_error=libvirt_error),
        )


class DomainNotFound(DomainError):
    code = 2003
    error_code = "DOMAIN_NOT_FOUND"

    def __init__(self, vm_name: str) -> None:
        super().__init__(f'VM domain "{vm_name}" not found', {"vm_name": vm_name})


class VmAlreadyExists(DomainError):
    code = 2009
    error_code = "VM_ALREADY_EXISTS"

    def __init__(self, vm_name: str) -> None:
        super().__init__(f'VM "{vm_name}" already exists', {"vm_name": vm_name})


class SshInfoFailed(DomainError):
    code = 2010
    error_code = "SSH_INFO_FAILED"

    def __init__(self, vm_name: str, reason: str) -> None:
        super().__init__(
            f'Failed to get SSH info for VM "{vm_name}": {reason}',
            {"vm_name": vm_name, "reason": reason},
        )


# --- configuration seed ------------------------------------------------------


class SeedError(ProvisionerError):
    code = 5000
    error_code = "SEED_ERROR"
    category = "creation"


class SeedBuildFailed(SeedError):
    code = 5001
    error_code = "SEED_BUILD_FAILED"

    def __init__(self, hostname: str, output: str) -> None:
        super().__init__(
            f'Failed to build configuration seed for "{hostname}": {output}',
            {"hostname": hostname, "output": output},
        )


# --- network -----------------------------------------------------------------


class NetworkError(ProvisionerError):
    code = 3000
    error_code = "NETWORK_ERROR"
    category = "network"


class NetworkDefineFailed(NetworkError):
    code = 3001
    error_code = "NETWORK_DEFINE_FAILED"

    def __init__(self, network_name: str, libvirt_error: Optional[str] = None) -> None:
        super().__init__(
            _with_cause(f'Failed to define network "{network_name}"', libvirt_error),
            _compact(network_name=network_name, libvirt_error=libvirt_error),
        )


class NetworkStartFailed(NetworkError):
    code = 3002
    error_code = "NETWORK_START_FAILED"

    def __init__(self, network_name: str, libvirt_error: Optional[str] = None) -> None:
        super().__init__(
            _with_cause(f'Failed to start network "{network_name}"', libvirt_error),
            _compact(network_name=network_name, libvirt_error=libvirt_error),
        )


class NetworkNotFound(NetworkError):
    code = 3003
    error_code = "NETWORK_NOT_FOUND"

    def __init__(self, network_name: str) -> None:
        super().__init__(f'Network "{network_name}" not found', {"network_name": network_name})


class InvalidNetworkConfig(NetworkError):
    code = 3005
    error_code = "INVALID_NETWORK_CONFIG"
    category = "configuration"

    def __init__(self, user: Any, reason: str) -> None:
        super().__init__(
            f'Invalid network configuration for user "{user}": {reason}',
            {"field": "user", "user": str(user), "reason": reason},
        )


class DhcpLeaseFailed(NetworkError):
    code = 3006
    error_code = "DHCP_LEASE_FAILED"

    def __init__(self, network_name: str, libvirt_error: Optional[str] = None) -> None:
        super().__init__(
            _with_cause(f'Failed to retrieve DHCP leases for network "{network_name}"', libvirt_error),
            _compact(network_name=network_name, libvirt_error=libvirt_error),
        )


class IpAddressNotFound(NetworkError):
    code = 3007
    error_code = "IP_ADDRESS_NOT_FOUND"

    def __init__(self, vm_name: str, network_name: str) -> None:
        super().__init__(
            f'IP address not found for VM "{vm_name}" on network "{network_name}"',
            {"vm_name": vm_name, "network_name": network_name},
        )


# --- cancellation ------------------------------------------------------------


class ProvisioningCancelled(ProvisionerError):
    code = 6001
    error_code = "PROVISIONING_CANCELLED"
    category = "cancelled"

    def __init__(self, vm_name: str, stage: str, reason: str = "cancelled") -> None:
        super().__init__(
            f'Provisioning of "{vm_name}" stopped before {stage}: {reason}',
            {"vm_name": vm_name, "stage": stage, "reason": reason},
        )


# --- unexpected --------------------------------------------------------------


class UnexpectedProvisioningError(ProvisionerError):
    code = 9001
    error_code = "INTERNAL_ERROR"

    def __init__(self, vm_name: str, error: str) -> None:
        super().__init__(
            f'Provisioning of "{vm_name}" failed unexpectedly: {error}',
            {"vm_name": vm_name, "error": error},
        )
