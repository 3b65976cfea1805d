"""vm-provisioner package."""

__all__ = [
    "api",
    "cli",
    "config",
    "constants",
    "credentials",
    "domain",
    "exceptions",
    "hypervisor",
    "libvirt_backend",
    "manager",
    "models",
    "network",
    "seed",
    "storage",
    "utils",
]
