"""Global constants and path defaults for the VM provisioner."""

from __future__ import annotations

import os
import re
from pathlib import Path

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
DEFAULT_STORAGE_POOL = "default"
IMAGES_DIR = Path("/var/lib/libvirt/images")
BASE_IMAGE_PATH = IMAGES_DIR / "ubuntu-22.04-server-cloudimg-amd64.img"
SEED_DIR = IMAGES_DIR / "cloud-init"
DEFAULT_CONFIG_PATH = Path("/etc/vm-provisioner/config.yaml")

TRUTHY = {"1", "true", "yes", "on"}

VM_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
VM_NAME_MAX_LENGTH = 50

DEFAULT_CPU = 2
DEFAULT_MEMORY_MB = 2048
DEFAULT_DISK_GB = 20
DEFAULT_GUEST_USERNAME = "ubuntu"

CPU_BOUNDS = (1, 16)
MEMORY_BOUNDS_MB = (512, 32768)
DISK_BOUNDS_GB = (10, 1000)

PASSWORD_LENGTH = 16
PASSWORD_MIN_LENGTH = 12
PASSWORD_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!@#$%^&*()"

# Isolation network layout; the tag fills the third octet.
NETWORK_NAME_TEMPLATE = "vm-network-{tag}"
BRIDGE_NAME_TEMPLATE = "virbr{tag}"
SUBNET_TEMPLATE = "192.168.{tag}.0/24"
DHCP_RANGE_OFFSETS = (10, 100)

LEASE_POLL_ATTEMPTS = 20
LEASE_POLL_INTERVAL = 2.0
LEASE_POLL_BACKOFF = 1.5
LEASE_POLL_TIMEOUT = 120.0
LEASE_POLL_MAX_INTERVAL = 15.0

SEED_TOOL = "genisoimage"
SEED_VOLUME_ID = "cidata"

DOMAIN_STATES = {
    0: "nostate",
    1: "running",
    2: "blocked",
    3: "paused",
    4: "shutdown",
    5: "shutoff",
    6: "crashed",
    7: "pmsuspended",
}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}
