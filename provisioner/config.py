"""Configuration loading and environment variable parsing for the VM provisioner."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from provisioner.constants import (
    BASE_IMAGE_PATH,
    CPU_BOUNDS,
    DEFAULT_CONFIG_PATH,
    DEFAULT_GUEST_USERNAME,
    DEFAULT_STORAGE_POOL,
    DISK_BOUNDS_GB,
    IMAGES_DIR,
    LEASE_POLL_ATTEMPTS,
    LEASE_POLL_BACKOFF,
    LEASE_POLL_INTERVAL,
    LEASE_POLL_MAX_INTERVAL,
    LEASE_POLL_TIMEOUT,
    LIBVIRT_URI,
    MEMORY_BOUNDS_MB,
    PASSWORD_LENGTH,
    PASSWORD_MIN_LENGTH,
    SEED_DIR,
    SEED_TOOL,
    TRUTHY,
)
from provisioner.exceptions import ManagerError
from provisioner.models import ProvisionerConfig
from provisioner.utils import get_env, get_env_bool, log, parse_float_env, parse_int_env


def load_config_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the optional YAML settings file.

    Keys are the lower-case names of the matching environment variables.
    A missing default file is not an error; a missing explicit file is.
    """
    explicit = config_path is not None or get_env("PROVISIONER_CONFIG") is not None
    if config_path is None:
        config_path = Path(get_env("PROVISIONER_CONFIG") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        if explicit:
            raise ManagerError(f"Provisioner config missing: {config_path}")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Invalid YAML in {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"{config_path} must contain a mapping at the top level")
    log("DEBUG", f"Loaded provisioner settings from {config_path}")
    return {str(key).lower(): value for key, value in data.items()}


def _default(file_values: Dict[str, Any], name: str, fallback: Any) -> str:
    value = file_values.get(name.lower(), fallback)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _bounds(file_values: Dict[str, Any], prefix: str, defaults: Tuple[int, int]) -> Tuple[int, int]:
    low = parse_int_env(f"{prefix}_MIN", _default(file_values, f"{prefix}_MIN", defaults[0]))
    high = parse_int_env(f"{prefix}_MAX", _default(file_values, f"{prefix}_MAX", defaults[1]))
    if low > high:
        raise ManagerError(f"{prefix}_MIN ({low}) must not exceed {prefix}_MAX ({high})")
    return low, high


def _path_setting(file_values: Dict[str, Any], name: str, fallback: Path) -> Path:
    raw = get_env(name) or file_values.get(name.lower()) or fallback
    return Path(str(raw)).expanduser()


def load_config(config_path: Optional[Path] = None) -> ProvisionerConfig:
    """Build the runtime configuration.

    Environment variables win over the YAML file, which wins over built-in
    defaults.
    """
    file_values = load_config_file(config_path)

    images_dir = _path_setting(file_values, "IMAGES_DIR", IMAGES_DIR)
    base_image = _path_setting(file_values, "BASE_IMAGE", images_dir / BASE_IMAGE_PATH.name)
    seed_dir = _path_setting(file_values, "SEED_DIR", images_dir / SEED_DIR.name)

    scratch_raw = get_env("SCRATCH_DIR") or file_values.get("scratch_dir")
    scratch_dir = Path(str(scratch_raw)).expanduser() if scratch_raw else None

    password_length = parse_int_env(
        "PASSWORD_LENGTH",
        _default(file_values, "PASSWORD_LENGTH", PASSWORD_LENGTH),
        min_val=PASSWORD_MIN_LENGTH,
        max_val=128,
    )

    guest_username = (get_env("GUEST_USERNAME") or file_values.get("guest_username") or DEFAULT_GUEST_USERNAME)
    guest_username = str(guest_username).strip()
    if not guest_username:
        raise ManagerError("GUEST_USERNAME cannot be empty")

    ssh_pubkey = get_env("SSH_PUBKEY") or file_values.get("ssh_pubkey")
    if ssh_pubkey is not None:
        ssh_pubkey = str(ssh_pubkey).strip() or None

    rollback_default = str(file_values.get("rollback_on_failure", True)).lower() in TRUTHY

    return ProvisionerConfig(
        libvirt_uri=str(get_env("LIBVIRT_URI") or file_values.get("libvirt_uri") or LIBVIRT_URI),
        storage_pool=str(get_env("STORAGE_POOL") or file_values.get("storage_pool") or DEFAULT_STORAGE_POOL),
        images_dir=images_dir,
        base_image=base_image,
        seed_dir=seed_dir,
        scratch_dir=scratch_dir,
        guest_username=guest_username,
        password_length=password_length,
        ssh_pubkey=ssh_pubkey,
        seed_tool=str(get_env("SEED_TOOL") or file_values.get("seed_tool") or SEED_TOOL),
        cpu_bounds=_bounds(file_values, "CPU", CPU_BOUNDS),
        memory_bounds_mb=_bounds(file_values, "MEMORY", MEMORY_BOUNDS_MB),
        disk_bounds_gb=_bounds(file_values, "DISK", DISK_BOUNDS_GB),
        lease_poll_attempts=parse_int_env(
            "LEASE_POLL_ATTEMPTS", _default(file_values, "LEASE_POLL_ATTEMPTS", LEASE_POLL_ATTEMPTS)
        ),
        lease_poll_interval=parse_float_env(
            "LEASE_POLL_INTERVAL", _default(file_values, "LEASE_POLL_INTERVAL", LEASE_POLL_INTERVAL)
        ),
        lease_poll_backoff=parse_float_env(
            "LEASE_POLL_BACKOFF", _default(file_values, "LEASE_POLL_BACKOFF", LEASE_POLL_BACKOFF), min_val=1.0
        ),
        lease_poll_max_interval=parse_float_env(
            "LEASE_POLL_MAX_INTERVAL",
            _default(file_values, "LEASE_POLL_MAX_INTERVAL", LEASE_POLL_MAX_INTERVAL),
        ),
        lease_poll_timeout=parse_float_env(
            "LEASE_POLL_TIMEOUT", _default(file_values, "LEASE_POLL_TIMEOUT", LEASE_POLL_TIMEOUT)
        ),
        rollback_on_failure=get_env_bool("ROLLBACK_ON_FAILURE", rollback_default),
    )
