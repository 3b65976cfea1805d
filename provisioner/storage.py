"""Disk and seed volumes inside the libvirt storage pool."""

from __future__ import annotations

import json
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Iterable

from provisioner.exceptions import (
    BaseImageNotFound,
    DiskImageFailed,
    InsufficientSpace,
    StoragePoolInactive,
    StoragePoolNotFound,
    VolumeAlreadyExists,
    VolumeCreateFailed,
)
from provisioner.hypervisor import Hypervisor, HypervisorError
from provisioner.models import PoolInfo, StorageVolume
from provisioner.utils import log, run

_GIB = 1024**3


def disk_path_for(pool: PoolInfo, vm_name: str) -> Path:
    return pool.path / f"{vm_name}.qcow2"


def seed_path_for(pool: PoolInfo, vm_name: str) -> Path:
    return pool.path / f"{vm_name}-cloud-init.iso"


def virtual_size(image: Path) -> int:
    """Return the virtual size of ``image`` in bytes, or 0 when qemu-img cannot tell."""
    info = subprocess.run(
        ["qemu-img", "info", "--output=json", str(image)],
        capture_output=True,
        text=True,
    )
    if info.returncode != 0:
        return 0
    try:
        return int(json.loads(info.stdout).get("virtual-size", 0))
    except (ValueError, TypeError):
        return 0


class StorageProvisioner:
    """Creates per-VM volumes as full copies of the golden base image."""

    def __init__(self, hypervisor: Hypervisor, pool_name: str, base_image: Path) -> None:
        self.hypervisor = hypervisor
        self.pool_name = pool_name
        self.base_image = Path(base_image)
        self._lock = threading.Lock()

    def lookup_pool(self) -> PoolInfo:
        try:
            pool = self.hypervisor.lookup_pool(self.pool_name)
        except HypervisorError as exc:
            raise StoragePoolNotFound(self.pool_name, exc.detail) from exc
        if pool is None:
            raise StoragePoolNotFound(self.pool_name)
        if not pool.active:
            raise StoragePoolInactive(self.pool_name)
        return pool

    def _check_space(self, directory: Path, required: int) -> None:
        available = shutil.disk_usage(directory).free
        if available < required:
            raise InsufficientSpace(str(directory), required, available)

    def _refresh(self) -> None:
        try:
            self.hypervisor.refresh_pool(self.pool_name)
        except HypervisorError as exc:
            log("WARN", f"Storage pool '{self.pool_name}' refresh failed: {exc.detail}")

    def provision_disk(self, vm_name: str, size_gb: int) -> StorageVolume:
        pool = self.lookup_pool()
        if not self.base_image.is_file():
            raise BaseImageNotFound(str(self.base_image))

        target = disk_path_for(pool, vm_name)
        with self._lock:
            if target.exists():
                raise VolumeAlreadyExists(str(target))
            # qcow2 grows lazily, so only the copy itself has to fit now
            try:
                self._check_space(pool.path, self.base_image.stat().st_size)
            except OSError as exc:
                raise VolumeCreateFailed(target.name, str(exc)) from exc

            log("INFO", f"Creating disk {target} from {self.base_image.name}")
            try:
                shutil.copy2(self.base_image, target)
            except OSError as exc:
                target.unlink(missing_ok=True)
                raise VolumeCreateFailed(target.name, str(exc)) from exc

        try:
            self._grow(target, size_gb)
        except subprocess.CalledProcessError as exc:
            target.unlink(missing_ok=True)
            output = (exc.stderr or exc.stdout or str(exc)).strip()
            raise DiskImageFailed(str(target), output) from exc
        except OSError as exc:
            target.unlink(missing_ok=True)
            raise DiskImageFailed(str(target), str(exc)) from exc

        self._refresh()
        return StorageVolume(path=target, format="qcow2", size_gb=size_gb, source=self.base_image)

    def _grow(self, target: Path, size_gb: int) -> None:
        # Only expand, never shrink
        requested = size_gb * _GIB
        current = virtual_size(target)
        if requested > current:
            log("INFO", f"Resizing disk to {size_gb}G...")
            run(["qemu-img", "resize", str(target), f"{size_gb}G"], capture_output=True)
        else:
            log("INFO", f"Base image already {current // _GIB}G (>= {size_gb}G); skip resize")

    def provision_seed_volume(self, vm_name: str, seed_image: Path) -> StorageVolume:
        pool = self.lookup_pool()
        target = seed_path_for(pool, vm_name)
        with self._lock:
            if target.exists():
                raise VolumeAlreadyExists(str(target))
            try:
                shutil.move(str(seed_image), str(target))
            except OSError as exc:
                raise VolumeCreateFailed(target.name, str(exc)) from exc
        self._refresh()
        log("DEBUG", f"Seed volume stored at {target}")
        return StorageVolume(path=target, format="raw")

    def release(self, volumes: Iterable[StorageVolume]) -> None:
        """Remove ``volumes``; failures are logged and do not stop the sweep."""
        removed = False
        for volume in volumes:
            try:
                volume.path.unlink(missing_ok=True)
            except OSError as exc:
                log("WARN", f"Failed to remove volume {volume.path}: {exc}")
                continue
            removed = True
            log("INFO", f"Removed volume {volume.path}")
        if removed:
            self._refresh()
