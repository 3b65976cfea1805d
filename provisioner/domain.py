"""Domain definition and launch."""

from __future__ import annotations

import uuid
from typing import Optional
from xml.etree.ElementTree import Element, SubElement

from provisioner.exceptions import DomainDefineFailed, DomainStartFailed, VmAlreadyExists
from provisioner.hypervisor import Hypervisor, HypervisorError
from provisioner.models import IsolationNetwork, StorageVolume, VMRecord
from provisioner.network import interface_element
from provisioner.utils import deterministic_mac, element_to_str, kvm_available, log


def render_domain_xml(
    record: VMRecord,
    disk: StorageVolume,
    seed: StorageVolume,
    network: IsolationNetwork,
    mac_address: str,
    use_kvm: bool = True,
    domain_uuid: Optional[str] = None,
) -> str:
    domain = Element("domain", type="kvm" if use_kvm else "qemu")

    SubElement(domain, "name").text = record.name
    SubElement(domain, "uuid").text = domain_uuid or str(uuid.uuid4())
    mem = SubElement(domain, "memory", unit="MiB")
    mem.text = str(record.memory_mb)
    current = SubElement(domain, "currentMemory", unit="MiB")
    current.text = str(record.memory_mb)
    vcpu = SubElement(domain, "vcpu", placement="static")
    vcpu.text = str(record.cpu)

    os_el = SubElement(domain, "os")
    os_type = SubElement(os_el, "type", arch="x86_64", machine="pc")
    os_type.text = "hvm"
    SubElement(os_el, "boot", dev="hd")

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")
    if use_kvm:
        SubElement(domain, "cpu", mode="host-passthrough")

    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "destroy"

    devices = SubElement(domain, "devices")

    root_disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(root_disk, "driver", name="qemu", type=disk.format)
    SubElement(root_disk, "source", file=str(disk.path))
    SubElement(root_disk, "target", dev="vda", bus="virtio")

    seed_disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(seed_disk, "driver", name="qemu", type=seed.format)
    SubElement(seed_disk, "source", file=str(seed.path))
    SubElement(seed_disk, "target", dev="vdb", bus="virtio")
    SubElement(seed_disk, "readonly")

    devices.append(interface_element(network, mac_address))

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    # Guest agent channel
    channel_ga = SubElement(devices, "channel", type="unix")
    SubElement(channel_ga, "target", type="virtio", name="org.qemu.guest_agent.0")

    SubElement(devices, "memballoon", model="virtio")
    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    return element_to_str(domain)


class DomainLauncher:
    """Defines and boots a domain; cleanup on failure is the caller's job."""

    def __init__(self, hypervisor: Hypervisor, use_kvm: Optional[bool] = None) -> None:
        self.hypervisor = hypervisor
        self.use_kvm = kvm_available() if use_kvm is None else use_kvm

    def define_and_start(
        self,
        record: VMRecord,
        disk: StorageVolume,
        seed: StorageVolume,
        network: IsolationNetwork,
    ) -> str:
        """Define ``record`` on the hypervisor and start it; return the MAC in use."""
        if self.hypervisor.domain_exists(record.name):
            raise VmAlreadyExists(record.name)

        mac = record.mac_address or deterministic_mac(f"{record.name}:{network.name}")
        xml = render_domain_xml(record, disk, seed, network, mac, use_kvm=self.use_kvm)
        log("DEBUG", f"Domain XML for {record.name}:\n{xml}")
        try:
            self.hypervisor.define_domain(xml)
        except HypervisorError as exc:
            raise DomainDefineFailed(record.name, exc.detail) from exc
        log("INFO", f"Domain {record.name} defined")

        try:
            self.hypervisor.start_domain(record.name)
        except HypervisorError as exc:
            raise DomainStartFailed(record.name, exc.detail) from exc
        log("SUCCESS", f"Domain {record.name} started")
        return mac

    def undefine(self, name: str) -> None:
        try:
            self.hypervisor.undefine_domain(name)
        except HypervisorError as exc:
            log("WARN", f"Failed to undefine domain {name}: {exc.detail}")
            return
        log("INFO", f"Domain {name} undefined")
