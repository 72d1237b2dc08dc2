"""Domain definition, start and teardown through the hypervisor adapter."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, tostring

from kvm_install_vm.exceptions import (
    DomainOperationError,
    ManagerError,
    NotConnectedError,
    PreconditionError,
)
from kvm_install_vm.lifecycle import DomainLifecycle
from kvm_install_vm.models import DestroyResult, LifecycleState, NicConfig, ProvisioningRequest, SeedImage, VmDisk
from kvm_install_vm.network import build_interface_element
from kvm_install_vm.utils import kvm_available, log


def extract_disk_paths(xml: str) -> List[Path]:
    """Return the file-backed disk sources of a domain, in document order."""
    try:
        root = fromstring(xml)
    except ParseError as exc:
        raise ManagerError(f"Unable to parse domain XML: {exc}") from exc
    paths: List[Path] = []
    for source in root.findall("./devices/disk/source"):
        file_attr = source.get("file")
        if not file_attr:
            continue
        path = Path(file_attr)
        if path not in paths:
            paths.append(path)
    return paths


def render_domain_xml(
    request: ProvisioningRequest,
    disk: VmDisk,
    seed: Optional[SeedImage],
    nic: NicConfig,
    os_variant: Optional[str] = None,
) -> str:
    domain_type = "kvm" if kvm_available() else "qemu"
    if domain_type == "qemu":
        log("WARN", "/dev/kvm not accessible; the domain will use software emulation")

    domain = Element("domain", type=domain_type)
    SubElement(domain, "name").text = request.vm_name
    description = f"Created by kvm-install-vm from {request.distro_id}"
    if os_variant:
        description += f" (os-variant {os_variant})"
    SubElement(domain, "description").text = description
    SubElement(domain, "memory", unit="MiB").text = str(request.memory_mib)
    SubElement(domain, "currentMemory", unit="MiB").text = str(request.memory_mib)
    SubElement(domain, "vcpu", placement="static").text = str(request.vcpu_count)

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch="x86_64").text = "hvm"
    SubElement(os_el, "boot", dev="hd")

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")

    if domain_type == "kvm":
        SubElement(domain, "cpu", mode="host-passthrough")
    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "destroy"

    devices = SubElement(domain, "devices")

    # Primary disk
    disk_el = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk_el, "driver", name="qemu", type="qcow2")
    SubElement(disk_el, "source", file=str(disk.path))
    SubElement(disk_el, "target", dev="vda", bus="virtio")

    # Seed ISO (cloud-init)
    if seed is not None:
        seed_el = SubElement(devices, "disk", type="file", device="cdrom")
        SubElement(seed_el, "driver", name="qemu", type="raw")
        SubElement(seed_el, "source", file=str(seed.iso_path))
        SubElement(seed_el, "target", dev="sda", bus="sata")
        SubElement(seed_el, "readonly")

    iface, _mac = build_interface_element(nic)
    devices.append(iface)

    # Serial & console
    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    if request.graphics_enabled:
        SubElement(devices, "graphics", type="vnc", autoport="yes", listen="127.0.0.1")
        video = SubElement(devices, "video")
        SubElement(video, "model", type="virtio", heads="1", primary="yes")
        SubElement(devices, "input", type="tablet", bus="usb")

    SubElement(devices, "memballoon", model="virtio")

    raw = tostring(domain, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()


class DomainController:
    """Create and destroy domains, tracking each through ``DomainLifecycle``."""

    def __init__(self, hypervisor) -> None:
        self.hypervisor = hypervisor

    def require_connection(self) -> None:
        if self.hypervisor is None or not self.hypervisor.connected:
            raise NotConnectedError(f"Not connected to {getattr(self.hypervisor, 'uri', 'the hypervisor')}")

    def create(
        self,
        request: ProvisioningRequest,
        disk: VmDisk,
        seed: Optional[SeedImage],
        nic: NicConfig,
        os_variant: Optional[str] = None,
    ) -> DomainLifecycle:
        """Define and start ``request.vm_name``.

        A failed start undefines the new domain again, so a create either
        leaves a running domain or nothing at all behind in libvirt. The
        disk and seed files are left for the caller.
        """
        self.require_connection()
        name = request.vm_name
        if not disk.path.is_file():
            raise PreconditionError(f"VM disk {disk.path} does not exist; refusing to define {name}")
        if self.hypervisor.exists(name):
            raise PreconditionError(f"Domain '{name}' is already defined. Destroy it first or pick another name")

        xml = render_domain_xml(request, disk, seed, nic, os_variant=os_variant)
        log("DEBUG", f"Domain XML for {name}:\n{xml}")

        lifecycle = DomainLifecycle(name)
        lifecycle.advance(LifecycleState.DEFINING)
        try:
            domain = self.hypervisor.define(xml)
        except ManagerError as exc:
            lifecycle.advance(LifecycleState.UNDEFINED)
            raise DomainOperationError(f"Failed to define domain '{name}': {exc}", last_state=LifecycleState.DEFINING) from exc
        lifecycle.advance(LifecycleState.DEFINED)
        log("INFO", f"Defined domain {name}")

        lifecycle.advance(LifecycleState.STARTING)
        try:
            self.hypervisor.start(domain)
        except ManagerError as exc:
            last_state = lifecycle.state
            self._rollback(lifecycle, domain)
            raise DomainOperationError(f"Failed to start domain '{name}': {exc}", last_state=last_state) from exc
        lifecycle.advance(LifecycleState.ACTIVE)
        log("SUCCESS", f"Domain {name} started")
        return lifecycle

    def _rollback(self, lifecycle: DomainLifecycle, domain) -> None:
        lifecycle.advance(LifecycleState.DEFINED)
        lifecycle.advance(LifecycleState.UNDEFINING)
        try:
            self.hypervisor.undefine(domain)
        except ManagerError as exc:
            log("ERROR", f"Rollback failed; domain '{lifecycle.name}' is still defined: {exc}")
            return
        lifecycle.advance(LifecycleState.UNDEFINED)
        log("WARN", f"Rolled back definition of domain {lifecycle.name}")

    def destroy(self, name: str, remove_disk: bool = False) -> DestroyResult:
        """Stop (if running) and undefine ``name``, optionally deleting its disks."""
        self.require_connection()
        domain = self.hypervisor.lookup(name)
        disk_paths = extract_disk_paths(self.hypervisor.xml_desc(domain))
        result = DestroyResult(name=name, disk_paths=disk_paths)

        active = self.hypervisor.is_active(domain)
        lifecycle = DomainLifecycle(name, state=LifecycleState.ACTIVE if active else LifecycleState.DEFINED)
        result.lifecycle = lifecycle.history
        if active:
            lifecycle.advance(LifecycleState.STOPPING)
            log("INFO", f"Stopping domain {name}")
            try:
                self.hypervisor.stop(domain)
            except ManagerError as exc:
                log("WARN", f"Failed to stop {name}, undefining anyway: {exc}")

        lifecycle.advance(LifecycleState.UNDEFINING)
        try:
            self.hypervisor.undefine(domain)
        except ManagerError as exc:
            raise DomainOperationError(f"Failed to undefine domain '{name}': {exc}", last_state=lifecycle.state) from exc
        lifecycle.advance(LifecycleState.UNDEFINED)
        log("INFO", f"Undefined domain {name}")

        if not remove_disk:
            for path in disk_paths:
                log("INFO", f"Keeping disk {path} (remove it manually or pass --remove-disk)")
            return result

        for path in disk_paths:
            try:
                path.unlink()
            except FileNotFoundError:
                log("WARN", f"Disk {path} already gone")
                continue
            except OSError as exc:
                log("WARN", f"Failed to delete {path}: {exc}")
                result.failed.append(path)
                continue
            log("INFO", f"Deleted {path}")
            result.removed.append(path)
        return result
