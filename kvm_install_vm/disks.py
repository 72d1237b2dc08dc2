"""Copy-on-write VM disk preparation with qemu-img."""

from __future__ import annotations

import json
from pathlib import Path

from kvm_install_vm.constants import GIB, PARTIAL_SUFFIX
from kvm_install_vm.exceptions import ExternalToolError, PreconditionError
from kvm_install_vm.models import VmDisk
from kvm_install_vm.utils import ensure_directory, log, run


class DiskComposer:
    def __init__(self, vm_dir: Path) -> None:
        self.vm_dir = vm_dir

    def vm_path(self, vm_name: str) -> Path:
        return self.vm_dir / vm_name

    def disk_path(self, vm_name: str) -> Path:
        return self.vm_path(vm_name) / f"{vm_name}.qcow2"

    @staticmethod
    def virtual_size(path: Path) -> int:
        result = run(["qemu-img", "info", "--output=json", str(path)])
        try:
            return int(json.loads(result.stdout).get("virtual-size", 0))
        except (ValueError, TypeError) as exc:
            raise ExternalToolError(f"Unexpected qemu-img info output for {path}", cmd=["qemu-img", "info"]) from exc

    def compose(self, base_image: Path, vm_name: str, size_gib: int) -> VmDisk:
        """Create ``<vm_dir>/<vm>/<vm>.qcow2`` backed by ``base_image``.

        Refuses to touch an existing disk. The overlay is grown to
        ``size_gib`` only when that is larger than the base image. A failed
        create or resize removes whatever qemu-img left behind.
        """
        if base_image.name.endswith(PARTIAL_SUFFIX) or not base_image.is_file():
            raise PreconditionError(f"Base image not found or incomplete: {base_image}")
        target = self.disk_path(vm_name)
        if target.exists():
            raise PreconditionError(f"Disk already exists, refusing to overwrite: {target}")

        ensure_directory(target.parent)
        log("INFO", f"Creating disk {target} (backing file {base_image})")
        try:
            run(
                [
                    "qemu-img",
                    "create",
                    "-f",
                    "qcow2",
                    "-F",
                    "qcow2",
                    "-b",
                    str(base_image),
                    str(target),
                ]
            )
            self._grow(base_image, target, size_gib)
        except ExternalToolError:
            self._remove_partial(target)
            raise
        return VmDisk(path=target, backing_image_path=base_image, size_gib=size_gib)

    def _grow(self, base_image: Path, target: Path, size_gib: int) -> None:
        # Only expand, never shrink
        base_size = self.virtual_size(base_image)
        requested = size_gib * GIB
        if requested > base_size:
            log("INFO", f"Resizing disk to {size_gib}G...")
            run(["qemu-img", "resize", str(target), f"{size_gib}G"])
        else:
            log("INFO", f"Base image already {base_size // GIB}G (>= {size_gib}G); skip resize")

    @staticmethod
    def _remove_partial(target: Path) -> None:
        if not target.exists():
            return
        try:
            target.unlink()
        except OSError as exc:
            log("ERROR", f"Failed to remove incomplete disk {target}: {exc}")
            return
        log("WARN", f"Removed incomplete disk {target}")
