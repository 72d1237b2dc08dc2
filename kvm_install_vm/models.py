"""Data models for kvm-install-vm."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from kvm_install_vm.constants import (
    DEFAULT_DNS_DOMAIN,
    DEFAULT_IMAGE_DIR,
    DEFAULT_LIBVIRT_URI,
    DEFAULT_NETWORK,
    DEFAULT_SSH_KEY_DIR,
    DEFAULT_TIMEZONE,
    DEFAULT_VM_DIR,
    VM_NAME_RE,
)
from kvm_install_vm.exceptions import ManagerError, NotFoundError


@dataclass(frozen=True)
class DistroProfile:
    id: str
    qcow_filename: str
    image_url: str
    os_variant: str
    login_user: str
    sudo_group: str
    cloud_init_disable: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "qcow_filename": self.qcow_filename,
            "os_variant": self.os_variant,
            "image_url": self.image_url,
            "login_user": self.login_user,
            "sudo_group": self.sudo_group,
            "cloud_init_disable": self.cloud_init_disable,
        }


@dataclass
class Defaults:
    memory_mb: int = 1024
    vcpus: int = 1
    disk_size_gb: int = 10
    image_dir: Path = DEFAULT_IMAGE_DIR
    vm_dir: Path = DEFAULT_VM_DIR
    dns_domain: str = DEFAULT_DNS_DOMAIN
    timezone: str = DEFAULT_TIMEZONE
    libvirt_uri: str = DEFAULT_LIBVIRT_URI
    network: str = DEFAULT_NETWORK
    ssh_key_dir: Path = DEFAULT_SSH_KEY_DIR
    password: Optional[str] = None


@dataclass
class Config:
    distros: Dict[str, DistroProfile]
    defaults: Defaults = field(default_factory=Defaults)

    def get_distro(self, name: str) -> DistroProfile:
        try:
            return self.distros[name]
        except KeyError:
            available = ", ".join(sorted(self.distros)) or "<none>"
            raise NotFoundError(
                f"Distribution '{name}' not found in configuration. Available: {available}"
            ) from None


@dataclass(frozen=True)
class ProvisioningRequest:
    vm_name: str
    vcpu_count: int
    memory_mib: int
    disk_size_gib: int
    distro_id: str
    graphics_enabled: bool = False
    dry_run: bool = False

    def __post_init__(self):
        if not VM_NAME_RE.match(self.vm_name):
            raise ManagerError(
                f"Invalid VM name '{self.vm_name}': use letters, digits and '-' "
                "(max 63 chars, no leading or trailing '-')"
            )
        if self.vcpu_count <= 0:
            raise ManagerError(f"vCPU count must be > 0 (got {self.vcpu_count})")
        if self.memory_mib <= 0:
            raise ManagerError(f"Memory must be > 0 MiB (got {self.memory_mib})")
        if self.disk_size_gib < 0:
            raise ManagerError(f"Disk size must be >= 0 GiB (got {self.disk_size_gib})")


@dataclass(frozen=True)
class AcquiredImage:
    local_path: Path
    byte_size: int


@dataclass(frozen=True)
class VmDisk:
    path: Path
    backing_image_path: Path
    size_gib: int


@dataclass(frozen=True)
class SeedImage:
    iso_path: Path


@dataclass
class NicConfig:
    mode: str
    source: Optional[str] = None
    mac_address: Optional[str] = None
    model: str = "virtio"


class DomainState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    SHUTTING_DOWN = "shutdown"
    OFF = "shut off"
    CRASHED = "crashed"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DomainRecord:
    name: str
    id: Optional[int]  # None while inactive
    state: DomainState


class LifecycleState(Enum):
    UNDEFINED = "undefined"
    DEFINING = "defining"
    DEFINED = "defined"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    UNDEFINING = "undefining"

    def __str__(self) -> str:
        return self.value


@dataclass
class DestroyResult:
    name: str
    disk_paths: List[Path]
    removed: List[Path] = field(default_factory=list)
    failed: List[Path] = field(default_factory=list)
    lifecycle: List[LifecycleState] = field(default_factory=list)


@dataclass
class ProvisionResult:
    image: AcquiredImage
    disk: VmDisk
    seed: SeedImage
    lifecycle: object  # lifecycle.DomainLifecycle
