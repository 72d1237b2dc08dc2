"""Sequencing of the create and destroy pipelines."""

from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Iterator, Optional

from kvm_install_vm.cloudinit import SeedPackager, find_ssh_public_key, read_ssh_public_key
from kvm_install_vm.disks import DiskComposer
from kvm_install_vm.domain import DomainController, render_domain_xml
from kvm_install_vm.exceptions import FilesystemError, IntegrityError, ManagerError, PreconditionError
from kvm_install_vm.images import ArtifactStore
from kvm_install_vm.models import (
    AcquiredImage,
    Config,
    DestroyResult,
    DistroProfile,
    NicConfig,
    ProvisioningRequest,
    ProvisionResult,
    SeedImage,
    VmDisk,
)
from kvm_install_vm.network import parse_network_setting
from kvm_install_vm.utils import deterministic_mac, hash_password, log


@contextlib.contextmanager
def stage(name: str) -> Iterator[None]:
    """Attribute any error escaping the block to pipeline stage ``name``."""
    try:
        yield
    except ManagerError as exc:
        if exc.stage is None:
            exc.stage = name
        raise
    except OSError as exc:
        error = FilesystemError(str(exc))
        error.stage = name
        raise error from exc


class Provisioner:
    """Drive one VM through image, disk, seed and domain creation.

    Each stage checks for the artefact an earlier, failed run may have left
    behind (an existing disk, an existing seed ISO) and reuses it instead of
    starting over.
    """

    def __init__(
        self,
        config: Config,
        hypervisor,
        store: Optional[ArtifactStore] = None,
        composer: Optional[DiskComposer] = None,
        packager: Optional[SeedPackager] = None,
    ) -> None:
        self.config = config
        self.hypervisor = hypervisor
        self.store = store or ArtifactStore(config.defaults.image_dir)
        self.composer = composer or DiskComposer(config.defaults.vm_dir)
        self.packager = packager or SeedPackager()
        self.controller = DomainController(hypervisor)

    def network_for(self, vm_name: str) -> NicConfig:
        return parse_network_setting(self.config.defaults.network, deterministic_mac(vm_name))

    def create(
        self,
        request: ProvisioningRequest,
        ssh_key_path: Optional[Path] = None,
        user_data_path: Optional[Path] = None,
    ) -> Optional[ProvisionResult]:
        profile = self.config.get_distro(request.distro_id)
        nic = self.network_for(request.vm_name)

        if request.dry_run:
            self._log_plan(request, profile, nic)
            return None

        with stage("domain"):
            self.controller.require_connection()
            if self.hypervisor.exists(request.vm_name):
                raise PreconditionError(
                    f"Domain '{request.vm_name}' is already defined. Destroy it first or pick another name"
                )

        with stage("acquire"):
            image = self.store.ensure(profile)
            try:
                self.store.verify(image.local_path)
            except IntegrityError as exc:
                log("WARN", f"{exc}; continuing with the cached image")

        with stage("compose"):
            disk = self._compose(request, image)

        with stage("seed"):
            seed = self._seed(request, profile, ssh_key_path, user_data_path)

        with stage("domain"):
            lifecycle = self.controller.create(request, disk, seed, nic, os_variant=profile.os_variant)

        log("SUCCESS", f"VM {request.vm_name} is running. Connect with: virsh console {request.vm_name}")
        log("INFO", f"Login user: {profile.login_user}")
        return ProvisionResult(image=image, disk=disk, seed=seed, lifecycle=lifecycle)

    def _compose(self, request: ProvisioningRequest, image: AcquiredImage) -> VmDisk:
        disk_path = self.composer.disk_path(request.vm_name)
        if disk_path.exists():
            log("INFO", f"Reusing existing disk {disk_path}")
            return VmDisk(path=disk_path, backing_image_path=image.local_path, size_gib=request.disk_size_gib)
        return self.composer.compose(image.local_path, request.vm_name, request.disk_size_gib)

    def _seed(
        self,
        request: ProvisioningRequest,
        profile: DistroProfile,
        ssh_key_path: Optional[Path],
        user_data_path: Optional[Path],
    ) -> SeedImage:
        work_dir = self.composer.vm_path(request.vm_name)
        iso_path = self.packager.seed_path(work_dir, request.vm_name)
        if iso_path.exists():
            log("INFO", f"Reusing existing cloud-init seed {iso_path}")
            return SeedImage(iso_path=iso_path)

        defaults = self.config.defaults
        if ssh_key_path is not None:
            ssh_key = read_ssh_public_key(ssh_key_path)
        else:
            ssh_key = find_ssh_public_key(defaults.ssh_key_dir)
        extra_user_data = user_data_path.read_text(encoding="utf-8") if user_data_path else None
        password_hash = hash_password(defaults.password) if defaults.password else None

        user_data, meta_data = self.packager.render(
            request.vm_name,
            defaults.dns_domain,
            ssh_key,
            profile.login_user,
            profile.sudo_group,
            profile.cloud_init_disable,
            timezone=defaults.timezone,
            password_hash=password_hash,
            extra_user_data=extra_user_data,
        )
        return self.packager.package(work_dir, request.vm_name, user_data, meta_data)

    def _log_plan(self, request: ProvisioningRequest, profile: DistroProfile, nic: NicConfig) -> None:
        image_path = self.store.image_path(profile)
        disk_path = self.composer.disk_path(request.vm_name)
        seed_path = self.packager.seed_path(self.composer.vm_path(request.vm_name), request.vm_name)

        log("INFO", f"[dry-run] VM {request.vm_name}: {request.vcpu_count} vCPU, {request.memory_mib} MiB, {request.disk_size_gib}G disk")
        if self.store.image_exists(profile):
            log("INFO", f"[dry-run] Base image cached at {image_path}")
        else:
            log("INFO", f"[dry-run] Would download {self.store.image_url(profile)} to {image_path}")
        state = "exists, would be reused" if disk_path.exists() else "would be created"
        log("INFO", f"[dry-run] Disk {disk_path} ({state})")
        log("INFO", f"[dry-run] Cloud-init seed {seed_path}")
        log("INFO", f"[dry-run] Connection {self.config.defaults.libvirt_uri}, network {self.config.defaults.network} ({nic.mac_address})")
        log("INFO", f"[dry-run] Graphics {'enabled' if request.graphics_enabled else 'disabled'}")

        disk = VmDisk(path=disk_path, backing_image_path=image_path, size_gib=request.disk_size_gib)
        xml = render_domain_xml(request, disk, SeedImage(iso_path=seed_path), nic, os_variant=profile.os_variant)
        log("DEBUG", f"Domain XML preview:\n{xml}")

    def destroy(self, name: str, remove_disk: bool = False) -> DestroyResult:
        with stage("destroy"):
            result = self.controller.destroy(name, remove_disk=remove_disk)
            vm_path = self.composer.vm_path(name)
            if vm_path.is_dir() and not any(vm_path.iterdir()):
                vm_path.rmdir()
                log("DEBUG", f"Removed empty directory {vm_path}")
        if result.failed:
            log("WARN", f"Could not delete: {', '.join(str(path) for path in result.failed)}")
        return result
