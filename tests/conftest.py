"""Shared test fixtures and an in-memory hypervisor."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
from xml.etree.ElementTree import fromstring

import pytest

from kvm_install_vm import utils
from kvm_install_vm.config import builtin_config
from kvm_install_vm.exceptions import HypervisorError, NotConnectedError, NotFoundError
from kvm_install_vm.models import Config, DistroProfile, DomainState, NicConfig, ProvisioningRequest


class FakeDomain:
    def __init__(self, name: str, xml: str = "", active: bool = False, ident: int = -1,
                 state: DomainState = DomainState.OFF) -> None:
        self.name = name
        self.xml = xml or f"<domain><name>{name}</name><devices/></domain>"
        self.active = active
        self.ident = ident
        self.run_state = state


class FakeHypervisor:
    """Implements the adapter interface over a dict of FakeDomain objects.

    Set ``fail_start`` / ``fail_stop`` / ``fail_undefine`` / ``fail_define`` to
    make the matching call raise ``HypervisorError``.
    """

    def __init__(self, uri: str = "qemu:///session", connected: bool = True) -> None:
        self.uri = uri
        self._connected = connected
        self.domains: Dict[str, FakeDomain] = {}
        self.calls: List[str] = []
        self.fail_define = False
        self.fail_start = False
        self.fail_stop = False
        self.fail_undefine = False
        self._next_id = 1

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self._connected = True

    def close(self) -> None:
        self.calls.append("close")
        self._connected = False

    def _require(self) -> None:
        if not self._connected:
            raise NotConnectedError("libvirt connection not established")

    def add(self, name: str, xml: str = "", active: bool = False, state: Optional[DomainState] = None) -> FakeDomain:
        ident = -1
        if active:
            ident = self._next_id
            self._next_id += 1
        domain = FakeDomain(name, xml, active=active, ident=ident,
                            state=state or (DomainState.RUNNING if active else DomainState.OFF))
        self.domains[name] = domain
        return domain

    def define(self, xml: str) -> FakeDomain:
        self._require()
        self.calls.append("define")
        if self.fail_define:
            raise HypervisorError("Failed to define domain: boom")
        name = fromstring(xml).findtext("name")
        return self.add(name, xml)

    def lookup(self, name: str) -> FakeDomain:
        self._require()
        try:
            return self.domains[name]
        except KeyError:
            raise NotFoundError(f"Domain '{name}' not found") from None

    def exists(self, name: str) -> bool:
        return name in self.domains

    def start(self, domain: FakeDomain) -> None:
        self.calls.append("start")
        if self.fail_start:
            raise HypervisorError("Failed to start domain: no space left")
        domain.active = True
        domain.ident = self._next_id
        self._next_id += 1
        domain.run_state = DomainState.RUNNING

    def stop(self, domain: FakeDomain) -> None:
        self.calls.append("stop")
        if self.fail_stop:
            raise HypervisorError("Failed to stop domain: timeout")
        domain.active = False
        domain.ident = -1
        domain.run_state = DomainState.OFF

    def is_active(self, domain: FakeDomain) -> bool:
        return domain.active

    def xml_desc(self, domain: FakeDomain) -> str:
        return domain.xml

    def undefine(self, domain: FakeDomain) -> None:
        self.calls.append("undefine")
        if self.fail_undefine:
            raise HypervisorError("Failed to undefine domain: busy")
        self.domains.pop(domain.name, None)

    def list_active(self) -> List[FakeDomain]:
        self._require()
        return [d for d in self.domains.values() if d.active]

    def list_inactive(self) -> List[FakeDomain]:
        self._require()
        return [d for d in self.domains.values() if not d.active]

    def state(self, domain: FakeDomain) -> DomainState:
        return domain.run_state

    def domain_id(self, domain: FakeDomain) -> Optional[int]:
        return domain.ident if domain.ident >= 0 else None

    @staticmethod
    def name(domain: FakeDomain) -> str:
        return domain.name


def domain_xml(name: str, *disk_paths: str) -> str:
    disks = "".join(
        f"<disk type='file' device='disk'><source file='{path}'/><target dev='vd{chr(97 + i)}'/></disk>"
        for i, path in enumerate(disk_paths)
    )
    return f"<domain type='kvm'><name>{name}</name><devices>{disks}</devices></domain>"


@pytest.fixture(autouse=True)
def quiet_debug():
    """Keep DEBUG output off unless a test enables it."""
    utils.set_verbose(False)
    yield
    utils.set_verbose(False)


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def centos_profile() -> DistroProfile:
    return DistroProfile(
        id="centos8",
        qcow_filename="CentOS-8-GenericCloud.qcow2",
        image_url="https://cloud.example.com/centos/8/images",
        os_variant="centos8",
        login_user="centos",
        sudo_group="wheel",
        cloud_init_disable="systemctl disable cloud-init.service",
    )


@pytest.fixture
def config(tmp_path, centos_profile) -> Config:
    """Built-in config redirected into tmp_path, with a test distro."""
    cfg = builtin_config()
    cfg.distros["centos8"] = centos_profile
    cfg.defaults.image_dir = tmp_path / "images"
    cfg.defaults.vm_dir = tmp_path / "vms"
    cfg.defaults.ssh_key_dir = tmp_path / "ssh"
    return cfg


@pytest.fixture
def ssh_key(tmp_path) -> Path:
    key_dir = tmp_path / "ssh"
    key_dir.mkdir(exist_ok=True)
    key = key_dir / "id_ed25519.pub"
    key.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIExample demo@host\n")
    return key


@pytest.fixture
def demo_request() -> ProvisioningRequest:
    return ProvisioningRequest(
        vm_name="demo",
        vcpu_count=1,
        memory_mib=1024,
        disk_size_gib=10,
        distro_id="centos8",
    )


@pytest.fixture
def user_nic() -> NicConfig:
    return NicConfig(mode="user", mac_address="52:54:00:12:34:56")
