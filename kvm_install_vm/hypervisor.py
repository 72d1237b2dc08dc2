"""Thin adapter over the libvirt bindings.

Everything the rest of the package needs from the control plane goes through
``Hypervisor``, which translates ``libvirt.libvirtError`` into this package's
exceptions and libvirt state codes into ``DomainState``.
"""

from __future__ import annotations

from typing import List, Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from kvm_install_vm.exceptions import HypervisorError, NotConnectedError, NotFoundError
from kvm_install_vm.models import DomainState
from kvm_install_vm.utils import log

_STATE_MAP = {
    libvirt.VIR_DOMAIN_RUNNING: DomainState.RUNNING,
    libvirt.VIR_DOMAIN_BLOCKED: DomainState.RUNNING,
    libvirt.VIR_DOMAIN_PAUSED: DomainState.PAUSED,
    libvirt.VIR_DOMAIN_PMSUSPENDED: DomainState.PAUSED,
    libvirt.VIR_DOMAIN_SHUTDOWN: DomainState.SHUTTING_DOWN,
    libvirt.VIR_DOMAIN_SHUTOFF: DomainState.OFF,
    libvirt.VIR_DOMAIN_CRASHED: DomainState.CRASHED,
}

UNDEFINE_FLAGS = (
    libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
    | libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA
    | libvirt.VIR_DOMAIN_UNDEFINE_NVRAM
)


def _message(exc: Exception) -> str:
    getter = getattr(exc, "get_error_message", None)
    return (getter() if getter else None) or str(exc)


def map_state(code: int) -> DomainState:
    return _STATE_MAP.get(code, DomainState.UNKNOWN)


class Hypervisor:
    def __init__(self, uri: str) -> None:
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None

    @property
    def connected(self) -> bool:
        return self.conn is not None

    def connect(self) -> None:
        log("DEBUG", f"Connecting to {self.uri}")
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise NotConnectedError(f"Failed to open libvirt connection to {self.uri}: {_message(exc)}") from exc
        if self.conn is None:
            raise NotConnectedError(f"Failed to open libvirt connection to {self.uri}")

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except libvirt.libvirtError as exc:
                log("DEBUG", f"Error closing libvirt connection: {_message(exc)}")
            self.conn = None

    def _require(self) -> libvirt.virConnect:
        if self.conn is None:
            raise NotConnectedError("libvirt connection not established")
        return self.conn

    def define(self, xml: str) -> libvirt.virDomain:
        try:
            domain = self._require().defineXML(xml)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to define domain: {_message(exc)}") from exc
        if domain is None:
            raise HypervisorError("Failed to define libvirt domain")
        return domain

    def lookup(self, name: str) -> libvirt.virDomain:
        try:
            return self._require().lookupByName(name)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise NotFoundError(f"Domain '{name}' not found") from exc
            raise HypervisorError(f"Failed to look up domain '{name}': {_message(exc)}") from exc

    def exists(self, name: str) -> bool:
        try:
            self.lookup(name)
        except NotFoundError:
            return False
        return True

    def start(self, domain: libvirt.virDomain) -> None:
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to start domain: {_message(exc)}") from exc

    def stop(self, domain: libvirt.virDomain) -> None:
        try:
            domain.destroy()
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to stop domain: {_message(exc)}") from exc

    def is_active(self, domain: libvirt.virDomain) -> bool:
        try:
            return bool(domain.isActive())
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to query domain state: {_message(exc)}") from exc

    def xml_desc(self, domain: libvirt.virDomain) -> str:
        try:
            return domain.XMLDesc(0)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to read domain XML: {_message(exc)}") from exc

    def undefine(self, domain: libvirt.virDomain) -> None:
        try:
            domain.undefineFlags(UNDEFINE_FLAGS)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to undefine domain: {_message(exc)}") from exc

    def list_active(self) -> List[libvirt.virDomain]:
        return self._list(libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE)

    def list_inactive(self) -> List[libvirt.virDomain]:
        return self._list(libvirt.VIR_CONNECT_LIST_DOMAINS_INACTIVE)

    def _list(self, flags: int) -> List[libvirt.virDomain]:
        try:
            return list(self._require().listAllDomains(flags))
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to list domains: {_message(exc)}") from exc

    def state(self, domain: libvirt.virDomain) -> DomainState:
        try:
            code, _reason = domain.state()
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to query domain state: {_message(exc)}") from exc
        return map_state(code)

    def domain_id(self, domain: libvirt.virDomain) -> Optional[int]:
        try:
            value = domain.ID()
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to query domain id: {_message(exc)}") from exc
        return value if value is not None and value >= 0 else None

    @staticmethod
    def name(domain: libvirt.virDomain) -> str:
        return domain.name()
