"""Network interface XML generation for kvm-install-vm."""

from __future__ import annotations

from typing import Optional, Tuple
from xml.etree.ElementTree import Element, SubElement

from kvm_install_vm.constants import MAC_ADDRESS_RE, NETWORK_MODES, SUPPORTED_NETWORK_MODELS
from kvm_install_vm.exceptions import ManagerError
from kvm_install_vm.models import NicConfig


def parse_network_setting(setting: str, mac_address: Optional[str] = None) -> NicConfig:
    """Turn ``user``, ``network:<name>`` or ``bridge:<device>`` into a NicConfig."""
    mode, _, source = setting.strip().partition(":")
    mode = mode.lower()
    if mode not in NETWORK_MODES:
        raise ManagerError(
            f"Unsupported network '{setting}'. Use 'user', 'network:<name>' or 'bridge:<device>'"
        )
    if mode == "network" and not source:
        source = "default"
    if mode == "bridge" and not source:
        raise ManagerError("A bridge device is required, e.g. 'bridge:br0'")
    if mac_address is not None:
        mac_address = mac_address.lower()
        if not MAC_ADDRESS_RE.match(mac_address):
            raise ManagerError(f"Invalid MAC address '{mac_address}'")
    return NicConfig(mode=mode, source=source or None, mac_address=mac_address)


def build_interface_element(config: NicConfig) -> Tuple[Element, str]:
    """Build a libvirt ``<interface>`` element; returns it with the MAC used."""
    if not config.mac_address:
        raise ManagerError("Network interface requires a MAC address")
    mac = config.mac_address.lower()
    model = config.model
    if model not in SUPPORTED_NETWORK_MODELS:
        supported = ", ".join(sorted(SUPPORTED_NETWORK_MODELS))
        raise ManagerError(f"Unsupported network model '{model}'. Supported: {supported}")

    if config.mode == "user":
        iface = Element("interface", type="user")
        SubElement(iface, "mac", address=mac)
        SubElement(iface, "model", type=model)
        return iface, mac

    if config.mode == "network":
        iface = Element("interface", type="network")
        SubElement(iface, "mac", address=mac)
        SubElement(iface, "source", network=config.source or "default")
        SubElement(iface, "model", type=model)
        return iface, mac

    if config.mode == "bridge":
        if not config.source:
            raise ManagerError("A bridge device is required for bridge networking")
        iface = Element("interface", type="bridge")
        SubElement(iface, "mac", address=mac)
        if model == "virtio":
            SubElement(iface, "driver", name="vhost")
        SubElement(iface, "source", bridge=config.source)
        SubElement(iface, "model", type=model)
        return iface, mac

    raise ManagerError(f"Unsupported network mode: {config.mode}")
