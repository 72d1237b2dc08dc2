"""kvm-install-vm package."""

__all__ = [
    "cli",
    "cloudinit",
    "config",
    "constants",
    "disks",
    "domain",
    "exceptions",
    "hypervisor",
    "images",
    "inventory",
    "lifecycle",
    "models",
    "network",
    "provision",
    "utils",
]
