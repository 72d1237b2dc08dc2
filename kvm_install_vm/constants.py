"""Global constants and path configuration for kvm-install-vm."""

from __future__ import annotations

import os
import re
from pathlib import Path

HOME = Path.home()

CONFIG_ENV_VAR = "KIV_CONFIG"
_XDG_CONFIG_HOME = Path(os.environ.get("XDG_CONFIG_HOME") or HOME / ".config")
USER_CONFIG_PATH = _XDG_CONFIG_HOME / "kvm-install-vm" / "config.yaml"
SYSTEM_CONFIG_PATH = Path("/etc/kvm-install-vm/config.yaml")
LEGACY_RC_PATH = HOME / ".kivrc"

# Per-user session daemon is the documented default; the system daemon is
# only used when requested through --connect, LIBVIRT_URI or the config file.
DEFAULT_LIBVIRT_URI = "qemu:///session"
SYSTEM_LIBVIRT_URI = "qemu:///system"

DEFAULT_IMAGE_DIR = HOME / "virt" / "images"
DEFAULT_VM_DIR = HOME / "virt" / "vms"
DEFAULT_SSH_KEY_DIR = HOME / ".ssh"
DEFAULT_DISTRO = "centos8"
DEFAULT_DNS_DOMAIN = "example.local"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_NETWORK = "user"

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

GIB = 1024**3
PARTIAL_SUFFIX = ".part"
DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB
DOWNLOAD_TIMEOUT = 60
USER_AGENT = "kvm-install-vm/1.0"
IMAGE_SUFFIXES = {".qcow2", ".img", ".raw"}

SEED_VOLUME_ID = "cidata"
ISO_TOOLS = ("genisoimage", "mkisofs")
SSH_KEY_NAMES = ("id_rsa.pub", "id_ed25519.pub", "id_ecdsa.pub", "id_dsa.pub")

# RFC 1123 label: hostname and domain name must agree.
VM_NAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

NETWORK_MODES = {"user", "network", "bridge"}
SUPPORTED_NETWORK_MODELS = {"virtio", "e1000", "e1000e", "rtl8139"}

BUILTIN_DISTROS = {
    "centos8": {
        "qcow_filename": "CentOS-8-GenericCloud-8.1.1911-20200113.3.x86_64.qcow2",
        "os_variant": "centos8",
        "image_url": "https://cloud.centos.org/centos/8/x86_64/images",
        "login_user": "centos",
        "sudo_group": "wheel",
        "cloud_init_disable": "systemctl disable cloud-init.service",
    },
    "ubuntu2004": {
        "qcow_filename": "ubuntu-20.04-server-cloudimg-amd64.img",
        "os_variant": "ubuntu20.04",
        "image_url": "https://cloud-images.ubuntu.com/releases/20.04/release",
        "login_user": "ubuntu",
        "sudo_group": "sudo",
        "cloud_init_disable": "systemctl disable cloud-init.service",
    },
    "ubuntu2204": {
        "qcow_filename": "ubuntu-22.04-server-cloudimg-amd64.img",
        "os_variant": "ubuntu22.04",
        "image_url": "https://cloud-images.ubuntu.com/releases/22.04/release",
        "login_user": "ubuntu",
        "sudo_group": "sudo",
        "cloud_init_disable": "systemctl disable cloud-init.service",
    },
    "fedora35": {
        "qcow_filename": "Fedora-Cloud-Base-35-1.2.x86_64.qcow2",
        "os_variant": "fedora35",
        "image_url": "https://download.fedoraproject.org/pub/fedora/linux/releases/35/Cloud/x86_64/images",
        "login_user": "fedora",
        "sudo_group": "wheel",
        "cloud_init_disable": "systemctl disable cloud-init.service",
    },
    "debian12": {
        "qcow_filename": "debian-12-genericcloud-amd64.qcow2",
        "os_variant": "debian12",
        "image_url": "https://cloud.debian.org/images/cloud/bookworm/latest",
        "login_user": "debian",
        "sudo_group": "sudo",
        "cloud_init_disable": "systemctl disable cloud-init.service",
    },
    "rocky9": {
        "qcow_filename": "Rocky-9-GenericCloud.latest.x86_64.qcow2",
        "os_variant": "rocky9",
        "image_url": "https://download.rockylinux.org/pub/rocky/9/images/x86_64",
        "login_user": "rocky",
        "sudo_group": "wheel",
        "cloud_init_disable": "systemctl disable cloud-init.service",
    },
}
