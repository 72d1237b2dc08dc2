"""cloud-init seed rendering and ISO packaging."""

from __future__ import annotations

import os
import tempfile
import textwrap
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kvm_install_vm.constants import ISO_TOOLS, SEED_VOLUME_ID, SSH_KEY_NAMES
from kvm_install_vm.exceptions import ExternalToolError, FilesystemError, PreconditionError
from kvm_install_vm.models import SeedImage
from kvm_install_vm.utils import detect_cloud_init_content_type, ensure_directory, log, run, which

MIME_BOUNDARY = "==BOUNDARY=="


def find_ssh_public_key(key_dir: Path) -> str:
    """Return the first conventional public key found in ``key_dir``."""
    candidates = [key_dir / name for name in SSH_KEY_NAMES]
    for key_path in candidates:
        if key_path.is_file():
            log("DEBUG", f"Using SSH public key {key_path}")
            return read_ssh_public_key(key_path)
    locations = "\n    ".join(str(path) for path in candidates)
    raise PreconditionError(
        "No SSH public key found. Looked for:\n"
        f"    {locations}\n"
        "  Generate a keypair with 'ssh-keygen' or pass one with --ssh-key."
    )


def read_ssh_public_key(path: Path) -> str:
    try:
        key = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise FilesystemError(f"Failed to read SSH key from {path}: {exc}") from exc
    if not key:
        raise PreconditionError(f"SSH key file {path} is empty")
    return key


def _mime_part(payload: str, content_type: str) -> MIMEText:
    maintype, _, subtype = content_type.partition("/")
    charset = "us-ascii" if payload.isascii() else "utf-8"
    return MIMEText(payload, subtype or maintype, charset)


class SeedPackager:
    """Build the cloud-init NoCloud seed for a new guest."""

    def render(
        self,
        vm_name: str,
        dns_domain: str,
        ssh_public_key: str,
        login_user: str,
        sudo_group: str,
        disable_command: str,
        timezone: str = "UTC",
        password_hash: Optional[str] = None,
        extra_user_data: Optional[str] = None,
    ) -> Tuple[str, str]:
        """Return ``(user_data, meta_data)`` documents for ``vm_name``."""
        meta_data = (
            textwrap.dedent(
                f"""
            instance-id: {vm_name}
            local-hostname: {vm_name}
            """
            ).strip()
            + "\n"
        )

        admin: Dict[str, object] = {
            "name": login_user,
            "groups": [sudo_group],
            "shell": "/bin/bash",
            "sudo": "ALL=(ALL) NOPASSWD:ALL",
            "ssh_authorized_keys": [ssh_public_key],
        }
        if password_hash:
            admin["lock_passwd"] = False
            admin["passwd"] = password_hash

        cloud_config: Dict[str, object] = {
            "preserve_hostname": False,
            "hostname": vm_name,
            "fqdn": f"{vm_name}.{dns_domain}",
            "users": ["default", admin],
            "output": {"all": ">> /var/log/cloud-init.log"},
            "ssh_genkeytypes": ["ed25519", "rsa"],
            "ssh_authorized_keys": [ssh_public_key],
            "timezone": timezone,
            # Keep cloud-init from running again on later boots
            "runcmd": [disable_command],
        }
        if password_hash:
            cloud_config["ssh_pwauth"] = False

        document = "#cloud-config\n" + yaml.safe_dump(
            cloud_config, sort_keys=False, default_flow_style=False, width=4096
        )

        message = MIMEMultipart(boundary=MIME_BOUNDARY)
        message.attach(_mime_part(document, "text/cloud-config"))
        if extra_user_data and extra_user_data.strip():
            message.attach(_mime_part(extra_user_data, detect_cloud_init_content_type(extra_user_data)))
        return message.as_string(), meta_data

    @staticmethod
    def mastering_tool() -> str:
        for name in ISO_TOOLS:
            if which(name):
                return name
        raise ExternalToolError(
            "Neither genisoimage nor mkisofs found. Install one of them "
            "(e.g. 'apt install genisoimage' or 'dnf install genisoimage')."
        )

    @staticmethod
    def _iso_command(tool: str, iso_path: Path, inputs: List[Path]) -> List[str]:
        if tool == "genisoimage":
            cmd = [tool, "-output", str(iso_path), "-volid", SEED_VOLUME_ID, "-joliet", "-rock"]
        else:
            cmd = [tool, "-o", str(iso_path), "-V", SEED_VOLUME_ID, "-J", "-r"]
        return cmd + [str(path) for path in inputs]

    def seed_path(self, work_dir: Path, vm_name: str) -> Path:
        return work_dir / f"{vm_name}-cidata.iso"

    def package(self, work_dir: Path, vm_name: str, user_data: str, meta_data: str) -> SeedImage:
        """Write the documents to scratch files and master them into one ISO."""
        tool = self.mastering_tool()
        ensure_directory(work_dir)
        iso_path = self.seed_path(work_dir, vm_name)
        with tempfile.TemporaryDirectory(dir=work_dir, prefix=".seed-") as tmpdir:
            tmp = Path(tmpdir)
            user_data_path = tmp / "user-data"
            meta_data_path = tmp / "meta-data"
            try:
                user_data_path.write_text(user_data, encoding="utf-8")
                meta_data_path.write_text(meta_data, encoding="utf-8")
            except OSError as exc:
                raise FilesystemError(f"Failed to write cloud-init documents in {tmp}: {exc}") from exc
            # The ISO only appears under its final name once mastering succeeded
            partial_iso = tmp / iso_path.name
            log("INFO", f"Creating cloud-init seed {iso_path}")
            run(self._iso_command(tool, partial_iso, [user_data_path, meta_data_path]))
            try:
                os.replace(partial_iso, iso_path)
            except OSError as exc:
                raise FilesystemError(f"Failed to move cloud-init seed into place at {iso_path}: {exc}") from exc
        return SeedImage(iso_path=iso_path)
