"""Utility functions for kvm-install-vm."""

from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from kvm_install_vm.constants import _LOG_VERBOSE
from kvm_install_vm.exceptions import ExternalToolError, FilesystemError

_verbose = _LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def ensure_directory(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FilesystemError(f"Failed to create directory {path}: {exc}") from exc


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def which(name: str) -> Optional[str]:
    return shutil.which(name)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def detect_cloud_init_content_type(payload: str) -> str:
    """Infer the MIME type for cloud-init user data."""
    stripped = payload.lstrip()
    if not stripped:
        return "text/cloud-config"
    first_line = stripped.splitlines()[0].strip().lower()
    if stripped.startswith("#!"):
        return "text/x-shellscript"
    if first_line.startswith("#cloud-config-archive"):
        return "text/cloud-config-archive"
    if first_line.startswith("#cloud-config"):
        return "text/cloud-config"
    if first_line.startswith("#cloud-boothook"):
        return "text/cloud-boothook"
    if first_line.startswith("#include"):
        return "text/x-include-url"
    if first_line.startswith("#part-handler"):
        return "text/part-handler"
    return "text/cloud-config"


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    octets[3] = octets[3] | 0x02  # ensure locally administered bit
    octets[3] = octets[3] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)


def format_size(num_bytes: int) -> str:
    value = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} GiB"  # pragma: no cover


class ProgressPrinter:
    """Render download progress on one terminal line."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self.start_time = time.time()
        self._start_bytes: Optional[int] = None

    def __call__(self, downloaded: int, total: Optional[int]) -> None:
        if self._start_bytes is None:
            self._start_bytes = downloaded
        elapsed = time.time() - self.start_time
        transferred = downloaded - self._start_bytes
        speed = transferred / elapsed if elapsed > 0 else 0
        downloaded_mb = downloaded / (1024 * 1024)

        if total:
            total_mb = total / (1024 * 1024)
            pct = downloaded * 100 / total
            remaining = (total - downloaded) / speed if speed > 0 else 0
            eta_str = time.strftime("%M:%S", time.gmtime(remaining))
            bar_len = 30
            filled = int(bar_len * downloaded / total)
            bar = "#" * filled + "-" * (bar_len - filled)
            print(
                f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                f"({speed / (1024 * 1024):.1f} MiB/s, ETA {eta_str})",
                end="", flush=True,
            )
        else:
            print(
                f"\r  {downloaded_mb:.1f} MiB downloaded "
                f"({speed / (1024 * 1024):.1f} MiB/s)",
                end="", flush=True,
            )

    def finish(self) -> None:
        print(flush=True)  # newline after progress


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging, capturing output.

    A non-zero exit (when ``check`` is set) or a missing executable raises
    ``ExternalToolError`` with the captured stderr attached.
    """
    log("DEBUG", f"Running: {' '.join(cmd)}")
    kwargs.setdefault("capture_output", True)
    try:
        result = subprocess.run(cmd, check=False, text=True, **kwargs)
    except FileNotFoundError as exc:
        raise ExternalToolError(f"{cmd[0]} not found. Is it installed?", cmd=cmd) from exc
    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        message = f"{' '.join(cmd[:2])} failed with exit code {result.returncode}"
        if stderr:
            message += f": {stderr}"
        raise ExternalToolError(message, cmd=cmd, returncode=result.returncode, stderr=stderr)
    return result
