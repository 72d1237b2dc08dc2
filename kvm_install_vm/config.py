"""Configuration loading and environment overrides for kvm-install-vm."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kvm_install_vm.constants import (
    BUILTIN_DISTROS,
    CONFIG_ENV_VAR,
    LEGACY_RC_PATH,
    NETWORK_MODES,
    SYSTEM_CONFIG_PATH,
    USER_CONFIG_PATH,
)
from kvm_install_vm.exceptions import ManagerError
from kvm_install_vm.models import Config, Defaults, DistroProfile
from kvm_install_vm.utils import ensure_directory, get_env, log

_DISTRO_FIELDS = ("qcow_filename", "os_variant", "image_url", "login_user", "sudo_group", "cloud_init_disable")
_INT_DEFAULTS = ("memory_mb", "vcpus", "disk_size_gb")
_PATH_DEFAULTS = ("image_dir", "vm_dir", "ssh_key_dir")


def config_search_paths() -> List[Path]:
    paths = []
    explicit = get_env(CONFIG_ENV_VAR)
    if explicit:
        paths.append(Path(explicit).expanduser())
    paths.append(USER_CONFIG_PATH)
    paths.append(SYSTEM_CONFIG_PATH)
    return paths


def _parse_distro(distro_id: str, raw: Any) -> DistroProfile:
    if not isinstance(raw, dict):
        raise ManagerError(f"Distribution '{distro_id}' must be a mapping")
    missing = [name for name in _DISTRO_FIELDS if not raw.get(name)]
    if missing:
        raise ManagerError(f"Distribution '{distro_id}' is missing: {', '.join(missing)}")
    return DistroProfile(id=distro_id, **{name: str(raw[name]) for name in _DISTRO_FIELDS})


def _parse_defaults(raw: Any, base: Defaults) -> Defaults:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        raise ManagerError("'defaults' must be a mapping")
    known = {f.name for f in dataclasses.fields(Defaults)}
    unknown = sorted(set(raw) - known)
    if unknown:
        log("WARN", f"Ignoring unknown config defaults: {', '.join(unknown)}")
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known or value is None:
            continue
        if key in _INT_DEFAULTS:
            try:
                values[key] = int(value)
            except (TypeError, ValueError):
                raise ManagerError(f"defaults.{key} must be an integer (got '{value}')")
            if values[key] < (0 if key == "disk_size_gb" else 1):
                raise ManagerError(f"defaults.{key} is out of range (got {value})")
        elif key in _PATH_DEFAULTS:
            values[key] = Path(str(value)).expanduser()
        else:
            values[key] = str(value)
    defaults = dataclasses.replace(base, **values)
    mode = defaults.network.split(":", 1)[0]
    if mode not in NETWORK_MODES:
        raise ManagerError(
            f"Unsupported network '{defaults.network}'. Use 'user', 'network:<name>' or 'bridge:<device>'"
        )
    return defaults


def builtin_config() -> Config:
    distros = {key: _parse_distro(key, value) for key, value in BUILTIN_DISTROS.items()}
    return Config(distros=distros, defaults=Defaults())


def config_from_dict(data: Any) -> Config:
    """Merge a parsed configuration document over the built-in defaults."""
    config = builtin_config()
    if data is None:
        return config
    if not isinstance(data, dict):
        raise ManagerError("Configuration must be a YAML mapping")
    distros = data.get("distros") or {}
    if not isinstance(distros, dict):
        raise ManagerError("'distros' must be a mapping of distro id to settings")
    for distro_id, raw in distros.items():
        config.distros[str(distro_id)] = _parse_distro(str(distro_id), raw)
    config.defaults = _parse_defaults(data.get("defaults"), config.defaults)
    return config


def load_config_file(path: Path) -> Config:
    try:
        content = path.read_text()
    except OSError as exc:
        raise ManagerError(f"Failed to read config file {path}: {exc}")
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ManagerError(f"Config file {path} contains invalid YAML: {exc}")
    return config_from_dict(data)


def apply_env_overrides(config: Config) -> Config:
    uri = (get_env("LIBVIRT_URI") or "").strip()
    if uri:
        config.defaults.libvirt_uri = uri
    return config


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from ``path`` or the first existing default location."""
    if path is not None:
        if not path.exists():
            raise ManagerError(f"Config file not found: {path}")
        log("DEBUG", f"Loading config from {path}")
        return apply_env_overrides(load_config_file(path))

    for candidate in config_search_paths():
        if candidate.exists():
            log("DEBUG", f"Loading config from {candidate}")
            return apply_env_overrides(load_config_file(candidate))

    if LEGACY_RC_PATH.exists():
        log("WARN", f"Legacy {LEGACY_RC_PATH} found but not supported. Please convert it to YAML at {USER_CONFIG_PATH}")
    log("DEBUG", "No config file found; using built-in defaults")
    return apply_env_overrides(builtin_config())


def config_to_dict(config: Config) -> Dict[str, Any]:
    defaults = {}
    for f in dataclasses.fields(Defaults):
        value = getattr(config.defaults, f.name)
        if value is None:
            continue
        defaults[f.name] = str(value) if isinstance(value, Path) else value
    return {
        "defaults": defaults,
        "distros": {key: config.distros[key].to_dict() for key in sorted(config.distros)},
    }


def save_config(config: Config, path: Path) -> None:
    ensure_directory(path.parent)
    content = yaml.safe_dump(config_to_dict(config), sort_keys=False, default_flow_style=False)
    try:
        path.write_text(content)
    except OSError as exc:
        raise ManagerError(f"Failed to write config to {path}: {exc}")
    if config.defaults.password:
        os.chmod(path, 0o600)
