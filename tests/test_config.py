"""Tests for kvm_install_vm.config module."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest
import yaml

import kvm_install_vm.config as config_module
from kvm_install_vm.config import (
    builtin_config,
    config_from_dict,
    config_to_dict,
    load_config,
    save_config,
)
from kvm_install_vm.constants import DEFAULT_LIBVIRT_URI
from kvm_install_vm.exceptions import ManagerError


@pytest.fixture
def isolated_paths(monkeypatch, tmp_path):
    """Point every default config location into tmp_path."""
    monkeypatch.delenv("KIV_CONFIG", raising=False)
    monkeypatch.delenv("LIBVIRT_URI", raising=False)
    user = tmp_path / "user" / "config.yaml"
    system = tmp_path / "etc" / "config.yaml"
    legacy = tmp_path / ".kivrc"
    monkeypatch.setattr(config_module, "USER_CONFIG_PATH", user)
    monkeypatch.setattr(config_module, "SYSTEM_CONFIG_PATH", system)
    monkeypatch.setattr(config_module, "LEGACY_RC_PATH", legacy)
    return {"user": user, "system": system, "legacy": legacy}


def _write(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


class TestBuiltinConfig:
    def test_contains_stock_distros(self):
        distros = builtin_config().distros
        for key in ("centos8", "ubuntu2004", "fedora35"):
            assert key in distros

    def test_session_uri_is_default(self):
        assert builtin_config().defaults.libvirt_uri == "qemu:///session"
        assert DEFAULT_LIBVIRT_URI == "qemu:///session"

    def test_default_sizes(self):
        defaults = builtin_config().defaults
        assert (defaults.memory_mb, defaults.vcpus, defaults.disk_size_gb) == (1024, 1, 10)


class TestConfigFromDict:
    def test_none_gives_builtin(self):
        assert config_from_dict(None).distros.keys() == builtin_config().distros.keys()

    def test_defaults_merged(self):
        cfg = config_from_dict({"defaults": {"memory_mb": "2048", "image_dir": "~/imgs"}})
        assert cfg.defaults.memory_mb == 2048
        assert cfg.defaults.image_dir == Path("~/imgs").expanduser()
        assert cfg.defaults.vcpus == 1

    def test_custom_distro_added(self):
        cfg = config_from_dict(
            {
                "distros": {
                    "alma9": {
                        "qcow_filename": "alma.qcow2",
                        "os_variant": "almalinux9",
                        "image_url": "https://example.com/alma",
                        "login_user": "almalinux",
                        "sudo_group": "wheel",
                        "cloud_init_disable": "systemctl disable cloud-init",
                    }
                }
            }
        )
        assert cfg.get_distro("alma9").login_user == "almalinux"
        assert "centos8" in cfg.distros

    def test_distro_missing_fields(self):
        with pytest.raises(ManagerError, match="missing: .*login_user"):
            config_from_dict({"distros": {"bad": {"qcow_filename": "x.qcow2"}}})

    def test_non_integer_default(self):
        with pytest.raises(ManagerError, match="must be an integer"):
            config_from_dict({"defaults": {"vcpus": "many"}})

    def test_zero_memory_rejected(self):
        with pytest.raises(ManagerError, match="out of range"):
            config_from_dict({"defaults": {"memory_mb": 0}})

    def test_invalid_network_mode(self):
        with pytest.raises(ManagerError, match="Unsupported network"):
            config_from_dict({"defaults": {"network": "direct:eth0"}})

    def test_unknown_default_warns(self, capsys):
        config_from_dict({"defaults": {"colour": "blue"}})
        assert "Ignoring unknown config defaults: colour" in capsys.readouterr().out

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ManagerError, match="YAML mapping"):
            config_from_dict(["a", "b"])


class TestLoadConfig:
    def test_explicit_path(self, isolated_paths, tmp_path):
        path = _write(tmp_path / "custom.yaml", {"defaults": {"vcpus": 4}})
        assert load_config(path).defaults.vcpus == 4

    def test_explicit_path_missing(self, isolated_paths, tmp_path):
        with pytest.raises(ManagerError, match="Config file not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, isolated_paths, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("defaults: [unclosed\n")
        with pytest.raises(ManagerError, match="invalid YAML"):
            load_config(path)

    def test_env_var_takes_precedence(self, isolated_paths, monkeypatch, tmp_path):
        _write(isolated_paths["user"], {"defaults": {"vcpus": 2}})
        env_path = _write(tmp_path / "env.yaml", {"defaults": {"vcpus": 8}})
        monkeypatch.setenv("KIV_CONFIG", str(env_path))
        assert load_config().defaults.vcpus == 8

    def test_user_before_system(self, isolated_paths):
        _write(isolated_paths["user"], {"defaults": {"vcpus": 2}})
        _write(isolated_paths["system"], {"defaults": {"vcpus": 3}})
        assert load_config().defaults.vcpus == 2

    def test_system_fallback(self, isolated_paths):
        _write(isolated_paths["system"], {"defaults": {"vcpus": 3}})
        assert load_config().defaults.vcpus == 3

    def test_builtin_when_nothing_found(self, isolated_paths):
        assert load_config().defaults.vcpus == 1

    def test_legacy_rc_warns(self, isolated_paths, capsys):
        isolated_paths["legacy"].write_text("MEMORY=2048\n")
        load_config()
        assert "Legacy" in capsys.readouterr().out

    def test_libvirt_uri_env_override(self, isolated_paths, monkeypatch):
        monkeypatch.setenv("LIBVIRT_URI", "qemu:///system")
        assert load_config().defaults.libvirt_uri == "qemu:///system"


class TestSaveConfig:
    def test_round_trip(self, tmp_path):
        cfg = builtin_config()
        cfg.defaults.memory_mb = 4096
        path = tmp_path / "nested" / "config.yaml"
        save_config(cfg, path)
        loaded = load_config(path)
        assert loaded.defaults.memory_mb == 4096
        assert loaded.get_distro("fedora35") == cfg.get_distro("fedora35")

    def test_password_file_is_private(self, tmp_path):
        cfg = builtin_config()
        cfg.defaults.password = "secret"
        path = tmp_path / "config.yaml"
        save_config(cfg, path)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_paths_serialised_as_strings(self):
        data = config_to_dict(builtin_config())
        assert isinstance(data["defaults"]["image_dir"], str)
        assert "password" not in data["defaults"]
