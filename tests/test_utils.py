"""Tests for kvm_install_vm.utils module."""

from __future__ import annotations

import re
import subprocess
from unittest.mock import patch

import pytest

from kvm_install_vm.exceptions import ExternalToolError, FilesystemError
from kvm_install_vm.utils import (
    ProgressPrinter,
    detect_cloud_init_content_type,
    deterministic_mac,
    ensure_directory,
    format_size,
    get_env,
    hash_password,
    log,
    run,
    set_verbose,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        assert capsys.readouterr().out == ""

    def test_debug_shown_when_verbose(self, capsys):
        set_verbose(True)
        log("DEBUG", "now visible")
        assert "now visible" in capsys.readouterr().out


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestEnsureDirectory:
    def test_creates_nested(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_directory(target)
        assert target.is_dir()

    def test_file_in_the_way(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(FilesystemError, match="Failed to create directory"):
            ensure_directory(blocker / "sub")


class TestHashPassword:
    def test_bcrypt_format(self):
        hashed = hash_password("secret")
        assert hashed.startswith("$2")
        assert "secret" not in hashed


class TestDeterministicMac:
    def test_stable_for_same_seed(self):
        assert deterministic_mac("demo") == deterministic_mac("demo")

    def test_format_and_prefix(self):
        mac = deterministic_mac("demo")
        assert re.match(r"^52:54:00:[0-9a-f]{2}:[0-9a-f]{2}:[0-9a-f]{2}$", mac)

    def test_differs_between_seeds(self):
        assert deterministic_mac("a") != deterministic_mac("b")


class TestDetectCloudInitContentType:
    @pytest.mark.parametrize(
        "payload,expected",
        [
            ("#!/bin/sh\necho hi\n", "text/x-shellscript"),
            ("#cloud-config\npackages: []\n", "text/cloud-config"),
            ("#cloud-boothook\n", "text/cloud-boothook"),
            ("#include\nhttp://x\n", "text/x-include-url"),
            ("plain text", "text/cloud-config"),
        ],
    )
    def test_detection(self, payload, expected):
        assert detect_cloud_init_content_type(payload) == expected


class TestFormatSize:
    def test_bytes(self):
        assert format_size(512) == "512 B"

    def test_mebibytes(self):
        assert format_size(5 * 1024 * 1024) == "5.0 MiB"

    def test_gibibytes(self):
        assert format_size(3 * 1024**3) == "3.0 GiB"


class TestProgressPrinter:
    def test_with_total(self, capsys):
        printer = ProgressPrinter()
        printer(0, 100)
        printer(50, 100)
        printer.finish()
        out = capsys.readouterr().out
        assert "50.0%" in out

    def test_without_total(self, capsys):
        ProgressPrinter()(2 * 1024 * 1024, None)
        assert "2.0 MiB downloaded" in capsys.readouterr().out


class TestRun:
    def test_success_returns_result(self):
        completed = subprocess.CompletedProcess(["true"], 0, stdout="ok", stderr="")
        with patch("kvm_install_vm.utils.subprocess.run", return_value=completed) as mock_run:
            result = run(["true"])
        assert result.stdout == "ok"
        assert mock_run.call_args.kwargs["capture_output"] is True

    def test_non_zero_exit_raises_with_stderr(self):
        completed = subprocess.CompletedProcess(["qemu-img", "create"], 1, stdout="", stderr="bad backing file\n")
        with patch("kvm_install_vm.utils.subprocess.run", return_value=completed):
            with pytest.raises(ExternalToolError, match="qemu-img create failed with exit code 1: bad backing") as exc:
                run(["qemu-img", "create", "x"])
        assert exc.value.returncode == 1
        assert exc.value.stderr == "bad backing file"

    def test_non_zero_exit_without_check(self):
        completed = subprocess.CompletedProcess(["false"], 1, stdout="", stderr="")
        with patch("kvm_install_vm.utils.subprocess.run", return_value=completed):
            assert run(["false"], check=False).returncode == 1

    def test_missing_executable(self):
        with patch("kvm_install_vm.utils.subprocess.run", side_effect=FileNotFoundError("nope")):
            with pytest.raises(ExternalToolError, match="genisoimage not found"):
                run(["genisoimage", "-o", "x.iso"])
