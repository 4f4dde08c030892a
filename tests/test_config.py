"""Tests for devbox.config module."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest
import yaml

import devbox.config as config_module
from devbox.config import load_distro_config, parse_env, read_git_identity
from devbox.exceptions import ManagerError, PreconditionError


@pytest.fixture
def distro_config_file(tmp_path):
    """Create a temporary distros.yaml file."""
    config = {
        "distributions": {
            "ubuntu-jammy": {
                "name": "Ubuntu 22.04",
                "release": "jammy",
                "url": "https://example.com/jammy-server-cloudimg-amd64.img",
            },
            "ubuntu-noble": {
                "name": "Ubuntu 24.04",
                "release": "noble",
                "url": "https://example.com/noble-server-cloudimg-amd64.img",
            },
        }
    }
    config_path = tmp_path / "distros.yaml"
    config_path.write_text(yaml.dump(config))
    return config_path


@pytest.fixture
def patched_config(monkeypatch, tmp_path, distro_config_file):
    """Point parse_env() at temporary paths and a fixed host."""
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", distro_config_file)
    monkeypatch.setattr(config_module, "DATA_DIR", tmp_path / "_data")
    monkeypatch.setattr(config_module, "SCRIPT_DIR", tmp_path / "_scripts")
    monkeypatch.setattr(config_module, "CACHE_DIR", tmp_path / "cache")
    monkeypatch.setattr(config_module, "default_accel", lambda: "kvm")
    monkeypatch.setattr(config_module, "host_memory_mb", lambda: 65536)
    monkeypatch.setattr(config_module, "read_git_identity", lambda: ("Jordan Doe", "jordan@example.com"))


class TestLoadDistroConfig:
    def test_valid_distro(self, distro_config_file):
        info = load_distro_config("ubuntu-jammy", distro_config_file)
        assert info["release"] == "jammy"
        assert "url" in info

    def test_unknown_distro_raises(self, distro_config_file):
        with pytest.raises(ManagerError, match="Unknown distro 'nonexistent'"):
            load_distro_config("nonexistent", distro_config_file)

    def test_missing_config_raises(self, tmp_path):
        with pytest.raises(ManagerError, match="Distribution config missing"):
            load_distro_config("ubuntu-jammy", tmp_path / "missing.yaml")

    def test_packaged_catalogue_has_default_distro(self):
        info = load_distro_config("ubuntu-jammy")
        assert info["url"].endswith("jammy-server-cloudimg-amd64.img")


class TestReadGitIdentity:
    def test_reads_global_config(self):
        results = [
            subprocess.CompletedProcess([], 0, "Jordan Doe\n", ""),
            subprocess.CompletedProcess([], 0, "jordan@example.com\n", ""),
        ]
        with patch("devbox.config.subprocess.run", side_effect=results) as mock_run:
            assert read_git_identity() == ("Jordan Doe", "jordan@example.com")
        assert mock_run.call_args_list[0].args[0] == ["git", "config", "--global", "--get", "user.name"]

    def test_unset_values_are_blank(self):
        unset = subprocess.CompletedProcess([], 1, "", "")
        with patch("devbox.config.subprocess.run", return_value=unset):
            assert read_git_identity() == ("", "")


@pytest.mark.usefixtures("clean_env", "patched_config")
class TestParseEnv:
    def test_defaults(self, tmp_path):
        cfg = parse_env("devvm", "ghp_token")
        assert cfg.guest_name == "devvm"
        assert cfg.git_token == "ghp_token"
        assert cfg.git_user == "Jordan Doe"
        assert cfg.distro == "ubuntu-jammy"
        assert cfg.disk_size == "100G"
        assert cfg.cpu == "max"
        assert cfg.accel == "kvm"
        assert cfg.cores == 4
        assert cfg.memory_mb == 8192
        assert cfg.data_dir == tmp_path / "_data"
        assert cfg.cached_image == tmp_path / "cache" / "ubuntu-jammy" / "jammy-server-cloudimg-amd64.img"

    def test_env_overrides(self, mock_env):
        mock_env(CPU="qemu64", ACCEL="tcg", CORES="2", DISK_SIZE="40G", DISTRO="ubuntu-noble")
        cfg = parse_env("devvm", "ghp_token")
        assert cfg.cpu == "qemu64"
        assert cfg.accel == "tcg"
        assert cfg.cores == 2
        assert cfg.memory_mb == 4096
        assert cfg.disk_size == "40G"
        assert cfg.image_name == "noble-server-cloudimg-amd64.img"

    def test_reuses_recorded_name_without_argument(self, guest_record):
        cfg = parse_env(None, None, guest_record)
        assert cfg.guest_name == guest_record.guest_name
        assert cfg.git_token == guest_record.git_token

    def test_missing_name_without_record(self):
        with pytest.raises(PreconditionError, match="guest name"):
            parse_env(None, "ghp_token")

    def test_different_name_than_recorded_is_refused(self, guest_record):
        with pytest.raises(PreconditionError, match="already holds guest 'devvm'"):
            parse_env("other", "ghp_token", guest_record)

    def test_invalid_guest_name(self):
        with pytest.raises(PreconditionError, match="Invalid guest name"):
            parse_env("../evil", "ghp_token")

    def test_missing_token_without_record(self):
        with pytest.raises(PreconditionError, match="git token"):
            parse_env("devvm", None)

    def test_blank_token_is_missing(self):
        with pytest.raises(PreconditionError, match="git token"):
            parse_env("devvm", "   ")

    def test_blank_name_is_missing(self):
        with pytest.raises(PreconditionError, match="guest name"):
            parse_env("  ", "ghp_token")

    def test_blank_token_falls_back_to_record(self, guest_record):
        cfg = parse_env(None, " \t", guest_record)
        assert cfg.git_token == guest_record.git_token

    def test_explicit_token_overrides_record(self, guest_record):
        with patch("devbox.config.log") as mock_log:
            cfg = parse_env(None, "ghp_rotated", guest_record)
        assert cfg.git_token == "ghp_rotated"
        assert mock_log.call_args[0][0] == "WARN"

    def test_missing_git_identity_fails(self, monkeypatch):
        monkeypatch.setattr(config_module, "read_git_identity", lambda: ("", "jordan@example.com"))
        with pytest.raises(PreconditionError, match="Missing git user"):
            parse_env("devvm", "ghp_token")

    def test_git_identity_falls_back_to_record(self, monkeypatch, guest_record):
        monkeypatch.setattr(config_module, "read_git_identity", lambda: ("", ""))
        cfg = parse_env(None, None, guest_record)
        assert cfg.git_user == guest_record.git_user
        assert cfg.git_mail == guest_record.git_mail

    def test_recorded_sizing_reused_unless_overridden(self, guest_record, mock_env):
        guest_record.cores = 6
        guest_record.cpu = "host"
        cfg = parse_env(None, None, guest_record)
        assert cfg.cores == 6
        assert cfg.cpu == "host"
        assert cfg.memory_mb == 6 * 2048

        mock_env(CORES="8")
        cfg = parse_env(None, None, guest_record)
        assert cfg.cores == 8
        assert cfg.memory_mb == 16384

    def test_invalid_cores(self, mock_env):
        mock_env(CORES="0")
        with pytest.raises(ManagerError, match="CORES must be >= 1"):
            parse_env("devvm", "ghp_token")

    def test_unknown_distro(self, mock_env):
        mock_env(DISTRO="plan9")
        with pytest.raises(ManagerError, match="Unknown distro 'plan9'"):
            parse_env("devvm", "ghp_token")

    def test_memory_beyond_host_warns(self, monkeypatch, mock_env):
        monkeypatch.setattr(config_module, "host_memory_mb", lambda: 4096)
        mock_env(CORES="4")
        with patch("devbox.config.log") as mock_log:
            cfg = parse_env("devvm", "ghp_token")
        assert cfg.memory_mb == 8192
        level, message = mock_log.call_args[0]
        assert level == "WARN"
        assert "8192 MiB" in message
