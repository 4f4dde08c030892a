"""Shared test fixtures for devbox."""

from __future__ import annotations

import pytest

from devbox.models import ArtifactState, GuestRecord, ProvisionConfig


@pytest.fixture
def provision_config(tmp_path) -> ProvisionConfig:
    """Return a ProvisionConfig whose directories all live under tmp_path."""
    return ProvisionConfig(
        guest_name="devvm",
        git_token="ghp_testtoken1234567890",
        git_user="Jordan Doe",
        git_mail="jordan@example.com",
        distro="ubuntu-jammy",
        distro_name="Ubuntu 22.04 LTS (Jammy Jellyfish)",
        image_url="https://example.com/jammy/jammy-server-cloudimg-amd64.img",
        disk_size="100G",
        cpu="max",
        accel="kvm",
        cores=4,
        go_version="go1.20.3",
        root_password="ubuntu",
        data_dir=tmp_path / "_data",
        script_dir=tmp_path / "_scripts",
        cache_dir=tmp_path / "cache",
    )


@pytest.fixture
def guest_record(provision_config) -> GuestRecord:
    cfg = provision_config
    return GuestRecord(
        guest_name=cfg.guest_name,
        distro=cfg.distro,
        image_file=cfg.image_name,
        disk_size=cfg.disk_size,
        cpu=cfg.cpu,
        accel=cfg.accel,
        cores=cfg.cores,
        memory_mb=cfg.memory_mb,
        ssh_port=2222,
        key_path=cfg.key_path,
        git_user=cfg.git_user,
        git_mail=cfg.git_mail,
        git_token=cfg.git_token,
        steps={"disk": ArtifactState.COMPLETE},
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, cleared for a clean slate.
_PARSE_ENV_VARS = [
    "DISTRO",
    "DISK_SIZE",
    "CPU",
    "ACCEL",
    "CORES",
    "GO_VERSION",
    "DEVBOX_ROOT_PASSWORD",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
