"""Data models for devbox."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from devbox.constants import (
    CREATED_MARKER_NAME,
    MEMORY_PER_CORE_MB,
    SEED_ISO_NAME,
    STATE_FILE_NAME,
)


class ArtifactState(str, Enum):
    MISSING = "missing"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"


# Steps whose completion is tracked in the state file, in execution order.
STEP_DISK = "disk"
STEP_SEED = "seed"
STEP_FIRST_BOOT = "first-boot"
STEPS = (STEP_DISK, STEP_SEED, STEP_FIRST_BOOT)


@dataclass
class ProvisionConfig:
    guest_name: str
    git_token: str
    git_user: str
    git_mail: str
    distro: str
    distro_name: str
    image_url: str
    disk_size: str
    cpu: str
    accel: str
    cores: int
    go_version: str
    root_password: str
    data_dir: Path
    script_dir: Path
    cache_dir: Path

    @property
    def memory_mb(self) -> int:
        return self.cores * MEMORY_PER_CORE_MB

    @property
    def image_name(self) -> str:
        return self.image_url.rstrip("/").rsplit("/", 1)[-1]

    @property
    def cached_image(self) -> Path:
        return self.cache_dir / self.distro / self.image_name

    @property
    def work_image(self) -> Path:
        return self.data_dir / self.image_name

    @property
    def seed_iso(self) -> Path:
        return self.data_dir / SEED_ISO_NAME

    @property
    def key_path(self) -> Path:
        return self.data_dir / self.guest_name

    @property
    def pid_file(self) -> Path:
        return self.data_dir / f"{self.guest_name}.pid"

    @property
    def state_file(self) -> Path:
        return self.data_dir / STATE_FILE_NAME

    @property
    def created_marker(self) -> Path:
        return self.data_dir / CREATED_MARKER_NAME


@dataclass
class GuestRecord:
    guest_name: str
    distro: str
    image_file: str
    disk_size: str
    cpu: str
    accel: str
    cores: int
    memory_mb: int
    ssh_port: Optional[int]
    key_path: Path
    git_user: str
    git_mail: str
    git_token: str
    steps: Dict[str, ArtifactState] = field(default_factory=dict)
    created_at: Optional[str] = None

    def __post_init__(self):
        for step in STEPS:
            self.steps.setdefault(step, ArtifactState.MISSING)

    def state_of(self, step: str) -> ArtifactState:
        return self.steps.get(step, ArtifactState.MISSING)
