"""Guest provisioning for devbox."""

from __future__ import annotations

import json
import os
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from devbox.cloud_init import build_seed_iso
from devbox.constants import START_SCRIPT_NAME
from devbox.exceptions import ManagerError, ToolError
from devbox.models import (
    STEP_DISK,
    STEP_FIRST_BOOT,
    STEP_SEED,
    STEPS,
    ArtifactState,
    GuestRecord,
    ProvisionConfig,
)
from devbox.ports import find_ssh_open_port
from devbox.scripts import write_control_scripts
from devbox.state import save_record
from devbox.utils import (
    download_file,
    ensure_directory,
    log,
    parse_size_to_bytes,
    run,
)


class Provisioner:
    """Bring one guest from nothing to a booted-once, ready-to-start VM.

    Each tracked step (``disk``, ``seed``, ``first-boot``) moves through
    ``missing -> in-progress -> complete`` and the record is persisted at
    every transition. A step counts as done only when its state is
    ``complete`` and its artifacts exist, so rerunning after a failure or
    an interrupt resumes at the first unfinished step.
    """

    def __init__(self, cfg: ProvisionConfig, record: Optional[GuestRecord] = None) -> None:
        self.cfg = cfg
        self.record = self._merge_record(record)
        self.scripts: Dict[str, Path] = {}

    def _merge_record(self, previous: Optional[GuestRecord]) -> GuestRecord:
        """Current parameters from the config; progress and port from the previous record."""
        cfg = self.cfg
        return GuestRecord(
            guest_name=cfg.guest_name,
            distro=cfg.distro,
            image_file=cfg.image_name,
            disk_size=cfg.disk_size,
            cpu=cfg.cpu,
            accel=cfg.accel,
            cores=cfg.cores,
            memory_mb=cfg.memory_mb,
            ssh_port=previous.ssh_port if previous else None,
            key_path=cfg.key_path,
            git_user=cfg.git_user,
            git_mail=cfg.git_mail,
            git_token=cfg.git_token,
            steps=dict(previous.steps) if previous else {},
            created_at=previous.created_at if previous else None,
        )

    def _artifacts(self, step: str) -> List[Path]:
        if step == STEP_DISK:
            return [self.cfg.work_image]
        if step == STEP_SEED:
            return [self.cfg.seed_iso, self.cfg.key_path, self.cfg.key_path.with_name(f"{self.cfg.guest_name}.pub")]
        if step == STEP_FIRST_BOOT:
            return [self.cfg.created_marker]
        raise ManagerError(f"Unknown provisioning step: {step}")

    def is_complete(self, step: str) -> bool:
        if self.record.state_of(step) is not ArtifactState.COMPLETE:
            return False
        return all(path.exists() for path in self._artifacts(step))

    def pending_steps(self) -> List[str]:
        pending = [step for step in STEPS if not self.is_complete(step)]
        if pending and STEP_FIRST_BOOT not in pending:
            pending.append(STEP_FIRST_BOOT)
        return pending

    def _save(self) -> None:
        save_record(self.cfg.state_file, self.record)

    def _clear_artifacts(self, step: str) -> None:
        for path in self._artifacts(step):
            if path.exists():
                log("DEBUG", f"Removing stale artifact {path}")
                path.unlink()

    @contextmanager
    def _step(self, step: str) -> Iterator[None]:
        self._clear_artifacts(step)
        self.record.steps[step] = ArtifactState.IN_PROGRESS
        self._save()
        yield
        self.record.steps[step] = ArtifactState.COMPLETE
        self._save()

    def _reconcile(self) -> None:
        """Demote steps whose recorded state cannot be trusted any more."""
        if self.record.state_of(STEP_FIRST_BOOT) is ArtifactState.IN_PROGRESS:
            # The guest disk was written to by a boot that never finished.
            log("WARN", "Previous first boot was interrupted; the guest disk will be recreated")
            self.record.steps[STEP_DISK] = ArtifactState.MISSING
            self._clear_artifacts(STEP_DISK)
        for step in STEPS:
            state = self.record.state_of(step)
            if state is ArtifactState.IN_PROGRESS:
                log("WARN", f"Step '{step}' was interrupted by a previous run; redoing it")
                self.record.steps[step] = ArtifactState.MISSING
            elif state is ArtifactState.COMPLETE and not self.is_complete(step):
                log("WARN", f"Step '{step}' is recorded as complete but its artifacts are gone; redoing it")
                self.record.steps[step] = ArtifactState.MISSING
        if self.record.state_of(STEP_FIRST_BOOT) is ArtifactState.COMPLETE and self._first_boot_stale():
            # A fresh disk or a new key pair has never seen the seed.
            log("WARN", "Guest disk or seed is being rebuilt; first boot will run again")
            self.record.steps[STEP_FIRST_BOOT] = ArtifactState.MISSING
            self.record.created_at = None
            self._clear_artifacts(STEP_FIRST_BOOT)

    def _first_boot_stale(self) -> bool:
        return not (self.is_complete(STEP_DISK) and self.is_complete(STEP_SEED))

    def provision(self) -> GuestRecord:
        ensure_directory(self.cfg.data_dir)
        ensure_directory(self.cfg.script_dir)
        self._reconcile()
        self._ensure_port()
        self._save()

        if self.is_complete(STEP_DISK):
            log("INFO", f"Guest disk already prepared at {self.cfg.work_image}")
        else:
            self._ensure_base_image()
            with self._step(STEP_DISK):
                self._prepare_work_image()

        if self.is_complete(STEP_SEED):
            log("INFO", f"Cloud-init seed already built at {self.cfg.seed_iso}")
        else:
            with self._step(STEP_SEED):
                self._generate_cloud_init()

        # Ports and sizing may change between runs even when nothing else does.
        if self.record.ssh_port is None:
            raise ManagerError("No SSH port reserved for the guest")
        self.scripts = write_control_scripts(self.cfg, self.record.ssh_port)

        if self.is_complete(STEP_FIRST_BOOT):
            log("INFO", f"Guest {self.cfg.guest_name} already initialised on {self.record.created_at}")
        else:
            with self._step(STEP_FIRST_BOOT):
                self._first_boot()

        self._save()
        log("SUCCESS", f"Guest {self.cfg.guest_name} is ready; start it with {self.scripts[START_SCRIPT_NAME]}")
        return self.record

    def _ensure_port(self) -> None:
        if self.record.ssh_port is not None:
            log("INFO", f"Using recorded SSH port {self.record.ssh_port}")
            return
        self.record.ssh_port = find_ssh_open_port()
        log("INFO", f"Reserved SSH port {self.record.ssh_port}")

    def _ensure_base_image(self) -> None:
        cached = self.cfg.cached_image
        if cached.exists():
            log("INFO", f"Using cached image: {cached}")
            return
        ensure_directory(cached.parent)
        download_file(self.cfg.image_url, cached, label=f"Downloading {self.cfg.distro_name} image")

    def _virtual_size(self, image: Path) -> int:
        info = run(["qemu-img", "info", "--output=json", str(image)], check=False, capture_output=True)
        if info.returncode != 0:
            return 0
        try:
            return int(json.loads(info.stdout).get("virtual-size", 0))
        except (ValueError, TypeError, AttributeError) as exc:
            raise ToolError(f"Unexpected qemu-img info output for {image}: {exc}") from exc

    def _prepare_work_image(self) -> None:
        log("INFO", f"Copying {self.cfg.cached_image} to {self.cfg.work_image}")
        shutil.copy2(self.cfg.cached_image, self.cfg.work_image)
        # Only expand, never shrink
        requested_bytes = parse_size_to_bytes(self.cfg.disk_size)
        current_vsize = self._virtual_size(self.cfg.work_image)
        if requested_bytes > current_vsize:
            log("INFO", f"Resizing disk to {self.cfg.disk_size}...")
            run(["qemu-img", "resize", str(self.cfg.work_image), self.cfg.disk_size], capture_output=True)
        else:
            log("INFO", f"Base image already {current_vsize // (1024**3)}G (>= {self.cfg.disk_size}); skip resize")

    def _generate_cloud_init(self) -> None:
        key = self.cfg.key_path
        log("INFO", f"Generating SSH key pair {key}")
        run(
            ["ssh-keygen", "-q", "-b", "2048", "-t", "rsa", "-f", str(key), "-N", "", "-C", f"root@{self.cfg.guest_name}"],
            capture_output=True,
        )
        os.chmod(key, 0o600)
        public_key = key.with_name(f"{key.name}.pub").read_text(encoding="utf-8").strip()
        build_seed_iso(self.cfg, public_key, self.cfg.seed_iso)

    def _first_boot(self) -> None:
        start_script = self.scripts[START_SCRIPT_NAME]
        log("INFO", "Booting guest for first-boot configuration; it powers off once cloud-init finishes")
        run([str(start_script), "-cdrom", str(self.cfg.seed_iso), "-nographic"])
        self.cfg.pid_file.unlink(missing_ok=True)
        stamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        self.cfg.created_marker.write_text(f"{stamp}\n")
        self.record.created_at = stamp
        log("SUCCESS", f"Guest {self.cfg.guest_name} completed first boot")
