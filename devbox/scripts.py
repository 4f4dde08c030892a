"""Control script (start/login/stop) generation for devbox."""

from __future__ import annotations

import shlex
import textwrap
from pathlib import Path
from typing import Dict

from devbox.constants import (
    LOGIN_SCRIPT_NAME,
    QEMU_BINARY,
    START_SCRIPT_NAME,
    STOP_SCRIPT_NAME,
)
from devbox.models import ProvisionConfig
from devbox.utils import ensure_directory, log, write_atomic

_HEADER = "#!/usr/bin/env bash\n# Generated by devbox; rerun devbox to regenerate.\n"


def render_start_script(cfg: ProvisionConfig, ssh_port: int) -> str:
    pid_file = shlex.quote(str(cfg.pid_file))
    image = shlex.quote(str(cfg.work_image))
    machine = shlex.quote(f"type=q35,accel={cfg.accel}")
    body = textwrap.dedent(
        f"""
        pid_file={pid_file}
        if [[ -f "${{pid_file}}" ]]; then
          pid="$(<"${{pid_file}}")"
          if [[ -n "${{pid}}" ]] && kill -0 "${{pid}}" 2>/dev/null; then
            echo "Already running with process id: ${{pid}}"; exit 1
          fi
          rm -f "${{pid_file}}"
        fi

        declare -a args=("${{@}}")

        # For nested guests without hardware acceleration swap in:
        #   -cpu qemu64 -machine type=q35,accel=tcg
        args+=("-cpu" {shlex.quote(cfg.cpu)})
        args+=("-smp" "{cfg.cores}")
        args+=("-m" "{cfg.memory_mb}")
        args+=("-machine" {machine})
        args+=("-hda" {image})
        args+=("-netdev" "user,id=net0,hostfwd=tcp::{ssh_port}-:22")
        args+=("-device" "e1000,netdev=net0")
        args+=("-pidfile" "${{pid_file}}")

        if [[ "${{args[*]}}" != *"-nographic"* ]]; then
          args+=("-daemonize" "-display" "none")
        fi

        exec {QEMU_BINARY} "${{args[@]}}"
        """
    )
    return _HEADER + body


def render_login_script(cfg: ProvisionConfig, ssh_port: int) -> str:
    key = shlex.quote(str(cfg.key_path))
    return _HEADER + (
        f'\nexec ssh -l root -p "{ssh_port}" -o "StrictHostKeyChecking=no" -o "IdentitiesOnly=yes" '
        f'-i {key} localhost "${{@}}"\n'
    )


def render_stop_script(cfg: ProvisionConfig) -> str:
    pid_file = shlex.quote(str(cfg.pid_file))
    body = textwrap.dedent(
        f"""
        pid_file={pid_file}
        if [[ ! -f "${{pid_file}}" ]]; then
          echo "pidfile not found, exiting..."; exit 1
        fi
        pid="$(<"${{pid_file}}")"

        if [[ -z "${{pid}}" ]] || ! pgrep -x {QEMU_BINARY} | grep -qx "${{pid}}"; then
          echo "pid: ${{pid}} not found, exiting..."; exit 1
        fi

        echo "Killing {QEMU_BINARY} process: ${{pid}}"
        kill -9 "${{pid}}"
        rm -f "${{pid_file}}"
        """
    )
    return _HEADER + body


def write_control_scripts(cfg: ProvisionConfig, ssh_port: int) -> Dict[str, Path]:
    """(Re)write the control scripts from the current parameters."""
    ensure_directory(cfg.script_dir)
    rendered = {
        START_SCRIPT_NAME: render_start_script(cfg, ssh_port),
        LOGIN_SCRIPT_NAME: render_login_script(cfg, ssh_port),
        STOP_SCRIPT_NAME: render_stop_script(cfg),
    }
    paths: Dict[str, Path] = {}
    for name, content in rendered.items():
        path = cfg.script_dir / name
        write_atomic(path, content, mode=0o755)
        paths[name] = path
    log("INFO", f"Control scripts written to {cfg.script_dir}")
    return paths
