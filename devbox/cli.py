"""CLI entry points for devbox."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from devbox.config import parse_env
from devbox.constants import _SENSITIVE_FIELDS, DATA_DIR, DEFAULT_CONFIG_PATH, STATE_FILE_NAME
from devbox.exceptions import ManagerError
from devbox.models import ProvisionConfig
from devbox.provisioner import Provisioner
from devbox.state import dump_record, load_record
from devbox.utils import check_dependencies, log


def list_distros(config_path: Optional[Path] = None) -> None:
    """Print available distributions and exit."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        log("ERROR", f"Distribution config missing: {config_path}")
        return
    data = yaml.safe_load(config_path.read_text())
    distros = data.get("distributions", {})
    if not distros:
        log("WARN", "No distributions found")
        return

    max_key = max(len(k) for k in distros)
    for key in sorted(distros):
        info = distros[key]
        name = info.get("name", key)
        release = info.get("release", "?")
        print(f"  {key:<{max_key}}  {name}  (release={release})")


def show_config(cfg: ProvisionConfig) -> None:
    """Print the resolved provisioning configuration and exit."""
    import dataclasses

    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        else:
            print(f"  {field.name}: {value}")
    print(f"  memory_mb: {cfg.memory_mb}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Provision a local QEMU development VM with cloud-init")
    parser.add_argument("guest_name", nargs="?", help="Guest name (reused from the state file when omitted)")
    parser.add_argument("git_token", nargs="?", help="Git access token baked into the guest's git config")
    parser.add_argument("--list-distros", action="store_true", help="List available distributions and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Check dependencies and show pending steps, then exit")
    args = parser.parse_args(argv)

    if args.list_distros:
        list_distros()
        return 0

    state_file = DATA_DIR / STATE_FILE_NAME
    try:
        check_dependencies()
        record = load_record(state_file)
        cfg = parse_env(args.guest_name, args.git_token, record)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    provisioner = Provisioner(cfg, record)
    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        if provisioner.record.ssh_port is not None:
            log("INFO", f"SSH port:    {provisioner.record.ssh_port} (recorded)")
        else:
            log("INFO", "SSH port:    will be allocated")
        if cfg.cached_image.exists():
            log("INFO", f"Base image:  {cfg.cached_image} (cached)")
        else:
            log("INFO", f"Base image:  {cfg.image_url} (will download)")
        pending = provisioner.pending_steps()
        log("INFO", f"Pending:     {', '.join(pending) if pending else 'none'}")
        log("INFO", "=== Dry-run complete (nothing was changed) ===")
        return 0

    log("INFO", f"Guest: {cfg.guest_name} | Distro: {cfg.distro_name} | Disk: {cfg.disk_size}")
    log("INFO", f"CPU: {cfg.cpu} | Accel: {cfg.accel} | Cores: {cfg.cores} | Memory: {cfg.memory_mb} MiB")
    try:
        result = provisioner.provision()
    except ManagerError as exc:
        log("ERROR", str(exc))
        log("ERROR", "Rerun devbox to resume from the last completed step")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1

    print(dump_record(result), end="", flush=True)
    return 0
