"""Configuration loading and environment variable parsing for devbox."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from devbox.constants import (
    CACHE_DIR,
    DATA_DIR,
    DEFAULT_CONFIG_PATH,
    DEFAULT_CORES,
    DEFAULT_CPU,
    DEFAULT_DISK_SIZE,
    DEFAULT_DISTRO,
    DEFAULT_GO_VERSION,
    DEFAULT_ROOT_PASSWORD,
    GUEST_NAME_RE,
    MAX_CORES,
    SCRIPT_DIR,
)
from devbox.exceptions import ManagerError, PreconditionError
from devbox.models import GuestRecord, ProvisionConfig
from devbox.utils import (
    default_accel,
    get_env,
    host_memory_mb,
    log,
    parse_int_env,
    validate_disk_size,
)


def load_distro_config(distro: str, config_path: Optional[Path] = None) -> Dict[str, str]:
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise ManagerError(f"Distribution config missing: {config_path}")
    data = yaml.safe_load(config_path.read_text())
    distros = data.get("distributions", {})
    if distro not in distros:
        available = sorted(distros.keys())
        available_list = "\n    ".join(available)
        raise ManagerError(
            f"Unknown distro '{distro}'.\n"
            f"  Available distributions:\n"
            f"    {available_list}\n"
            f"  Use --list-distros to see details."
        )
    return distros[distro]


def _git_config(key: str) -> str:
    try:
        result = subprocess.run(
            ["git", "config", "--global", "--get", key],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def read_git_identity() -> Tuple[str, str]:
    """Return the host's global git ``(user.name, user.email)``; blanks when unset."""
    return _git_config("user.name"), _git_config("user.email")


def _env_or_recorded(name: str, recorded: Optional[str], default: str) -> str:
    raw = get_env(name)
    if raw is not None and raw.strip():
        return raw.strip()
    if recorded:
        return recorded
    return default


def parse_env(
    guest_name: Optional[str] = None,
    git_token: Optional[str] = None,
    record: Optional[GuestRecord] = None,
) -> ProvisionConfig:
    """Resolve the provisioning configuration.

    Every parameter follows the same precedence: explicit argument or
    environment override, then the value persisted in ``record``, then the
    built-in default.
    """
    guest_name = (guest_name or "").strip()
    if guest_name:
        if record is not None and record.guest_name != guest_name:
            raise PreconditionError(
                f"{DATA_DIR} already holds guest '{record.guest_name}'; "
                f"refusing to provision '{guest_name}' over it"
            )
    elif record is not None:
        guest_name = record.guest_name
    else:
        raise PreconditionError("Missing required argument: guest name")
    if not GUEST_NAME_RE.match(guest_name):
        raise PreconditionError(
            f"Invalid guest name '{guest_name}'. Use letters, digits, '.', '_' and '-' only"
        )

    git_token = (git_token or "").strip()
    if git_token:
        if record is not None and record.git_token and record.git_token != git_token:
            log("WARN", "Git token differs from the recorded one; an already built guest keeps the old token")
    elif record is not None and record.git_token:
        git_token = record.git_token
    else:
        raise PreconditionError("Missing required argument: git token")

    git_user, git_mail = read_git_identity()
    if not git_user and record is not None:
        git_user = record.git_user
    if not git_mail and record is not None:
        git_mail = record.git_mail
    if not git_user:
        raise PreconditionError("Missing git user; set it with 'git config --global user.name'")
    if not git_mail:
        raise PreconditionError("Missing git mail; set it with 'git config --global user.email'")

    distro = _env_or_recorded("DISTRO", record.distro if record else None, DEFAULT_DISTRO)
    distro_info = load_distro_config(distro)

    disk_size = validate_disk_size(
        _env_or_recorded("DISK_SIZE", record.disk_size if record else None, DEFAULT_DISK_SIZE)
    )
    cpu = _env_or_recorded("CPU", record.cpu if record else None, DEFAULT_CPU)
    accel = _env_or_recorded("ACCEL", record.accel if record else None, default_accel())
    cores_default = str(record.cores) if record is not None and record.cores else DEFAULT_CORES
    cores = parse_int_env("CORES", cores_default, min_val=1, max_val=MAX_CORES)

    cfg = ProvisionConfig(
        guest_name=guest_name,
        git_token=git_token,
        git_user=git_user,
        git_mail=git_mail,
        distro=distro,
        distro_name=distro_info["name"],
        image_url=distro_info["url"],
        disk_size=disk_size,
        cpu=cpu,
        accel=accel,
        cores=cores,
        go_version=get_env("GO_VERSION") or DEFAULT_GO_VERSION,
        root_password=get_env("DEVBOX_ROOT_PASSWORD") or DEFAULT_ROOT_PASSWORD,
        data_dir=DATA_DIR,
        script_dir=SCRIPT_DIR,
        cache_dir=CACHE_DIR,
    )

    host_mem = host_memory_mb()
    if host_mem is not None and cfg.memory_mb > host_mem:
        log(
            "WARN",
            f"CORES={cores} allocates {cfg.memory_mb} MiB of guest memory but the host only has "
            f"{host_mem} MiB; lower CORES if the guest fails to start",
        )
    return cfg
