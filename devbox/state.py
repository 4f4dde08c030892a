"""GuestRecord persistence for devbox.

The record lives in a YAML document at a fixed path inside the data
directory. It is rewritten atomically after every step transition so an
interrupted run leaves either the previous or the next version behind, never
a torn file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from devbox.exceptions import ManagerError
from devbox.models import ArtifactState, GuestRecord
from devbox.utils import ensure_directory, log, write_atomic


def render_ssh_config(record: GuestRecord) -> str:
    """An ssh_config(5) ``Host`` stanza for the guest."""
    lines = [
        f"Host {record.guest_name}",
        "  Hostname localhost",
        "  User root",
        f"  Port {record.ssh_port}",
        "  IdentitiesOnly yes",
        "  StrictHostKeyChecking no",
        f"  IdentityFile {record.key_path}",
    ]
    return "\n".join(lines) + "\n"


def dump_record(record: GuestRecord) -> str:
    doc: Dict[str, Any] = {
        "qemu": {
            "image file": record.image_file,
            "disk size": record.disk_size,
            "cpu": record.cpu,
            "accel": record.accel,
            "cores": record.cores,
            "memory": record.memory_mb,
        },
        "cloud-init": {
            "label": record.guest_name,
            "distro": record.distro,
            "git-user": record.git_user,
            "git-mail": record.git_mail,
            "git-token": record.git_token,
        },
        "ssh": {
            "port": record.ssh_port,
            "identity-file": str(record.key_path),
        },
        "steps": {step: state.value for step, state in record.steps.items()},
        "created": record.created_at,
    }
    text = yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
    if record.ssh_port is not None:
        text += "ssh-config: |\n" + "".join(f"  {line}\n" for line in render_ssh_config(record).splitlines())
    return text


def _section(doc: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = doc.get(name) or {}
    if not isinstance(value, dict):
        raise ManagerError(f"State file section '{name}' must be a mapping (got {type(value).__name__})")
    return value


def parse_record(text: str) -> GuestRecord:
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ManagerError(f"State file is not valid YAML: {exc}")
    if not isinstance(doc, dict):
        raise ManagerError("State file must contain a YAML mapping")

    qemu = _section(doc, "qemu")
    cloud_init = _section(doc, "cloud-init")
    ssh = _section(doc, "ssh")
    try:
        steps = {step: ArtifactState(value) for step, value in _section(doc, "steps").items()}
        port = ssh.get("port")
        return GuestRecord(
            guest_name=str(cloud_init["label"]),
            distro=str(cloud_init.get("distro") or ""),
            image_file=str(qemu.get("image file") or ""),
            disk_size=str(qemu.get("disk size") or ""),
            cpu=str(qemu.get("cpu") or ""),
            accel=str(qemu.get("accel") or ""),
            cores=int(qemu.get("cores") or 0),
            memory_mb=int(qemu.get("memory") or 0),
            ssh_port=int(port) if port is not None else None,
            key_path=Path(ssh.get("identity-file") or ""),
            git_user=str(cloud_init.get("git-user") or ""),
            git_mail=str(cloud_init.get("git-mail") or ""),
            git_token=str(cloud_init.get("git-token") or ""),
            steps=steps,
            created_at=str(doc["created"]) if doc.get("created") else None,
        )
    except KeyError as exc:
        raise ManagerError(f"State file is missing required key {exc}")
    except (TypeError, ValueError) as exc:
        raise ManagerError(f"State file holds an invalid value: {exc}")


def load_record(path: Path) -> Optional[GuestRecord]:
    if not path.exists():
        return None
    record = parse_record(path.read_text(encoding="utf-8"))
    log("DEBUG", f"Loaded guest record for {record.guest_name} from {path}")
    return record


def save_record(path: Path, record: GuestRecord) -> None:
    # The record carries the git token.
    ensure_directory(path.parent)
    write_atomic(path, dump_record(record), mode=0o600)
