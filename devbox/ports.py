"""SSH forwarding port selection for devbox."""

from __future__ import annotations

import errno
import glob
import os
import socket
from pathlib import Path
from typing import Optional, Set

from devbox.constants import (
    SSH_CONFIG_PATH,
    SSH_INCLUDE_DIRECTIVE_RE,
    SSH_PORT_DIRECTIVE_RE,
    SSH_PORT_RANGE,
)
from devbox.exceptions import PortExhaustedError
from devbox.utils import log


def ssh_config_ports(config_path: Path, _seen: Optional[Set[Path]] = None) -> Set[int]:
    """Collect every ``Port`` value referenced by an SSH client configuration.

    ``Include`` directives are followed; relative patterns resolve against
    ``~/.ssh`` the way ssh(1) resolves them.
    """
    seen = _seen if _seen is not None else set()
    resolved = config_path.expanduser()
    if resolved in seen or not resolved.is_file():
        return set()
    seen.add(resolved)

    ports: Set[int] = set()
    try:
        lines = resolved.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        log("WARN", f"Could not read SSH config {resolved}: {exc}")
        return ports

    for line in lines:
        match = SSH_PORT_DIRECTIVE_RE.match(line)
        if match:
            ports.add(int(match.group(1)))
            continue
        match = SSH_INCLUDE_DIRECTIVE_RE.match(line)
        if match:
            for pattern in match.group(1).split():
                pattern = os.path.expanduser(pattern)
                if not os.path.isabs(pattern):
                    pattern = str(Path.home() / ".ssh" / pattern)
                for included in sorted(glob.glob(pattern)):
                    ports |= ssh_config_ports(Path(included), seen)
    return ports


def _bind_refused(family: socket.AddressFamily, host: str, port: int) -> bool:
    try:
        probe = socket.socket(family, socket.SOCK_STREAM)
    except OSError as exc:
        if exc.errno == errno.EAFNOSUPPORT:
            return False
        raise
    with probe:
        if family == socket.AF_INET6:
            # Check the IPv6 stack on its own; the IPv4 probe covers mapped addresses.
            probe.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        try:
            probe.bind((host, port))
        except OSError as exc:
            if exc.errno in {errno.EADDRINUSE, errno.EACCES}:
                return True
            if exc.errno == errno.EADDRNOTAVAIL:
                return False
            raise
    return False


def port_in_use(port: int) -> bool:
    """Return True if something on the host already holds ``port`` over IPv4 or IPv6."""
    if _bind_refused(socket.AF_INET, "", port):
        return True
    return socket.has_ipv6 and _bind_refused(socket.AF_INET6, "::", port)


def find_ssh_open_port(
    start: int = SSH_PORT_RANGE[0],
    end: int = SSH_PORT_RANGE[1],
    ssh_config: Path = SSH_CONFIG_PATH,
) -> int:
    """Pick the first port in ``[start, end)`` that is neither configured nor bound."""
    reserved = ssh_config_ports(ssh_config)
    for port in range(start, end):
        if port in reserved:
            log("DEBUG", f"Port {port} is referenced in {ssh_config}; skipping")
            continue
        if port_in_use(port):
            log("DEBUG", f"Port {port} is already bound; skipping")
            continue
        return port
    raise PortExhaustedError(f"No available port found in range {start}-{end - 1}")
