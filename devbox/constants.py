"""Global constants and path configuration for devbox."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "distros.yaml"

# CACHE_DIR is shared by every workspace on the host; DATA_DIR and SCRIPT_DIR
# belong to the guest provisioned from the current directory.
CACHE_DIR = Path(os.environ.get("DEVBOX_CACHE_DIR") or Path.home() / ".devbox-cache")
DATA_DIR = Path(os.environ.get("DEVBOX_DATA_DIR") or Path.cwd() / "_data")
SCRIPT_DIR = Path(os.environ.get("DEVBOX_SCRIPT_DIR") or Path.cwd() / "_scripts")
SSH_CONFIG_PATH = Path.home() / ".ssh" / "config"

STATE_FILE_NAME = "guest_info.yaml"
CREATED_MARKER_NAME = "created"
SEED_ISO_NAME = "cidata.iso"

START_SCRIPT_NAME = "start.sh"
LOGIN_SCRIPT_NAME = "login.sh"
STOP_SCRIPT_NAME = "stop.sh"

DEFAULT_DISTRO = "ubuntu-jammy"
DEFAULT_DISK_SIZE = "100G"
DEFAULT_CPU = "max"
DEFAULT_CORES = "4"
DEFAULT_GO_VERSION = "go1.20.3"
DEFAULT_ROOT_PASSWORD = "ubuntu"

MEMORY_PER_CORE_MB = 2048
MAX_CORES = 256

# Half-open: the upper bound is never handed out.
SSH_PORT_RANGE = (2222, 3333)

QEMU_BINARY = "qemu-system-x86_64"
ISO_TOOLS = ("mkisofs", "genisoimage")
REQUIRED_DEPENDENCIES = (QEMU_BINARY, "qemu-img", "ssh-keygen", "git", "pgrep")

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
GUEST_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
SSH_PORT_DIRECTIVE_RE = re.compile(r"^\s*port(?:\s*=\s*|\s+)(\d+)\s*$", re.IGNORECASE)
SSH_INCLUDE_DIRECTIVE_RE = re.compile(r"^\s*include(?:\s*=\s*|\s+)(.+?)\s*$", re.IGNORECASE)

_SENSITIVE_FIELDS = {"git_token", "root_password"}

DOCKER_APT_SOURCE = "deb [arch=amd64] https://download.docker.com/linux/ubuntu $RELEASE stable"
DOCKER_APT_KEY_ID = "9DC858229FC7DD38854AE2D88D81803C0EBFCD88"

GUEST_PACKAGES = (
    "curl",
    "git",
    "lsof",
    "vim",
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "qemu-kvm",
    "bridge-utils",
    "iputils-ping",
    "iproute2",
    "net-tools",
    "netcat-openbsd",
    "socat",
    "tcpdump",
    "traceroute",
)

GUEST_KERNEL_MODULES = ("tun", "loop", "dummy")
