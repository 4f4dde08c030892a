"""devbox package."""

__all__ = [
    "cli",
    "cloud_init",
    "config",
    "constants",
    "exceptions",
    "models",
    "ports",
    "provisioner",
    "scripts",
    "state",
    "utils",
]
