"""goldimage package."""

__all__ = [
    "boot",
    "cancel",
    "cli",
    "config",
    "constants",
    "coordinator",
    "driver",
    "exceptions",
    "finalize",
    "httpsrv",
    "keys",
    "libvirt_driver",
    "media",
    "models",
    "remote",
    "teardown",
    "utils",
    "watcher",
]
