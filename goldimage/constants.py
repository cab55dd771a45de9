"""Global constants and path configuration for goldimage."""

from __future__ import annotations

import os
import re
from pathlib import Path

# GOLDIMAGE_DATA_DIR provides a single root for work disks and build state.
_DATA_DIR = os.environ.get("GOLDIMAGE_DATA_DIR")
if _DATA_DIR:
    STATE_DIR = Path(_DATA_DIR)
else:
    STATE_DIR = Path("/var/lib/goldimage")
WORK_DIR = STATE_DIR / "work"
DEFAULT_OUTPUT_DIR = Path(os.environ.get("GOLDIMAGE_OUTPUT_DIR", "output"))
DEFAULT_MANIFEST_NAME = "manifest.json"
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("GOLDIMAGE_LOG_VERBOSE", "").lower() in TRUTHY

# Environment overrides for template variables, e.g. GOLDIMAGE_VAR_ssh_password
VAR_ENV_PREFIX = "GOLDIMAGE_VAR_"

VAR_REF_RE = re.compile(r"\$\{var\.([A-Za-z_][A-Za-z0-9_]*)\}")
DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
BUILD_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

SUPPORTED_ARCHES = {
    "x86_64": {"machine": "q35", "features": ("acpi", "apic")},
    "aarch64": {"machine": "virt", "features": ("acpi",)},
}
ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}
SUPPORTED_FIRMWARE = {"bios", "uefi"}
SUPPORTED_DISK_FORMATS = {"qcow2", "raw"}

# Timing defaults, in seconds
DEFAULT_BOOT_WAIT = 10.0
DEFAULT_BOOT_KEY_INTERVAL = 0.1
DEFAULT_SSH_TIMEOUT = 30 * 60.0
DEFAULT_SSH_POLL_INTERVAL = 10.0
DEFAULT_SHUTDOWN_TIMEOUT = 5 * 60.0
SHUTDOWN_POLL_INTERVAL = 2.0
SSH_CONNECT_TIMEOUT = 10.0
REMOTE_CONNECT_ATTEMPTS = 5
REMOTE_BACKOFF_BASE = 2.0
REMOTE_BACKOFF_MAX = 30.0
PROCESS_KILL_GRACE = 10.0
OUTPUT_TAIL_LINES = 200

# Placeholders resolved in the boot command once the artifact server is up
HTTP_IP_PLACEHOLDER = "{{ .HTTPIP }}"
HTTP_PORT_PLACEHOLDER = "{{ .HTTPPort }}"

_SENSITIVE_FIELDS = {"password", "ssh_password", "private_key_passphrase"}
MASK = "********"
