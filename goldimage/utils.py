"""Utility functions for goldimage."""

from __future__ import annotations

import hashlib
import os
import subprocess
import threading
from pathlib import Path
from typing import Any, Iterable, List, Optional, Union

from goldimage.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    DURATION_RE,
    MASK,
)
from goldimage.exceptions import ConfigurationError

_print_lock = threading.Lock()


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    # parallel builds share stdout
    with _print_lock:
        print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_duration(raw: Union[str, int, float], name: str = "duration") -> float:
    """Turn '30m', '10s', '1.5h', '250ms' or a bare number of seconds into seconds."""
    if isinstance(raw, bool):
        raise ConfigurationError(f"{name} must be a duration (got {raw!r})")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        match = DURATION_RE.match(str(raw).strip())
        if not match:
            raise ConfigurationError(f"{name} must be a duration like '10s' or '30m' (got '{raw}')")
        number, unit = match.groups()
        factor = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}.get(unit or "s", 1)
        value = float(number) * factor
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative (got {raw})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigurationError(
            f"Invalid disk_size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def strip_local_prefix(path: Path, base: Path) -> str:
    """Return 'path' relative to 'base', or just its name when it lives elsewhere."""
    try:
        return Path(os.path.abspath(path)).relative_to(os.path.abspath(base)).as_posix()
    except ValueError:
        return Path(path).name


def mask_secrets(text: str, secrets: Iterable[Optional[str]]) -> str:
    """Replace every occurrence of any non-empty secret in 'text'."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return text


def mask_values(value: Any, secrets: Iterable[Optional[str]]) -> Any:
    """Apply mask_secrets() to every string inside nested dicts and lists."""
    secrets = tuple(secrets)
    if isinstance(value, str):
        return mask_secrets(value, secrets)
    if isinstance(value, dict):
        return {k: mask_values(v, secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [mask_values(v, secrets) for v in value]
    return value


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(str(c) for c in cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True
