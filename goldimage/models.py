"""Data models for goldimage."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from goldimage.constants import (
    DEFAULT_BOOT_KEY_INTERVAL,
    DEFAULT_BOOT_WAIT,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_SSH_POLL_INTERVAL,
    DEFAULT_SSH_TIMEOUT,
    HTTP_IP_PLACEHOLDER,
    HTTP_PORT_PLACEHOLDER,
    MASK,
)


class BuildState(str, enum.Enum):
    INIT = "init"
    PROVISIONING = "provisioning"
    BOOT_INJECTING = "boot_injecting"
    INSTALLING = "installing"
    AWAITING_CHANNEL = "awaiting_channel"
    REMOTE_PROVISIONING = "remote_provisioning"
    SHUTTING_DOWN = "shutting_down"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (BuildState.DONE, BuildState.FAILED)


# Linear order of the non-terminal states; FAILED may follow any of them.
STATE_ORDER = (
    BuildState.INIT,
    BuildState.PROVISIONING,
    BuildState.BOOT_INJECTING,
    BuildState.INSTALLING,
    BuildState.AWAITING_CHANNEL,
    BuildState.REMOTE_PROVISIONING,
    BuildState.SHUTTING_DOWN,
    BuildState.FINALIZING,
    BuildState.DONE,
)


@dataclass
class HardwareSpec:
    memory_mb: int = 2048
    cpus: int = 2
    disk_size: str = "20G"
    arch: str = "x86_64"
    firmware: str = "bios"
    network: str = "default"
    disk_format: str = "qcow2"


@dataclass
class ConnectionCredentials:
    username: str
    password: Optional[str] = field(default=None, repr=False)
    private_key_file: Optional[Path] = None
    port: int = 22

    def __repr__(self) -> str:
        secret = MASK if self.password else None
        return (
            f"ConnectionCredentials(username={self.username!r}, password={secret!r}, "
            f"private_key_file={self.private_key_file!r}, port={self.port})"
        )

    __str__ = __repr__

    @property
    def secrets(self) -> Tuple[str, ...]:
        return (self.password,) if self.password else ()


@dataclass
class ProvisionerSpec:
    executable: str
    arguments: List[str] = field(default_factory=list)
    working_dir: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass(frozen=True)
class BootStep:
    """Keys to type (literal text and <special> tokens) and the pause after them."""

    keys: str
    wait: float = 0.0


@dataclass(frozen=True)
class BootSequence:
    steps: Tuple[BootStep, ...] = ()

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def resolve(self, host: str, port: int) -> "BootSequence":
        """Return a new sequence with the artifact server address substituted."""
        resolved = tuple(
            BootStep(
                keys=step.keys.replace(HTTP_IP_PLACEHOLDER, host).replace(HTTP_PORT_PLACEHOLDER, str(port)),
                wait=step.wait,
            )
            for step in self.steps
        )
        return BootSequence(resolved)

    @property
    def unresolved(self) -> bool:
        return any(
            HTTP_IP_PLACEHOLDER in step.keys or HTTP_PORT_PLACEHOLDER in step.keys for step in self.steps
        )


class ServerAddress(NamedTuple):
    host: str
    port: int


@dataclass
class BuildConfig:
    name: str
    artifact_id: str
    media: str
    http_dir: Path
    bootstrap_document: str
    credentials: ConnectionCredentials
    hardware: HardwareSpec = field(default_factory=HardwareSpec)
    media_checksum: Optional[str] = None
    boot_command: BootSequence = field(default_factory=BootSequence)
    boot_wait: float = DEFAULT_BOOT_WAIT
    boot_key_interval: float = DEFAULT_BOOT_KEY_INTERVAL
    boot_reinject_attempts: int = 0
    boot_reinject_after: Optional[float] = None
    http_bind_host: str = "0.0.0.0"
    http_advertise_host: Optional[str] = None
    ssh_timeout: float = DEFAULT_SSH_TIMEOUT
    ssh_poll_interval: float = DEFAULT_SSH_POLL_INTERVAL
    shutdown_command: Optional[str] = None
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    provisioner: Optional[ProvisionerSpec] = None
    output_dir: Path = Path("output")
    manifest_path: Optional[Path] = None
    replace: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    sensitive: Tuple[str, ...] = ()

    @property
    def bootstrap_path(self) -> Path:
        return self.http_dir / self.bootstrap_document


@dataclass
class GuestInstance:
    id: str
    name: str
    address: Optional[str] = None
    console: Any = None
    disk_path: Optional[Path] = None
    work_dir: Optional[Path] = None


@dataclass
class Artifact:
    artifact_id: str
    files: List[Path]
    checksum: str
    format: str = "qcow2"
    output_dir: Optional[Path] = None


@dataclass
class ManifestEntry:
    build_id: str
    artifact_id: str
    created_at: str
    files: List[str]
    checksum: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "build_id": self.build_id,
            "artifact_id": self.artifact_id,
            "created_at": self.created_at,
            "files": list(self.files),
            "checksum": self.checksum,
            "metadata": dict(self.metadata),
        }


@dataclass
class BuildJob:
    config: BuildConfig
    build_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: BuildState = BuildState.INIT
    history: List[BuildState] = field(default_factory=lambda: [BuildState.INIT])
    guest: Optional[GuestInstance] = None
    server_address: Optional[ServerAddress] = None
    artifact: Optional[Artifact] = None
    manifest_entry: Optional[ManifestEntry] = None
    error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return self.config.name


@dataclass
class BuildResult:
    job: BuildJob
    success: bool
    exit_code: int
    error: Optional[BaseException] = None
