"""Guest lifecycle capability used by the build coordinator."""

from __future__ import annotations

import abc
from pathlib import Path
from typing import Optional, Sequence

from goldimage.models import Artifact, BuildConfig, GuestInstance


class GuestDriver(abc.ABC):
    """
    Everything the coordinator needs from a virtualization back-end.

    A driver instance belongs to exactly one build; it may hold a connection
    to the hypervisor, released by close().
    """

    @abc.abstractmethod
    def create(self, config: BuildConfig, build_id: str, media_path: Optional[Path] = None) -> GuestInstance:
        """Define and power on a new guest booting from media_path (or config.media)."""

    @abc.abstractmethod
    def send_keys(self, guest: GuestInstance, keycodes: Sequence[int], hold_ms: int = 50) -> None:
        """Press the given Linux keycodes together on the guest console."""

    @abc.abstractmethod
    def address(self, guest: GuestInstance) -> Optional[str]:
        """Return the guest's IP address, or None while it has none."""

    def host_address(self, guest: GuestInstance) -> Optional[str]:
        """Return the host address the guest can reach us on, if the back-end knows it."""
        return None

    @abc.abstractmethod
    def is_running(self, guest: GuestInstance) -> bool:
        ...

    @abc.abstractmethod
    def shutdown(self, guest: GuestInstance) -> None:
        """Ask the guest OS to power down (ACPI)."""

    @abc.abstractmethod
    def power_off(self, guest: GuestInstance) -> None:
        """Pull the plug."""

    @abc.abstractmethod
    def convert_to_artifact(
        self, guest: GuestInstance, output_dir: Path, artifact_id: str, replace: bool = False
    ) -> Artifact:
        """Turn the stopped guest's disk into a standalone image under output_dir."""

    @abc.abstractmethod
    def destroy(self, guest: GuestInstance) -> None:
        """Stop and undefine the guest and delete its work files."""

    def close(self) -> None:
        pass
