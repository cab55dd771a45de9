"""Custom exceptions for goldimage builds."""

from __future__ import annotations

from typing import Optional


class BuildError(RuntimeError):
    """Base class for errors that terminate a build."""

    exit_code = 1

    def __init__(self, message: str, state: Optional[str] = None) -> None:
        super().__init__(message)
        self.state = state


class ConfigurationError(BuildError):
    """Missing or invalid inputs, detected before any resource exists."""

    exit_code = 2


class ProvisioningError(BuildError):
    """The guest or the artifact server could not be created."""

    exit_code = 3


class BootTimeoutError(BuildError):
    """The remote channel never became reachable within ssh_timeout."""

    exit_code = 4


class AuthenticationError(BuildError):
    """The remote channel answered but rejected the credentials."""

    exit_code = 5


class RemoteExecutionError(BuildError):
    """The external provisioner exited non-zero."""

    exit_code = 6

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        output: str = "",
        state: Optional[str] = None,
    ) -> None:
        super().__init__(message, state)
        self.returncode = returncode
        self.output = output


class BuildCancelled(BuildError):
    """The build was aborted by the user or a signal."""

    exit_code = 130


class TeardownError(BuildError):
    """Cleanup failed. Reported as a warning, never as the build result."""


class DriverError(ProvisioningError):
    """A hypervisor operation on an existing guest failed."""


class ManifestError(BuildError):
    """The manifest exists but is not a JSON array, or already records the build."""
