"""
Build coordinator: drives one build through its states and always cleans up.

    init -> provisioning -> boot_injecting -> installing -> awaiting_channel
         -> remote_provisioning -> shutting_down -> finalizing -> done

Any state may end in 'failed'. Teardown is not a state; every resource is
registered with a TeardownManager the moment it exists, and the manager runs
once before the job reaches 'done' or 'failed'.
"""

from __future__ import annotations

import copy
import os
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from goldimage.boot import BootInjector
from goldimage.cancel import CancelToken
from goldimage.constants import DEFAULT_MANIFEST_NAME, SHUTDOWN_POLL_INTERVAL
from goldimage.driver import GuestDriver
from goldimage.exceptions import (
    BuildCancelled,
    BuildError,
    ConfigurationError,
    DriverError,
    ProvisioningError,
    RemoteExecutionError,
)
from goldimage.finalize import Finalizer, Manifest, existing_artifacts
from goldimage.httpsrv import ArtifactServer
from goldimage.media import is_url, parse_checksum, resolve_media
from goldimage.models import (
    STATE_ORDER,
    BootSequence,
    BuildConfig,
    BuildJob,
    BuildResult,
    BuildState,
    GuestInstance,
)
from goldimage.remote import RemoteExecutor, exec_remote_command
from goldimage.teardown import TeardownManager
from goldimage.utils import log, mask_secrets, mask_values
from goldimage.watcher import ChannelNotReady, InstallWatcher, probe_ssh

_WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


def preflight(config: BuildConfig) -> None:
    """Checks that need no resources; raise ConfigurationError on the first problem."""
    if not config.http_dir.is_dir():
        raise ConfigurationError(f"HTTP directory not found: {config.http_dir}")
    if not config.bootstrap_path.is_file():
        raise ConfigurationError(f"Bootstrap document not found: {config.bootstrap_path}")
    if not config.media:
        raise ConfigurationError("No installation media configured")
    parse_checksum(config.media_checksum)
    if not is_url(config.media) and not Path(config.media).is_file():
        raise ConfigurationError(f"Installation media not found: {config.media}")

    creds = config.credentials
    if not creds.username:
        raise ConfigurationError("SSH username is required")
    if not creds.password and not creds.private_key_file:
        raise ConfigurationError("SSH password or private key is required")
    if creds.private_key_file and not Path(creds.private_key_file).is_file():
        raise ConfigurationError(f"SSH private key not found: {creds.private_key_file}")

    spec = config.provisioner
    if spec is not None:
        if spec.working_dir is not None and not Path(spec.working_dir).is_dir():
            raise ConfigurationError(f"Provisioner working directory not found: {spec.working_dir}")
        executable = spec.executable
        # a relative path runs from the working directory, bare names come from PATH
        if os.sep in executable and spec.working_dir is not None and not Path(executable).is_absolute():
            executable = str(Path(spec.working_dir) / executable)
        if shutil.which(executable) is None:
            raise ConfigurationError(f"Provisioner executable not found: {spec.executable}")

    existing = existing_artifacts(config.output_dir, config.artifact_id)
    if existing and not config.replace:
        raise ConfigurationError(
            f"Artifact '{config.artifact_id}' already exists ({existing[0]}); use --force to replace it"
        )


class BuildCoordinator:
    """
    Runs a single BuildConfig to a terminal BuildResult.

    'driver_factory' is called once, after validation, so a build that fails
    in init never opens a hypervisor connection.
    """

    def __init__(
        self,
        config: BuildConfig,
        driver_factory: Callable[[], GuestDriver],
        token: Optional[CancelToken] = None,
        probe=probe_ssh,
        remote_command=exec_remote_command,
        media_resolver=resolve_media,
        server_factory=ArtifactServer,
        log_fn=log,
    ) -> None:
        # builds never share credentials or any other mutable config
        self.config = copy.deepcopy(config)
        self.job = BuildJob(config=self.config)
        self.driver_factory = driver_factory
        self.token = token or CancelToken()
        self.probe = probe
        self.remote_command = remote_command
        self.media_resolver = media_resolver
        self.server_factory = server_factory
        self._log_fn = log_fn
        self._secrets = tuple(self.config.credentials.secrets) + tuple(self.config.sensitive)
        self.teardown = TeardownManager(log_fn=self._log)
        self.driver: Optional[GuestDriver] = None
        self.server: Optional[ArtifactServer] = None
        self.injector: Optional[BootInjector] = None
        self._sequence = BootSequence()
        self._last_injection = 0.0
        self._watch_deadline = 0.0
        # set by run_builds when an earlier build in the batch owns the same artifact
        self.conflict: Optional[str] = None

    def _log(self, level: str, message: str) -> None:
        message = mask_secrets(message, self._secrets)
        self._log_fn(level, f"{self.job.name}/{self.job.state.value}: {message}")

    def _transition(self, state: BuildState) -> None:
        current = self.job.state
        if current.terminal or (
            state is not BuildState.FAILED and STATE_ORDER.index(state) <= STATE_ORDER.index(current)
        ):
            raise RuntimeError(f"invalid transition {current.value} -> {state.value}")
        self._log("INFO", f"-> {state.value}")
        self.job.state = state
        self.job.history.append(state)

    def run(self) -> BuildResult:
        job = self.job
        self._log("INFO", f"Starting build {job.build_id} (artifact {self.config.artifact_id})")
        started = time.monotonic()
        try:
            try:
                self._validate()
                self._provision()
                self._inject_boot_command()
                address = self._await_channel()
                self._remote_provision(address)
                self._shut_down(address)
                self._finalize()
            finally:
                self.teardown.run()
        except BuildError as exc:
            return self._fail(exc)
        except Exception as exc:
            wrapped = BuildError(f"unexpected {type(exc).__name__}: {exc}", state=job.state.value)
            wrapped.__cause__ = exc
            return self._fail(wrapped)

        self._transition(BuildState.DONE)
        elapsed = time.monotonic() - started
        self._log("SUCCESS", f"Build finished in {elapsed:.0f}s: {job.artifact.artifact_id}")
        return BuildResult(job=job, success=True, exit_code=0)

    def _fail(self, exc: BuildError) -> BuildResult:
        if exc.state is None:
            exc.state = self.job.state.value
        self.job.error = exc
        for warning in self.teardown.errors:
            self._log("WARN", f"cleanup problem (build error takes precedence): {warning}")
        self._transition(BuildState.FAILED)
        self._log("ERROR", f"Build failed in {exc.state}: {exc}")
        return BuildResult(job=self.job, success=False, exit_code=exc.exit_code, error=exc)

    # init

    def _validate(self) -> None:
        self.token.check()
        if self.conflict:
            raise ConfigurationError(self.conflict)
        preflight(self.config)
        self._log("INFO", "Configuration validated")

    # provisioning

    def _provision(self) -> None:
        self._transition(BuildState.PROVISIONING)
        config = self.config

        server = self.server_factory(config.http_dir, config.http_bind_host)
        self.job.server_address = server.start()
        self.server = server
        self.teardown.register("stop artifact server", server.stop)

        media_path = self.media_resolver(config.media, config.media_checksum, self.token)

        driver = self.driver_factory()
        self.driver = driver
        self.teardown.register("close hypervisor connection", driver.close)
        try:
            guest = driver.create(config, self.job.build_id, media_path)
        except BuildError:
            raise
        except Exception as exc:
            raise ProvisioningError(f"Guest creation failed: {exc}") from exc
        self.job.guest = guest
        self.teardown.register(f"destroy guest {guest.name}", lambda: self._destroy_guest(guest))
        self._log("SUCCESS", f"Guest {guest.name} created")

    def _destroy_guest(self, guest: GuestInstance) -> None:
        self.driver.destroy(guest)
        self.job.guest = None

    # boot_injecting

    def _advertise_host(self, guest: GuestInstance) -> str:
        config = self.config
        if config.http_advertise_host:
            return config.http_advertise_host
        if config.http_bind_host not in _WILDCARD_HOSTS:
            return config.http_bind_host
        host = self.driver.host_address(guest)
        if not host:
            raise ProvisioningError(
                "Cannot determine the address the guest should use for the artifact server; "
                "set http_advertise_host"
            )
        return host

    def _inject_boot_command(self) -> None:
        self._transition(BuildState.BOOT_INJECTING)
        config = self.config
        guest = self.job.guest
        if config.boot_wait:
            self._log("INFO", f"Waiting {config.boot_wait:g}s for the guest to boot")
            self.token.wait(config.boot_wait)

        host = self._advertise_host(guest)
        port = self.job.server_address.port
        self._sequence = config.boot_command.resolve(host, port)
        self._log("INFO", f"Bootstrap document at http://{host}:{port}/{config.bootstrap_document}")
        self.injector = BootInjector(self.driver, self.token, config.boot_key_interval, log_fn=self._log)
        if len(self._sequence):
            self.injector.inject(guest, self._sequence)
        else:
            self._log("INFO", "No boot command configured")
        self._last_injection = time.monotonic()

    # installing / awaiting_channel

    def _await_channel(self) -> str:
        self._transition(BuildState.INSTALLING)
        config = self.config
        watcher = InstallWatcher(
            self.driver,
            config.credentials,
            self.token,
            timeout=config.ssh_timeout,
            interval=config.ssh_poll_interval,
            probe=self.probe,
            log_fn=self._log,
        )

        def on_address(address: str) -> None:
            if self.job.state == BuildState.INSTALLING:
                self._transition(BuildState.AWAITING_CHANNEL)

        self._watch_deadline = time.monotonic() + config.ssh_timeout
        address = watcher.wait(self.job.guest, on_address=on_address, on_tick=self._maybe_reinject)
        self.server.stop()
        return address

    def _maybe_reinject(self, elapsed: float, address: Optional[str]) -> None:
        config = self.config
        if address or not config.boot_reinject_after or not len(self._sequence):
            return
        if self.injector.injections > config.boot_reinject_attempts:
            return
        if time.monotonic() - self._last_injection < config.boot_reinject_after:
            return
        needed = self.injector.duration(self._sequence)
        if needed >= self._watch_deadline - time.monotonic():
            self._log("DEBUG", f"Not re-sending boot command: it needs {needed:g}s, more than the time left to wait")
            return
        self._log(
            "WARN",
            f"No guest address {elapsed:.0f}s after boot; re-sending boot command "
            f"({self.injector.injections}/{config.boot_reinject_attempts})",
        )
        self.injector.inject(self.job.guest, self._sequence, reinject=True)
        self._last_injection = time.monotonic()

    # remote_provisioning

    def _remote_provision(self, address: str) -> None:
        self._transition(BuildState.REMOTE_PROVISIONING)
        spec = self.config.provisioner
        if spec is None:
            self._log("INFO", "No provisioner configured")
            return
        executor = RemoteExecutor(self.token, probe=self.probe, log_fn=self._log)
        result = executor.run(address, self.config.credentials, spec)
        if result.exit_code != 0:
            error = RemoteExecutionError(
                f"Provisioner {spec.executable} exited with status {result.exit_code}",
                returncode=result.exit_code,
                output=result.tail,
                state=self.job.state.value,
            )
            self._quiesce()
            raise error

    def _quiesce(self) -> None:
        """Best-effort ACPI shutdown of a failed guest before teardown destroys it."""
        guest = self.job.guest
        try:
            self.driver.shutdown(guest)
            self._wait_stopped(guest)
        except BuildCancelled:
            raise
        except Exception as exc:
            self._log("WARN", f"Graceful shutdown after failure did not complete: {exc}")

    # shutting_down

    def _shut_down(self, address: str) -> None:
        self._transition(BuildState.SHUTTING_DOWN)
        config = self.config
        guest = self.job.guest
        requested = False
        if config.shutdown_command:
            self._log("INFO", f"Running shutdown command: {config.shutdown_command}")
            try:
                status = self.remote_command(address, config.credentials, config.shutdown_command)
            except ChannelNotReady as exc:
                self._log("WARN", f"Shutdown command could not connect ({exc}); using ACPI shutdown")
            else:
                requested = True
                if status:
                    self._log("WARN", f"Shutdown command exited with status {status}")
        if not requested:
            self._log("INFO", "Requesting ACPI shutdown")
            try:
                self.driver.shutdown(guest)
            except DriverError as exc:
                self._log("WARN", f"ACPI shutdown rejected ({exc}); forcing power off")
                self.driver.power_off(guest)
                return

        if not self._wait_stopped(guest):
            self._log("WARN", f"Guest still running after {config.shutdown_timeout:g}s; forcing power off")
            self.driver.power_off(guest)

    def _wait_stopped(self, guest: GuestInstance) -> bool:
        deadline = time.monotonic() + self.config.shutdown_timeout
        while self.driver.is_running(guest):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.token.wait(min(SHUTDOWN_POLL_INTERVAL, remaining))
        self._log("INFO", f"Guest {guest.name} stopped")
        return True

    # finalizing

    def _finalize(self) -> None:
        self._transition(BuildState.FINALIZING)
        config = self.config
        finalizer = Finalizer(self.driver, config.output_dir, replace=config.replace, log_fn=self._log)
        artifact = finalizer.finalize(self.job.guest, config.artifact_id)
        self.job.artifact = artifact

        manifest = Manifest(config.manifest_path or config.output_dir / DEFAULT_MANIFEST_NAME, log_fn=self._log)
        self.job.manifest_entry = manifest.append(artifact, self.job.build_id, self._manifest_metadata())
        self._log("SUCCESS", f"Recorded {artifact.artifact_id} in {manifest.path}")

    def _manifest_metadata(self) -> Dict[str, Any]:
        hardware = self.config.hardware
        metadata: Dict[str, Any] = {
            "build_name": self.config.name,
            "arch": hardware.arch,
            "firmware": hardware.firmware,
            "format": hardware.disk_format,
        }
        metadata.update(self.config.metadata)
        return mask_values(metadata, self._secrets)


def run_builds(
    configs: Sequence[BuildConfig],
    driver_factory: Callable[[], GuestDriver],
    parallel: int = 1,
    token: Optional[CancelToken] = None,
    **coordinator_kwargs,
) -> List[BuildResult]:
    """Run every build, at most 'parallel' at a time; results keep the input order."""
    token = token or CancelToken()
    coordinators = [
        BuildCoordinator(config, driver_factory, token=token.child(), **coordinator_kwargs) for config in configs
    ]
    owners: Dict[Tuple[Path, str], str] = {}
    for coordinator in coordinators:
        config = coordinator.config
        key = (Path(config.output_dir).resolve(), config.artifact_id)
        if key in owners:
            coordinator.conflict = (
                f"Artifact '{config.artifact_id}' in {config.output_dir} is already produced by build '{owners[key]}'"
            )
        else:
            owners[key] = config.name
    if parallel <= 1 or len(coordinators) == 1:
        return [c.run() for c in coordinators]
    with ThreadPoolExecutor(max_workers=parallel, thread_name_prefix="build") as pool:
        futures = [pool.submit(c.run) for c in coordinators]
        return [f.result() for f in futures]
