"""Run the external configuration program against the guest."""

from __future__ import annotations

import os
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import paramiko

from goldimage.cancel import CancelToken
from goldimage.constants import (
    OUTPUT_TAIL_LINES,
    PROCESS_KILL_GRACE,
    REMOTE_BACKOFF_BASE,
    REMOTE_BACKOFF_MAX,
    REMOTE_CONNECT_ATTEMPTS,
    SSH_CONNECT_TIMEOUT,
)
from goldimage.exceptions import BuildCancelled, ConfigurationError, RemoteExecutionError
from goldimage.models import ConnectionCredentials, ProvisionerSpec
from goldimage.utils import log, mask_secrets
from goldimage.watcher import ChannelNotReady, open_ssh_client, probe_ssh

SSH_ARGS = "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"


@dataclass
class RemoteResult:
    exit_code: int
    output: str
    duration: float = 0.0

    @property
    def tail(self) -> str:
        return "\n".join(self.output.splitlines()[-OUTPUT_TAIL_LINES:])


def render_arguments(spec: ProvisionerSpec, host: str, credentials: ConnectionCredentials) -> List[str]:
    """Substitute {host}, {port}, {user} and {key_file} in the provisioner arguments."""
    values = {
        "host": host,
        "port": str(credentials.port),
        "user": credentials.username,
        "key_file": str(credentials.private_key_file or ""),
    }
    rendered = []
    for arg in spec.arguments:
        try:
            rendered.append(arg.format(**values))
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigurationError(
                f"Provisioner argument {arg!r} has an unknown placeholder ({exc}); "
                "use {host}, {port}, {user} or {key_file} and double other braces"
            ) from exc
    return rendered


def build_environment(spec: ProvisionerSpec, host: str, credentials: ConnectionCredentials) -> Dict[str, str]:
    env = dict(os.environ)
    env.update(spec.env)
    env.update(
        {
            "GOLDIMAGE_HOST": host,
            "GOLDIMAGE_PORT": str(credentials.port),
            "GOLDIMAGE_USER": credentials.username,
            "GOLDIMAGE_SSH_ARGS": SSH_ARGS,
            # the guest key changes on every build
            "ANSIBLE_HOST_KEY_CHECKING": "False",
        }
    )
    if credentials.private_key_file:
        env["GOLDIMAGE_KEY_FILE"] = str(credentials.private_key_file)
    if credentials.password:
        env["GOLDIMAGE_PASSWORD"] = credentials.password
    return env


class RemoteExecutor:
    """
    Connection retry plus process supervision for the external provisioner.

    Output is streamed line by line to the log and kept for diagnostics; it
    is never interpreted, only the exit status matters.
    """

    def __init__(
        self,
        token: CancelToken,
        connect_attempts: int = REMOTE_CONNECT_ATTEMPTS,
        backoff_base: float = REMOTE_BACKOFF_BASE,
        backoff_max: float = REMOTE_BACKOFF_MAX,
        probe: Callable[[str, ConnectionCredentials, float], None] = probe_ssh,
        log_fn=log,
    ) -> None:
        self.token = token
        self.connect_attempts = connect_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.probe = probe
        self._log = log_fn

    def wait_for_channel(self, host: str, credentials: ConnectionCredentials) -> None:
        """Re-check the channel with exponential backoff; a fresh boot may still renumber or restart sshd."""
        delay = self.backoff_base
        for attempt in range(1, self.connect_attempts + 1):
            self.token.check()
            try:
                self.probe(host, credentials, SSH_CONNECT_TIMEOUT)
                return
            except ChannelNotReady as exc:
                if attempt == self.connect_attempts:
                    raise RemoteExecutionError(
                        f"Remote channel to {host} lost after {attempt} attempts: {exc}"
                    ) from exc
                self._log("WARN", f"SSH connection attempt {attempt}/{self.connect_attempts} failed: {exc}. "
                                  f"Retrying in {delay:g}s...")
                self.token.wait(delay)
                delay = min(delay * 2, self.backoff_max)

    def run(self, host: str, credentials: ConnectionCredentials, spec: ProvisionerSpec) -> RemoteResult:
        self.wait_for_channel(host, credentials)
        cmd = [spec.executable, *render_arguments(spec, host, credentials)]
        env = build_environment(spec, host, credentials)
        secrets = credentials.secrets
        self._log("INFO", f"Running provisioner: {mask_secrets(' '.join(cmd), secrets)}")

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=str(spec.working_dir) if spec.working_dir else None,
                env=env,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise RemoteExecutionError(f"Could not start provisioner {spec.executable}: {exc}") from exc

        supervisor = _ProcessSupervisor(proc, self.token, spec.timeout)
        supervisor.start()
        lines: List[str] = []
        try:
            for raw_line in proc.stdout:
                line = mask_secrets(raw_line.rstrip("\n"), secrets)
                lines.append(line)
                self._log("INFO", f"  {line}")
            returncode = proc.wait()
        finally:
            supervisor.stop()
            if proc.poll() is None:
                _terminate(proc)
            proc.stdout.close()

        duration = time.monotonic() - start
        output = "\n".join(lines)
        if supervisor.cancelled:
            raise BuildCancelled(f"provisioner terminated: {self.token.reason or 'cancelled'}")
        if supervisor.timed_out:
            raise RemoteExecutionError(
                f"Provisioner exceeded its {spec.timeout:g}s timeout and was terminated",
                returncode=returncode,
                output=output,
            )
        self._log("INFO", f"Provisioner exited with status {returncode} after {duration:.0f}s")
        return RemoteResult(exit_code=returncode, output=output, duration=duration)


def _terminate(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=PROCESS_KILL_GRACE)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


class _ProcessSupervisor(threading.Thread):
    """Terminates the process when the build is cancelled or its timeout passes."""

    def __init__(self, proc: subprocess.Popen, token: CancelToken, timeout: Optional[float]) -> None:
        super().__init__(name=f"provisioner-supervisor-{proc.pid}", daemon=True)
        self.proc = proc
        self.token = token
        self.deadline = time.monotonic() + timeout if timeout else None
        self.cancelled = False
        self.timed_out = False
        self._done = threading.Event()

    def run(self) -> None:
        while not self._done.wait(0.2):
            if self.proc.poll() is not None:
                return
            if self.token.cancelled:
                self.cancelled = True
            elif self.deadline is not None and time.monotonic() >= self.deadline:
                self.timed_out = True
            else:
                continue
            _terminate(self.proc)
            return

    def stop(self) -> None:
        self._done.set()
        self.join()


def exec_remote_command(
    host: str, credentials: ConnectionCredentials, command: str, timeout: float = SSH_CONNECT_TIMEOUT
) -> Optional[int]:
    """
    Run a single command on the guest over SSH and return its exit status.

    Returns None when the session closed before reporting a status, which is
    what a successful 'shutdown -P now' usually looks like.
    """
    client = open_ssh_client(host, credentials, timeout)
    try:
        _, stdout, _ = client.exec_command(command, timeout=timeout)
        try:
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, EOFError, OSError):
            return None
        return status if status >= 0 else None
    finally:
        client.close()
