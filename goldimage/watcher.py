"""Wait for a freshly installed guest to answer on its remote command channel."""

from __future__ import annotations

import socket
import time
from typing import Callable, Optional

import paramiko

from goldimage.cancel import CancelToken
from goldimage.constants import SSH_CONNECT_TIMEOUT
from goldimage.driver import GuestDriver
from goldimage.exceptions import AuthenticationError, BootTimeoutError
from goldimage.models import ConnectionCredentials, GuestInstance
from goldimage.utils import log

# Everything that means "the guest is not there yet". Connection refused and
# no route to host are both OSError; banner and protocol errors are
# SSHException while sshd is still starting.
NOT_YET_ERRORS = (
    paramiko.ssh_exception.NoValidConnectionsError,
    socket.timeout,
    EOFError,
    OSError,
    paramiko.SSHException,
)


class ChannelNotReady(Exception):
    """The guest did not answer (yet)."""


def open_ssh_client(host: str, credentials: ConnectionCredentials, timeout: float) -> paramiko.SSHClient:
    """
    Connect to 'host' with 'credentials'.

    A new guest has no prior identity, so host key pinning is disabled: the
    client loads no known_hosts and accepts whatever key the guest presents.
    """
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            hostname=host,
            port=credentials.port,
            username=credentials.username,
            password=credentials.password,
            key_filename=str(credentials.private_key_file) if credentials.private_key_file else None,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            allow_agent=False,
            look_for_keys=False,
        )
    except paramiko.AuthenticationException as exc:
        client.close()
        raise AuthenticationError(
            f"{credentials.username}@{host}:{credentials.port} rejected the configured credentials: {exc}"
        ) from exc
    except NOT_YET_ERRORS as exc:
        client.close()
        raise ChannelNotReady(f"{host}:{credentials.port}: {exc or type(exc).__name__}") from exc
    return client


def probe_ssh(host: str, credentials: ConnectionCredentials, timeout: float) -> None:
    """Open and immediately close a session; raise ChannelNotReady or AuthenticationError."""
    client = open_ssh_client(host, credentials, timeout)
    client.close()


class InstallWatcher:
    """
    Polls until the guest has an address and its SSH channel accepts the
    credentials, bounded by wall-clock 'timeout' rather than an attempt count.
    """

    def __init__(
        self,
        driver: GuestDriver,
        credentials: ConnectionCredentials,
        token: CancelToken,
        timeout: float,
        interval: float,
        probe: Callable[[str, ConnectionCredentials, float], None] = probe_ssh,
        log_fn=log,
    ) -> None:
        self.driver = driver
        self.credentials = credentials
        self.token = token
        self.timeout = timeout
        self.interval = interval
        self.probe = probe
        self._log = log_fn
        self.attempts = 0

    def wait(
        self,
        guest: GuestInstance,
        on_address: Optional[Callable[[str], None]] = None,
        on_tick: Optional[Callable[[float, Optional[str]], None]] = None,
    ) -> str:
        """
        Return the guest address once the channel is usable.

        'on_address' is called once, when the guest first reports an address;
        'on_tick' after every unsuccessful poll with (elapsed, address).
        """
        start = time.monotonic()
        deadline = start + self.timeout
        self._log("INFO", f"Waiting up to {self.timeout:g}s for SSH on {guest.name} (poll every {self.interval:g}s)")
        announced = None
        last_reason = "guest has no address yet"
        while True:
            self.token.check()
            address = self.driver.address(guest)
            if address:
                guest.address = address
                if address != announced:
                    announced = address
                    self._log("INFO", f"Guest address: {address}")
                    if on_address is not None:
                        on_address(address)
                self.attempts += 1
                connect_timeout = max(1.0, min(SSH_CONNECT_TIMEOUT, deadline - time.monotonic()))
                try:
                    self.probe(address, self.credentials, connect_timeout)
                except ChannelNotReady as exc:
                    last_reason = str(exc)
                    self._log("DEBUG", f"SSH not ready: {last_reason}")
                else:
                    elapsed = time.monotonic() - start
                    self._log("SUCCESS", f"SSH reachable on {address} after {elapsed:.0f}s")
                    return address

            elapsed = time.monotonic() - start
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise BootTimeoutError(
                    f"SSH on {guest.name} not reachable within {self.timeout:g}s "
                    f"({self.attempts} connection attempts, last: {last_reason})"
                )
            if on_tick is not None:
                on_tick(elapsed, address)
            self.token.wait(min(self.interval, remaining))
