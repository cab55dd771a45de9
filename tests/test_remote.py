"""Tests for goldimage.remote module."""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from goldimage.cancel import CancelToken
from goldimage.exceptions import BuildCancelled, ConfigurationError, RemoteExecutionError
from goldimage.models import ConnectionCredentials, ProvisionerSpec
from goldimage.remote import (
    RemoteExecutor,
    RemoteResult,
    build_environment,
    exec_remote_command,
    render_arguments,
)
from goldimage.watcher import ChannelNotReady

CREDS = ConnectionCredentials(username="root", password="hunter2", port=2222)


def accept(host, credentials, timeout):
    return None


def executor(**kwargs) -> RemoteExecutor:
    kwargs.setdefault("probe", accept)
    kwargs.setdefault("log_fn", MagicMock())
    return RemoteExecutor(kwargs.pop("token", CancelToken()), **kwargs)


def python_spec(code: str, **kwargs) -> ProvisionerSpec:
    return ProvisionerSpec(executable=sys.executable, arguments=["-c", code], **kwargs)


class TestRenderArguments:
    def test_placeholders(self):
        spec = ProvisionerSpec("ansible-playbook", ["-i", "{host},", "-e", "ansible_port={port}", "-u", "{user}"])
        assert render_arguments(spec, "192.0.2.10", CREDS) == [
            "-i", "192.0.2.10,", "-e", "ansible_port=2222", "-u", "root",
        ]

    def test_double_braces_are_literal(self):
        spec = ProvisionerSpec("x", ["{{ jinja }}"])
        assert render_arguments(spec, "h", CREDS) == ["{ jinja }"]

    def test_unknown_placeholder(self):
        with pytest.raises(ConfigurationError, match="unknown placeholder"):
            render_arguments(ProvisionerSpec("x", ["{password}"]), "h", CREDS)


class TestBuildEnvironment:
    def test_connection_details(self):
        env = build_environment(ProvisionerSpec("x", env={"PROFILE": "cis"}), "192.0.2.10", CREDS)
        assert env["GOLDIMAGE_HOST"] == "192.0.2.10"
        assert env["GOLDIMAGE_PORT"] == "2222"
        assert env["GOLDIMAGE_USER"] == "root"
        assert env["GOLDIMAGE_PASSWORD"] == "hunter2"
        assert env["ANSIBLE_HOST_KEY_CHECKING"] == "False"
        assert env["PROFILE"] == "cis"
        assert "GOLDIMAGE_KEY_FILE" not in env

    def test_key_file(self):
        creds = ConnectionCredentials(username="root", private_key_file=Path("/keys/id_ed25519"))
        env = build_environment(ProvisionerSpec("x"), "h", creds)
        assert env["GOLDIMAGE_KEY_FILE"] == "/keys/id_ed25519"
        assert "GOLDIMAGE_PASSWORD" not in env


class TestRemoteResult:
    def test_tail_keeps_last_lines(self):
        output = "\n".join(f"line {i}" for i in range(500))
        tail = RemoteResult(exit_code=0, output=output).tail.splitlines()
        assert len(tail) == 200
        assert tail[-1] == "line 499"


class TestWaitForChannel:
    def test_retries_with_backoff(self):
        probe = MagicMock(side_effect=[ChannelNotReady("refused"), ChannelNotReady("refused"), None])
        log_fn = MagicMock()
        ex = executor(probe=probe, backoff_base=0.01, backoff_max=0.02, log_fn=log_fn)
        ex.wait_for_channel("192.0.2.10", CREDS)
        assert probe.call_count == 3
        warnings = [c.args[1] for c in log_fn.call_args_list if c.args[0] == "WARN"]
        assert "attempt 1/5" in warnings[0]
        assert "Retrying in 0.01s" in warnings[0]
        assert "Retrying in 0.02s" in warnings[1]

    def test_gives_up(self):
        probe = MagicMock(side_effect=ChannelNotReady("refused"))
        ex = executor(probe=probe, connect_attempts=3, backoff_base=0.001)
        with pytest.raises(RemoteExecutionError, match="lost after 3 attempts"):
            ex.wait_for_channel("192.0.2.10", CREDS)
        assert probe.call_count == 3


class TestRemoteExecutor:
    def test_success_streams_output(self):
        log_fn = MagicMock()
        result = executor(log_fn=log_fn).run("192.0.2.10", CREDS, python_spec("print('PLAY RECAP ok=12')"))
        assert result.exit_code == 0
        assert result.output == "PLAY RECAP ok=12"
        logged = [c.args[1] for c in log_fn.call_args_list]
        assert "  PLAY RECAP ok=12" in logged

    def test_nonzero_exit_is_returned(self):
        spec = python_spec("import sys; print('TASK failed'); sys.exit(2)")
        result = executor().run("192.0.2.10", CREDS, spec)
        assert result.exit_code == 2
        assert "TASK failed" in result.output

    def test_output_is_masked(self):
        spec = python_spec("import os; print('pw=' + os.environ['GOLDIMAGE_PASSWORD'])")
        log_fn = MagicMock()
        result = executor(log_fn=log_fn).run("192.0.2.10", CREDS, spec)
        assert result.output == "pw=********"
        assert all("hunter2" not in c.args[1] for c in log_fn.call_args_list)

    def test_arguments_and_working_dir(self, tmp_path):
        spec = ProvisionerSpec(
            executable=sys.executable,
            arguments=["-c", "import os, sys; print(os.getcwd()); print(sys.argv[1])", "{host}"],
            working_dir=tmp_path,
        )
        result = executor().run("192.0.2.10", CREDS, spec)
        assert result.output.splitlines() == [str(tmp_path.resolve()), "192.0.2.10"]

    def test_missing_executable(self):
        spec = ProvisionerSpec(executable="/nonexistent/ansible-playbook")
        with pytest.raises(RemoteExecutionError, match="Could not start provisioner"):
            executor().run("192.0.2.10", CREDS, spec)

    def test_timeout_terminates(self):
        spec = python_spec("import time; print('started', flush=True); time.sleep(30)", timeout=0.5)
        started = time.monotonic()
        with pytest.raises(RemoteExecutionError, match="timeout") as excinfo:
            executor().run("192.0.2.10", CREDS, spec)
        assert time.monotonic() - started < 10
        assert "started" in excinfo.value.output

    def test_cancellation_terminates(self):
        token = CancelToken()
        threading.Timer(0.3, token.cancel, args=("SIGTERM",)).start()
        spec = python_spec("import time; time.sleep(30)")
        started = time.monotonic()
        with pytest.raises(BuildCancelled, match="SIGTERM"):
            executor(token=token).run("192.0.2.10", CREDS, spec)
        assert time.monotonic() - started < 10


class TestExecRemoteCommand:
    @patch("goldimage.remote.open_ssh_client")
    def test_returns_exit_status(self, mock_open):
        client = mock_open.return_value
        stdout = MagicMock()
        stdout.channel.recv_exit_status.return_value = 0
        client.exec_command.return_value = (MagicMock(), stdout, MagicMock())
        assert exec_remote_command("192.0.2.10", CREDS, "shutdown -P now") == 0
        client.exec_command.assert_called_once_with("shutdown -P now", timeout=10.0)
        client.close.assert_called_once()

    @patch("goldimage.remote.open_ssh_client")
    def test_dropped_session(self, mock_open):
        client = mock_open.return_value
        stdout = MagicMock()
        stdout.channel.recv_exit_status.side_effect = paramiko.SSHException("closed")
        client.exec_command.return_value = (MagicMock(), stdout, MagicMock())
        assert exec_remote_command("192.0.2.10", CREDS, "poweroff") is None
        client.close.assert_called_once()

    @patch("goldimage.remote.open_ssh_client")
    def test_no_status(self, mock_open):
        stdout = MagicMock()
        stdout.channel.recv_exit_status.return_value = -1
        mock_open.return_value.exec_command.return_value = (MagicMock(), stdout, MagicMock())
        assert exec_remote_command("192.0.2.10", CREDS, "poweroff") is None

    @patch("goldimage.remote.open_ssh_client", side_effect=ChannelNotReady("refused"))
    def test_unreachable(self, mock_open):
        with pytest.raises(ChannelNotReady):
            exec_remote_command("192.0.2.10", CREDS, "poweroff")
