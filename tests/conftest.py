"""Shared test fixtures: an in-memory guest driver and a ready-to-run build config."""

from __future__ import annotations

import pytest

from fakes import SECRET, FakeDriver, LogRecorder
from goldimage.boot import parse_boot_command
from goldimage.models import BuildConfig, ConnectionCredentials, HardwareSpec


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def log_recorder() -> LogRecorder:
    return LogRecorder()


@pytest.fixture
def build_dirs(tmp_path):
    http_dir = tmp_path / "http"
    http_dir.mkdir()
    (http_dir / "ks.cfg").write_text("text\nreboot\n")
    media = tmp_path / "install.iso"
    media.write_bytes(b"\0" * 1024)
    return {"http": http_dir, "media": media, "output": tmp_path / "output"}


@pytest.fixture
def build_config(build_dirs) -> BuildConfig:
    """A BuildConfig with every wait shrunk to keep the coordinator fast."""
    return BuildConfig(
        name="rhel9-cis",
        artifact_id="rhel9-cis-hardened",
        media=str(build_dirs["media"]),
        http_dir=build_dirs["http"],
        bootstrap_document="ks.cfg",
        credentials=ConnectionCredentials(username="root", password=SECRET),
        hardware=HardwareSpec(memory_mb=2048, cpus=2, disk_size="20G"),
        boot_command=parse_boot_command(
            ["<up><wait0.01>e<wait0.01><end> inst.ks=http://{{ .HTTPIP }}:{{ .HTTPPort }}/ks.cfg<f10>"]
        ),
        boot_wait=0,
        boot_key_interval=0,
        http_bind_host="127.0.0.1",
        ssh_timeout=2,
        ssh_poll_interval=0.05,
        shutdown_timeout=1,
        output_dir=build_dirs["output"],
        metadata={"os": "rhel9", "profile": "cis"},
    )
