"""Tests for goldimage.utils module."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from goldimage.exceptions import ConfigurationError
from goldimage.utils import (
    file_sha256,
    get_env,
    log,
    mask_secrets,
    mask_values,
    parse_duration,
    strip_local_prefix,
    validate_disk_size,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("30m", 1800.0),
            ("10s", 10.0),
            ("1.5h", 5400.0),
            ("250ms", 0.25),
            ("45", 45.0),
            (12, 12.0),
            (0.5, 0.5),
        ],
    )
    def test_valid(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["ten seconds", "5d", "-3s", "", True])
    def test_invalid(self, raw):
        with pytest.raises(ConfigurationError):
            parse_duration(raw, "ssh_timeout")

    def test_negative_number(self):
        with pytest.raises(ConfigurationError, match="must not be negative"):
            parse_duration(-1, "boot_wait")


class TestValidateDiskSize:
    @pytest.mark.parametrize("size", ["20G", "512M", "1T", "100"])
    def test_valid(self, size):
        assert validate_disk_size(size) == size

    @pytest.mark.parametrize("size", ["20GB", "abc", "G20", ""])
    def test_invalid(self, size):
        with pytest.raises(ConfigurationError, match="Invalid disk_size"):
            validate_disk_size(size)


class TestStripLocalPrefix:
    def test_relative_to_base(self, tmp_path):
        path = tmp_path / "output" / "rhel9.qcow2"
        assert strip_local_prefix(path, tmp_path / "output") == "rhel9.qcow2"

    def test_nested(self, tmp_path):
        path = tmp_path / "output" / "x86_64" / "rhel9.qcow2"
        assert strip_local_prefix(path, tmp_path / "output") == "x86_64/rhel9.qcow2"

    def test_outside_base_keeps_only_name(self, tmp_path):
        assert strip_local_prefix(Path("/srv/images/rhel9.qcow2"), tmp_path) == "rhel9.qcow2"


class TestMasking:
    def test_mask_secrets(self):
        assert mask_secrets("pass=hunter2 again hunter2", ["hunter2"]) == "pass=******** again ********"

    def test_empty_secrets_ignored(self):
        assert mask_secrets("nothing here", [None, ""]) == "nothing here"

    def test_mask_values_nested(self):
        data = {"a": "x hunter2", "b": ["hunter2", 3], "c": {"d": "hunter2"}}
        assert mask_values(data, ["hunter2"]) == {"a": "x ********", "b": ["********", 3], "c": {"d": "********"}}


class TestFileSha256:
    def test_matches_hashlib(self, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"golden image")
        assert file_sha256(path) == hashlib.sha256(b"golden image").hexdigest()
