"""Artifact finalization and the append-only build manifest."""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from goldimage.driver import GuestDriver
from goldimage.exceptions import DriverError, ManifestError
from goldimage.constants import SUPPORTED_DISK_FORMATS
from goldimage.models import Artifact, GuestInstance, ManifestEntry
from goldimage.utils import ensure_directory, log, strip_local_prefix


def existing_artifacts(output_dir: Path, artifact_id: str) -> List[Path]:
    output_dir = Path(output_dir)
    if not output_dir.is_dir():
        return []
    candidates = (output_dir / f"{artifact_id}.{fmt}" for fmt in SUPPORTED_DISK_FORMATS)
    return sorted(p for p in candidates if p.is_file())


class Finalizer:
    def __init__(self, driver: GuestDriver, output_dir: Path, replace: bool = False, log_fn=log) -> None:
        self.driver = driver
        self.output_dir = Path(output_dir)
        self.replace = replace
        self._log = log_fn

    def check_target(self, artifact_id: str) -> None:
        """Refuse to overwrite an earlier artifact of the same identity unless replacing."""
        found = existing_artifacts(self.output_dir, artifact_id)
        if found and not self.replace:
            names = ", ".join(p.name for p in found)
            raise DriverError(f"Artifact '{artifact_id}' already exists in {self.output_dir} ({names}); "
                              "enable replace to overwrite it")

    def finalize(self, guest: GuestInstance, artifact_id: str) -> Artifact:
        self.check_target(artifact_id)
        artifact = self.driver.convert_to_artifact(guest, self.output_dir, artifact_id, replace=self.replace)
        if artifact.output_dir is None:
            artifact.output_dir = self.output_dir
        self._log("SUCCESS", f"Artifact {artifact.artifact_id}: {', '.join(str(f) for f in artifact.files)}")
        return artifact


class Manifest:
    """
    JSON array of build records, shared by concurrent builds.

    Appends hold an exclusive flock on a sidecar lock file, then write the
    whole array to a temporary file that is renamed over the manifest, so a
    crash mid-write leaves the previous content intact.
    """

    def __init__(self, path: Path, log_fn=log) -> None:
        self.path = Path(path)
        self._log = log_fn
        self.lock_path = self.path.with_name(f".{self.path.name}.lock")

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        ensure_directory(self.path.parent)
        with open(self.lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        text = self.path.read_text()
        if not text.strip():
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ManifestError(f"Manifest {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, list):
            raise ManifestError(f"Manifest {self.path} must contain a JSON array")
        return data

    def append(
        self,
        artifact: Artifact,
        build_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ManifestEntry:
        base = artifact.output_dir or self.path.parent
        entry = ManifestEntry(
            build_id=build_id,
            artifact_id=artifact.artifact_id,
            created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            files=[strip_local_prefix(f, base) for f in artifact.files],
            checksum=artifact.checksum,
            metadata=dict(metadata or {}),
        )
        with self._locked():
            records = self.read()
            if any(r.get("build_id") == build_id for r in records):
                raise ManifestError(f"Manifest {self.path} already records build {build_id}")
            records.append(entry.to_dict())
            self._write(records)
        self._log("INFO", f"Manifest {self.path} updated ({len(records)} entries)")
        return entry

    def _write(self, records: List[Dict[str, Any]]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(records, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
