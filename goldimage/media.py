"""Installation media resolution: local paths, cached downloads and checksums."""

from __future__ import annotations

import hashlib
import re
import tempfile
import time
from pathlib import Path
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from goldimage.cancel import CancelToken
from goldimage.constants import STATE_DIR
from goldimage.exceptions import ConfigurationError, ProvisioningError
from goldimage.utils import ensure_directory, file_sha256, log

MEDIA_CACHE_DIR = STATE_DIR / "media"
CHUNK_SIZE = 1024 * 256


def is_url(media: str) -> bool:
    return media.startswith(("http://", "https://"))


def parse_checksum(raw: Optional[str]) -> Optional[str]:
    """Accept 'sha256:<hex>' or a bare sha256 hex digest; return the lowercase digest."""
    if raw is None or raw in ("", "none"):
        return None
    value = raw.strip()
    if ":" in value:
        algo, value = value.split(":", 1)
        if algo.lower() != "sha256":
            raise ConfigurationError(f"Unsupported media checksum type '{algo}' (only sha256)")
    if not re.fullmatch(r"[0-9a-fA-F]{64}", value):
        raise ConfigurationError(f"Invalid sha256 media checksum '{raw}'")
    return value.lower()


def download_file(url: str, destination: Path, token: Optional[CancelToken] = None) -> None:
    """Download 'url' to 'destination' atomically, logging progress every few seconds."""
    log("INFO", f"Downloading media: {url}")
    req = Request(url, headers={"User-Agent": "goldimage/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ProvisioningError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ProvisioningError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()
    last_report = start_time

    with response, tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            while True:
                if token is not None:
                    token.check()
                chunk = response.read(CHUNK_SIZE)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                now = time.time()
                if now - last_report >= 5:
                    last_report = now
                    done_mb = downloaded / (1024 * 1024)
                    if total_bytes:
                        log("INFO", f"  {done_mb:.1f} MiB ({downloaded * 100 / total_bytes:.1f}%)")
                    else:
                        log("INFO", f"  {done_mb:.1f} MiB")
            tmp.flush()
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def resolve_media(media: str, checksum: Optional[str] = None, token: Optional[CancelToken] = None) -> Path:
    """
    Return a local path for the installation media, downloading URLs into the
    media cache. When a checksum is given, cached or local files are verified.
    """
    expected = parse_checksum(checksum)
    if is_url(media):
        ensure_directory(MEDIA_CACHE_DIR)
        digest = hashlib.sha256(media.encode("utf-8")).hexdigest()[:12]
        filename = Path(urlparse(media).path or "").name or "media.iso"
        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename)
        path = MEDIA_CACHE_DIR / f"{digest}-{safe_name}"
        if path.exists() and path.stat().st_size > 0:
            if expected is None or file_sha256(path) == expected:
                log("INFO", f"Using cached media: {path}")
                return path
            log("WARN", f"Cached media {path} fails checksum; downloading again")
        download_file(media, path, token)
    else:
        path = Path(media)
        if not path.is_file():
            raise ProvisioningError(f"Installation media not found: {path}")

    if expected is not None:
        actual = file_sha256(path)
        if actual != expected:
            raise ProvisioningError(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
        log("INFO", f"Media checksum verified ({expected[:12]}...)")
    return path
