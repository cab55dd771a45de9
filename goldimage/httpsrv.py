"""
Short-lived HTTP file server handing the installer its bootstrap document.

The server binds to port 0 so the kernel picks an unused port; the actual
address is only known once start() returns:

    with ArtifactServer('/srv/http', '0.0.0.0') as srv:
        host, port = srv.start()
        ...

Only GET and HEAD of regular files below the root directory are answered.
Anything else (other methods, directories, paths escaping the root, missing
files) gets a 404, so the installer cannot learn anything else about the host.
"""

from __future__ import annotations

import os
import shutil
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlsplit

from goldimage.exceptions import ProvisioningError
from goldimage.models import ServerAddress
from goldimage.utils import log


class _ArtifactRequestHandler(BaseHTTPRequestHandler):
    server_version = "goldimage"

    def _resolve(self) -> Optional[Path]:
        root = self.server.root_dir
        url_path = unquote(urlsplit(self.path).path)
        candidate = Path(os.path.realpath(root / url_path.lstrip("/")))
        if candidate != root and root not in candidate.parents:
            return None
        if not candidate.is_file():
            return None
        return candidate

    def _not_found(self) -> None:
        self.send_response(404)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _serve(self, with_body: bool) -> None:
        path = self._resolve()
        if path is None:
            self._not_found()
            return
        try:
            with open(path, "rb") as f:
                size = os.fstat(f.fileno()).st_size
                self.send_response(200)
                self.send_header("Content-Type", "application/octet-stream")
                self.send_header("Content-Length", str(size))
                self.end_headers()
                if with_body:
                    shutil.copyfileobj(f, self.wfile)
        except OSError:
            self._not_found()

    def do_GET(self):
        self._serve(with_body=True)

    def do_HEAD(self):
        self._serve(with_body=False)

    def parse_request(self) -> bool:
        if not super().parse_request():
            return False
        # any method other than GET and HEAD is answered as a missing file
        if self.command not in ("GET", "HEAD"):
            self.command = "REJECTED"
        return True

    def do_REJECTED(self):
        self._not_found()

    def log_message(self, form, *args):
        host, port = self.server.server_address[:2]
        log("DEBUG", f"http {host}:{port}: " + form % args)


class ArtifactServer:
    def __init__(self, root_dir: Path, host: str = "0.0.0.0", port: int = 0) -> None:
        self.root_dir = Path(root_dir)
        self.requested_address = (host, port)
        self.server: Optional[ThreadingHTTPServer] = None
        self.thread: Optional[threading.Thread] = None
        self.address: Optional[ServerAddress] = None

    @property
    def running(self) -> bool:
        return self.server is not None

    def start(self) -> ServerAddress:
        """
        Open the listening socket and serve requests on a background thread.

        Returns a (host, port) tuple the server is listening on.
        """
        if self.server is not None:
            raise ProvisioningError("artifact server already started")
        if not self.root_dir.is_dir():
            raise ProvisioningError(f"artifact server root is not a directory: {self.root_dir}")
        try:
            server = ThreadingHTTPServer(self.requested_address, _ArtifactRequestHandler)
        except OSError as exc:
            raise ProvisioningError(f"could not bind artifact server to {self.requested_address}: {exc}") from exc
        server.daemon_threads = True
        server.root_dir = Path(os.path.realpath(self.root_dir))

        host, port = server.server_address[:2]
        log("INFO", f"Artifact server listening on {host}:{port} (serving {self.root_dir})")

        self.thread = threading.Thread(target=server.serve_forever, name=f"artifact-server-{port}", daemon=True)
        self.thread.start()
        self.server = server
        self.address = ServerAddress(host, port)
        return self.address

    def stop(self) -> None:
        """Stop serving and close the listening socket. Safe to call repeatedly."""
        if self.server is None:
            return
        server, self.server = self.server, None
        host, port = server.server_address[:2]
        log("INFO", f"Stopping artifact server {host}:{port}")
        server.shutdown()
        if self.thread is not None:
            self.thread.join()
            self.thread = None
        server.server_close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.stop()
