"""
Sync API server -- the receiving side of the peer protocol.

Downstream nodes authenticate with HTTP basic auth using the client
application credentials configured on this node. Each client carries its
own allowed outbreak IDs, which bound everything it may push or pull.

Endpoints:
    GET  /sync/available-outbreaks
    POST /sync/import-database-snapshot?asynchronous=true&autoEncrypt=true
    GET  /sync/database-snapshot?filter=<json>
    GET  /sync-logs/<id>
    GET  /system-settings/version
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import signal
import threading
import uuid
from concurrent.futures import Future
from functools import partial
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import parse_qs, urlparse

from . import __version__
from .config import ClientApplication, NodeConfig, load_config, resolve_home
from .crypto import peer_passphrase
from .errors import ArchiveError, NoDataError, WorkerError, render_error
from .ledger import JobLedger
from .models import JobStatus, SyncDirection, SyncJob
from .sync.orchestrator import PeerSyncOrchestrator
from .sync.worker import WorkerReply, WorkerRunner

logger = logging.getLogger("casesync.server")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
SCHEMA_VERSION = "1"
UPLOAD_CHUNK_SIZE = 1 << 20

# Worker error types mapped to HTTP status codes.
ERROR_STATUS = {
    "AccessDeniedError": 403,
    "ConfigError": 400,
    "FilterError": 400,
    "ValidationError": 400,
}


def _flag(params: dict, name: str, default: bool) -> bool:
    values = params.get(name)
    if not values:
        return default
    return values[0].lower() in ("1", "true", "yes")


def save_upload(
    stream: BinaryIO,
    length: int,
    target: Path,
    chunk_size: int = UPLOAD_CHUNK_SIZE,
) -> None:
    """Copy a request body of ``length`` bytes to ``target`` in chunks.

    Raises:
        ArchiveError: The body ended early. The partial file is removed.
    """
    remaining = length
    try:
        with open(target, "wb") as fh:
            while remaining > 0:
                chunk = stream.read(min(chunk_size, remaining))
                if not chunk:
                    raise ArchiveError(
                        f"Upload ended after {length - remaining} of {length} bytes"
                    )
                fh.write(chunk)
                remaining -= len(chunk)
    except Exception:
        target.unlink(missing_ok=True)
        raise


class SyncServer:
    """HTTP API for downstream nodes.

    Args:
        home: Node home directory.
        config: Node configuration. Loaded from ``home`` if omitted.
        host: Bind address.
        port: Bind port (0 picks a free one).
        runner: Worker runner for imports and exports.
        orchestrator: Starts syncs with upstream servers configured to
            sync on every change once an import lands.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        config: Optional[NodeConfig] = None,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        runner: Optional[WorkerRunner] = None,
        orchestrator: Optional[PeerSyncOrchestrator] = None,
    ):
        self.home = resolve_home(home)
        self.config = config or load_config(self.home)
        self.ledger = JobLedger(self.home)
        self.runner = runner or WorkerRunner(mode=self.config.sync.worker_mode)
        self.orchestrator = orchestrator or PeerSyncOrchestrator(
            self.home, config=self.config, ledger=self.ledger, runner=self.runner,
        )
        self.host = host
        self.port = port
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def inbound_dir(self) -> Path:
        return self.home / "sync" / "inbound"

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None:
            return self.host, self.port
        return self._server.server_address[0], self._server.server_address[1]

    def start(self) -> None:
        """Bind and serve on a background thread."""
        self._server = ThreadingHTTPServer((self.host, self.port), self._make_handler())
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="casesync-api", daemon=True,
        )
        self._thread.start()
        host, port = self.address
        logger.info("Sync API listening on http://%s:%d", host, port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
        self.runner.shutdown(wait=False)
        logger.info("Sync API stopped")

    def run_forever(self) -> None:
        """Serve until SIGINT/SIGTERM."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, lambda signum, frame: self._stop_event.set())
        self.start()
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        finally:
            self.stop()

    # -------------------------------------------------------------------
    # Operations behind the endpoints
    # -------------------------------------------------------------------

    def authenticate(self, header: Optional[str]) -> Optional[ClientApplication]:
        if not header or not header.startswith("Basic "):
            return None
        try:
            decoded = base64.b64decode(header[6:]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        client_id, _, client_secret = decoded.partition(":")
        return self.config.find_client(client_id, client_secret)

    def receive_snapshot(
        self,
        client: ClientApplication,
        stream: BinaryIO,
        length: int,
        asynchronous: bool,
        auto_encrypt: bool,
    ) -> SyncJob:
        """Store an uploaded archive and import it on the worker pool.

        Raises:
            ArchiveError: The upload was cut short.
        """
        self.inbound_dir.mkdir(parents=True, exist_ok=True)
        archive = self.inbound_dir / f"{uuid.uuid4().hex}.zip"
        save_upload(stream, length, archive)

        job = self.ledger.create_sync_job(
            SyncJob(
                direction=SyncDirection.INBOUND,
                peer_name=client.name,
                outbreak_ids=list(client.outbreak_ids),
            )
        )
        logger.info("Sync %s: Received snapshot from '%s'", job.id, client.name)

        kwargs = dict(
            home=str(self.home),
            archive_path=str(archive),
            outbreak_ids=list(client.outbreak_ids),
            password=peer_passphrase(client.credentials) if auto_encrypt else None,
            attachments_root=str(self.config.attachments_root(self.home)),
            decrypt_workers=self.config.sync.decrypt_workers,
            keep_files=self.config.sync.debug,
            remove_archive=not self.config.sync.debug,
            job_id=job.id,
        )
        if asynchronous:
            self.runner.submit("import", **kwargs).add_done_callback(
                partial(self._import_finished, job.id)
            )
            return job
        try:
            result = self.runner.call("import", **kwargs)
        except WorkerError as exc:
            self._fail_open_job(job.id, render_error(exc))
            raise
        if result.get("status") != JobStatus.FAILED.value:
            self.orchestrator.notify_change()
        return self.ledger.get_sync_job(job.id) or job

    def _import_finished(self, job_id: str, future: "Future[WorkerReply]") -> None:
        try:
            reply = future.result()
        except Exception as exc:
            logger.error("Sync %s: Import failed: %s", job_id, render_error(exc))
            self._fail_open_job(job_id, render_error(exc))
            return
        if not reply.ok:
            self._fail_open_job(job_id, reply.error or "Import failed")
            return
        if reply.result.get("status") == JobStatus.FAILED.value:
            return
        try:
            self.orchestrator.notify_change()
        except Exception as exc:
            logger.error("Sync %s: Couldn't start syncs after import: %s", job_id, render_error(exc))

    def _fail_open_job(self, job_id: str, error: str) -> None:
        """Mark an inbound job failed unless the import already closed it."""
        job = self.ledger.get_sync_job(job_id)
        if job is not None and not job.status.is_terminal:
            self.ledger.finish_sync_job(job_id, JobStatus.FAILED, error=error)

    def export_for_client(self, client: ClientApplication, query: dict) -> Path:
        """Export a snapshot bounded by the client's outbreaks.

        Raises:
            WorkerError: Export failed, access was denied or nothing matched.
        """
        raw = (query.get("filter") or ["{}"])[0]
        try:
            request = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise WorkerError(f"Invalid filter: {exc}", "ValidationError") from exc
        if not isinstance(request, dict):
            raise WorkerError("Filter must be an object", "ValidationError")

        password = (query.get("encryptPassword") or [None])[0]
        if _flag(query, "autoEncrypt", False):
            password = peer_passphrase(client.credentials)

        settings = self.config.sync
        reply = self.runner.call(
            "snapshot",
            home=str(self.home),
            scope={"outbreak_ids": list(client.outbreak_ids)},
            request=request,
            options={
                "chunk_size": settings.chunk_size,
                "password": password,
                "attachments_dir": str(self.config.attachments_root(self.home)),
                "file_workers": settings.file_workers,
                "node_name": self.config.node_name,
                "output_dir": str(self.home / "sync" / "outbound"),
            },
        )
        return Path(reply["result"]["archive_path"])

    # -------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        server = self

        class SyncHandler(BaseHTTPRequestHandler):
            """HTTP handler for the sync API."""

            def do_GET(self):
                client = self._client()
                if client is None:
                    return
                url = urlparse(self.path)
                path = url.path.rstrip("/")
                if path == "/sync/available-outbreaks":
                    self._json_response({"outbreakIDs": list(client.outbreak_ids)})
                elif path == "/system-settings/version":
                    self._json_response({
                        "version": __version__,
                        "node": server.config.node_name,
                        "schemaVersion": SCHEMA_VERSION,
                    })
                elif path.startswith("/sync-logs/"):
                    job = server.ledger.get_sync_job(path.rsplit("/", 1)[1])
                    if job is None:
                        self._json_response({"error": "Sync log not found"}, status=404)
                    else:
                        self._json_response(job.model_dump(mode="json"))
                elif path == "/sync/database-snapshot":
                    self._send_snapshot(client, parse_qs(url.query))
                else:
                    self._json_response({"error": f"Unknown endpoint {path}"}, status=404)

            def do_POST(self):
                client = self._client()
                if client is None:
                    return
                url = urlparse(self.path)
                if url.path.rstrip("/") != "/sync/import-database-snapshot":
                    self._json_response({"error": f"Unknown endpoint {url.path}"}, status=404)
                    return

                params = parse_qs(url.query)
                length = int(self.headers.get("Content-Length") or 0)
                if length <= 0:
                    self._json_response({"error": "Snapshot body is empty"}, status=400)
                    return
                try:
                    job = server.receive_snapshot(
                        client,
                        self.rfile,
                        length,
                        asynchronous=_flag(params, "asynchronous", True),
                        auto_encrypt=_flag(params, "autoEncrypt", False),
                    )
                except ArchiveError as exc:
                    self._json_response({"error": str(exc)}, status=400)
                    return
                except WorkerError as exc:
                    self._json_response({"error": str(exc)}, status=500)
                    return
                if job.status == JobStatus.FAILED:
                    self._json_response(
                        {"error": job.error, "syncLogId": job.id}, status=500,
                    )
                    return
                self._json_response({"syncLogId": job.id})

            def _send_snapshot(self, client: ClientApplication, query: dict):
                try:
                    archive = server.export_for_client(client, query)
                except NoDataError as exc:
                    self._json_response({"error": str(exc)}, status=404)
                    return
                except WorkerError as exc:
                    status = ERROR_STATUS.get(exc.error_type, 500)
                    self._json_response({"error": str(exc)}, status=status)
                    return
                try:
                    data = archive.read_bytes()
                    self.send_response(200)
                    self.send_header("Content-Type", "application/zip")
                    self.send_header(
                        "Content-Disposition", f'attachment; filename="{archive.name}"',
                    )
                    self.send_header("Content-Length", str(len(data)))
                    self.end_headers()
                    self.wfile.write(data)
                finally:
                    archive.unlink(missing_ok=True)

            def _client(self) -> Optional[ClientApplication]:
                client = server.authenticate(self.headers.get("Authorization"))
                if client is None:
                    self.send_response(401)
                    self.send_header("WWW-Authenticate", 'Basic realm="casesync"')
                    self.send_header("Content-Type", "application/json")
                    self.end_headers()
                    self.wfile.write(json.dumps({"error": "Authentication required"}).encode())
                return client

            def _json_response(self, data: dict, status: int = 200):
                payload = json.dumps(data, indent=2, default=str).encode()
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        return SyncHandler
