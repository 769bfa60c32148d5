"""Tests for the sync API server, driven over real HTTP."""

from __future__ import annotations

import io
import json
import time
from concurrent.futures import Future
from pathlib import Path

import pytest
import requests

from casesync import __version__
from casesync.archive import archive_members
from casesync.config import ClientApplication, NodeConfig
from casesync.crypto import peer_passphrase
from casesync.errors import ArchiveError, WorkerError
from casesync.ledger import JobLedger
from casesync.models import (
    ExportOptions,
    JobStatus,
    PeerCredentials,
    PeerDescriptor,
    SyncDirection,
)
from casesync.server import SyncServer, save_upload
from casesync.store import JsonDocumentStore, open_store
from casesync.sync.client import PeerClient
from casesync.sync.exporter import export_collections
from casesync.sync.worker import WorkerReply

AUTH = ("d3", "s3cret")
CREDENTIALS = PeerCredentials(client_id="d3", client_secret="s3cret")


@pytest.fixture
def server(tmp_path: Path):
    config = NodeConfig(
        node_name="hq",
        client_applications=[
            ClientApplication(name="district-3", credentials=CREDENTIALS, outbreak_ids=["out-a"]),
            ClientApplication(
                name="retired",
                credentials=PeerCredentials(client_id="old", client_secret="x"),
                active=False,
            ),
        ],
    )
    srv = SyncServer(home=tmp_path / "server", config=config, port=0)
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture
def base_url(server: SyncServer) -> str:
    host, port = server.address
    return f"http://{host}:{port}"


@pytest.fixture
def upload(seeded_store: JsonDocumentStore, tmp_path: Path) -> Path:
    """A plain snapshot of the seeded node."""
    options = ExportOptions(output_dir=tmp_path / "out")
    return export_collections(seeded_store, ["outbreak", "person"], options).archive_path


def wait_for_job(ledger: JobLedger, job_id: str, timeout: float = 30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = ledger.get_sync_job(job_id)
        if job is not None and job.status.is_terminal:
            return job
        time.sleep(0.05)
    raise AssertionError(f"Sync job {job_id} did not finish")


class TestAuthentication:
    """HTTP basic auth against client applications."""

    def test_missing_credentials(self, base_url: str):
        resp = requests.get(f"{base_url}/sync/available-outbreaks", timeout=10)
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"].startswith("Basic")

    def test_wrong_secret(self, base_url: str):
        resp = requests.get(f"{base_url}/sync/available-outbreaks", auth=("d3", "nope"), timeout=10)
        assert resp.status_code == 401

    def test_inactive_client(self, base_url: str):
        resp = requests.get(f"{base_url}/sync/available-outbreaks", auth=("old", "x"), timeout=10)
        assert resp.status_code == 401


class TestReadEndpoints:
    """Outbreaks, version and sync logs."""

    def test_available_outbreaks(self, base_url: str):
        resp = requests.get(f"{base_url}/sync/available-outbreaks", auth=AUTH, timeout=10)
        assert resp.json() == {"outbreakIDs": ["out-a"]}

    def test_version(self, base_url: str):
        body = requests.get(f"{base_url}/system-settings/version", auth=AUTH, timeout=10).json()
        assert body["version"] == __version__
        assert body["node"] == "hq"

    def test_unknown_sync_log(self, base_url: str):
        resp = requests.get(f"{base_url}/sync-logs/missing", auth=AUTH, timeout=10)
        assert resp.status_code == 404

    def test_unknown_endpoint(self, base_url: str):
        resp = requests.get(f"{base_url}/nope", auth=AUTH, timeout=10)
        assert resp.status_code == 404


class TestImportEndpoint:
    """Receiving snapshots from downstream nodes."""

    def _post(self, base_url: str, body: bytes, **params) -> requests.Response:
        return requests.post(
            f"{base_url}/sync/import-database-snapshot",
            params={k: str(v).lower() for k, v in params.items()},
            data=body,
            auth=AUTH,
            headers={"Content-Type": "application/zip"},
            timeout=60,
        )

    def test_synchronous_import(self, server: SyncServer, base_url: str, upload: Path):
        resp = self._post(base_url, upload.read_bytes(), asynchronous=False, autoEncrypt=False)
        assert resp.status_code == 200

        job = server.ledger.get_sync_job(resp.json()["syncLogId"])
        assert job.status == JobStatus.SUCCESS
        assert job.direction == SyncDirection.INBOUND
        assert job.peer_name == "district-3"

        persons = open_store(server.home).find("person")
        assert sorted(p["_id"] for p in persons) == ["p1", "p2", "p3", "p4", "p5", "p6", "p7"]
        assert list(server.inbound_dir.iterdir()) == []

    def test_asynchronous_import(self, server: SyncServer, base_url: str, upload: Path):
        resp = self._post(base_url, upload.read_bytes(), asynchronous=True, autoEncrypt=False)
        assert resp.status_code == 200

        job = wait_for_job(server.ledger, resp.json()["syncLogId"])
        assert job.status == JobStatus.SUCCESS

        log = requests.get(f"{base_url}/sync-logs/{job.id}", auth=AUTH, timeout=10).json()
        assert log["status"] == "SUCCESS"

    def test_encrypted_import(self, server: SyncServer, base_url: str, seeded_store, tmp_path: Path):
        options = ExportOptions(password=peer_passphrase(CREDENTIALS), output_dir=tmp_path / "enc")
        archive = export_collections(seeded_store, ["person"], options).archive_path

        resp = self._post(base_url, archive.read_bytes(), asynchronous=False, autoEncrypt=True)
        assert resp.status_code == 200
        assert len(open_store(server.home).find("person")) == 7

    def test_failed_import(self, server: SyncServer, base_url: str):
        resp = self._post(base_url, b"not a zip", asynchronous=False, autoEncrypt=False)
        assert resp.status_code == 500
        job = server.ledger.get_sync_job(resp.json()["syncLogId"])
        assert job.status == JobStatus.FAILED

    def test_empty_body(self, base_url: str):
        resp = requests.post(
            f"{base_url}/sync/import-database-snapshot", data=b"", auth=AUTH, timeout=10,
        )
        assert resp.status_code == 400


class TestSnapshotEndpoint:
    """Serving snapshots to downstream nodes."""

    def _get(self, base_url: str, **params) -> requests.Response:
        return requests.get(
            f"{base_url}/sync/database-snapshot", params=params, auth=AUTH, timeout=60,
        )

    def test_download(self, server: SyncServer, base_url: str, tmp_path: Path):
        open_store(server.home).insert_many("person", [
            {"_id": "a1", "outbreakId": "out-a"},
            {"_id": "b1", "outbreakId": "out-b"},
        ])
        resp = self._get(base_url, filter=json.dumps({"collections": ["person"]}))
        assert resp.status_code == 200
        assert resp.headers["Content-Type"] == "application/zip"

        archive = tmp_path / "download.zip"
        archive.write_bytes(resp.content)
        assert "collections/person.0.json.zip" in archive_members(archive)
        assert list((server.home / "sync" / "outbound").iterdir()) == []

        job = JobLedger(server.home).list_export_jobs()[0]
        assert job.outbreak_ids == ["out-a"]

    def test_outside_scope(self, base_url: str):
        resp = self._get(base_url, filter=json.dumps({"outbreak_id": "out-b"}))
        assert resp.status_code == 403

    def test_invalid_filter(self, base_url: str):
        assert self._get(base_url, filter="{nope").status_code == 400

    def test_nothing_to_export(self, base_url: str):
        resp = self._get(base_url, filter=json.dumps({"collections": ["person"]}))
        assert resp.status_code == 404


class TestPeerClientAgainstServer:
    """The client and server speak the same protocol."""

    def test_push_and_poll(self, server: SyncServer, base_url: str, upload: Path):
        client = PeerClient(PeerDescriptor(url=base_url + "/", credentials=CREDENTIALS, timeout=30))

        assert client.get_available_outbreak_ids() == ["out-a"]
        assert client.get_server_version()["node"] == "hq"

        remote_id = client.send_snapshot(upload, asynchronous=True, auto_encrypt=False)
        job = client.wait_for_import(remote_id, interval=0.05, timeout=30)
        assert job.status == JobStatus.SUCCESS


class StubRunner:
    """Runner that hands back canned futures instead of running tasks."""

    def __init__(self, outcome):
        self.outcome = outcome

    def submit(self, fn, **kwargs) -> Future:
        future: Future = Future()
        if isinstance(self.outcome, Exception):
            future.set_exception(self.outcome)
        else:
            future.set_result(self.outcome)
        return future

    def call(self, fn, **kwargs):
        raise WorkerError("Import blew up", "RuntimeError")

    def shutdown(self, wait: bool = True) -> None:
        pass


def offline_server(tmp_path: Path, outcome) -> SyncServer:
    config = NodeConfig(
        node_name="hq",
        client_applications=[
            ClientApplication(name="district-3", credentials=CREDENTIALS, outbreak_ids=["out-a"]),
        ],
    )
    return SyncServer(home=tmp_path / "server", config=config, runner=StubRunner(outcome))


class TestUploads:
    """Request bodies are streamed to disk."""

    def test_copies_in_chunks(self, tmp_path: Path):
        target = tmp_path / "upload.zip"
        save_upload(io.BytesIO(b"x" * 10 + b"trailing"), 10, target, chunk_size=3)
        assert target.read_bytes() == b"x" * 10

    def test_short_body_removes_partial_file(self, tmp_path: Path):
        target = tmp_path / "upload.zip"
        with pytest.raises(ArchiveError, match="4 of 100"):
            save_upload(io.BytesIO(b"PK\x03\x04"), 100, target)
        assert not target.exists()

    def test_short_body_creates_no_job(self, tmp_path: Path):
        srv = offline_server(tmp_path, WorkerReply(ok=True, result={"status": "SUCCESS"}))
        client = srv.config.client_applications[0]
        with pytest.raises(ArchiveError):
            srv.receive_snapshot(client, io.BytesIO(b"PK"), 50, asynchronous=True, auto_encrypt=False)
        assert list(srv.inbound_dir.iterdir()) == []
        assert srv.ledger.list_sync_jobs() == []


class TestImportCompletion:
    """Inbound jobs always reach a terminal status."""

    def _receive(self, srv: SyncServer, asynchronous: bool = True):
        client = srv.config.client_applications[0]
        return srv.receive_snapshot(
            client, io.BytesIO(b"PK\x05\x06"), 4, asynchronous=asynchronous, auto_encrypt=False,
        )

    def test_crashed_worker_fails_job(self, tmp_path: Path):
        srv = offline_server(tmp_path, RuntimeError("worker pool is gone"))
        job = self._receive(srv)

        stored = srv.ledger.get_sync_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert "worker pool is gone" in stored.error

    def test_error_reply_fails_job(self, tmp_path: Path):
        srv = offline_server(tmp_path, WorkerReply(ok=False, error="boom", error_type="RuntimeError"))
        job = self._receive(srv)

        stored = srv.ledger.get_sync_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error == "boom"

    def test_synchronous_worker_error_fails_job(self, tmp_path: Path):
        srv = offline_server(tmp_path, None)
        with pytest.raises(WorkerError):
            self._receive(srv, asynchronous=False)

        [job] = srv.ledger.list_sync_jobs()
        assert job.status == JobStatus.FAILED
        assert "Import blew up" in job.error
