"""Tests for the peer HTTP client."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from casesync.errors import PeerRequestError
from casesync.models import JobStatus, PeerCredentials, PeerDescriptor
from casesync.sync.client import PeerClient


def response(status: int = 200, body=None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


@pytest.fixture
def peer() -> PeerDescriptor:
    return PeerDescriptor(
        url="https://hq.example.org/api/",
        name="HQ",
        credentials=PeerCredentials(client_id="district-3", client_secret="s3cret"),
        timeout=30,
    )


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


class TestRequests:
    """Request building and error mapping."""

    def test_auth_and_url(self, peer, session):
        session.request.return_value = response(body={"outbreakIDs": ["out-a"]})
        client = PeerClient(peer, "job-1", session=session)

        assert client.get_available_outbreak_ids() == ["out-a"]
        assert session.auth == ("district-3", "s3cret")
        session.request.assert_called_once_with(
            "GET", "https://hq.example.org/api/sync/available-outbreaks", timeout=30,
        )

    def test_empty_outbreaks_mean_all(self, peer, session):
        session.request.return_value = response(body={"outbreakIDs": None})
        assert PeerClient(peer, session=session).get_available_outbreak_ids() == []

    def test_outbreaks_wrong_shape(self, peer, session):
        session.request.return_value = response(body=["out-a"])
        with pytest.raises(PeerRequestError, match="available outbreaks"):
            PeerClient(peer, session=session).get_available_outbreak_ids()

    def test_outbreak_ids_not_a_list(self, peer, session):
        session.request.return_value = response(body={"outbreakIDs": "out-a"})
        with pytest.raises(PeerRequestError, match="available outbreaks"):
            PeerClient(peer, session=session).get_available_outbreak_ids()

    def test_unknown_remote_status(self, peer, session):
        session.request.return_value = response(body={"id": "remote-1", "status": "QUEUED"})
        with pytest.raises(PeerRequestError, match="remote-1"):
            PeerClient(peer, session=session).get_job("remote-1")

    def test_no_timeout(self, peer, session):
        peer.timeout = 0
        session.request.return_value = response(body={"version": "1"})
        PeerClient(peer, session=session).get_server_version()
        assert session.request.call_args.kwargs["timeout"] is None

    def test_unexpected_status(self, peer, session):
        session.request.return_value = response(status=401, body={}, text="Authentication required")
        with pytest.raises(PeerRequestError, match="401"):
            PeerClient(peer, session=session).get_server_version()

    def test_connection_error(self, peer, session):
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(PeerRequestError, match="refused"):
            PeerClient(peer, session=session).get_available_outbreak_ids()

    def test_non_json_body(self, peer, session):
        session.request.return_value = response(status=200)
        with pytest.raises(PeerRequestError, match="not JSON"):
            PeerClient(peer, session=session).get_server_version()


class TestSendSnapshot:
    """Uploading archives."""

    def test_upload(self, peer, session, tmp_path: Path):
        archive = tmp_path / "snapshot.zip"
        archive.write_bytes(b"PK")
        session.request.return_value = response(body={"syncLogId": "remote-1"})

        remote_id = PeerClient(peer, session=session).send_snapshot(
            archive, asynchronous=False, auto_encrypt=True,
        )

        assert remote_id == "remote-1"
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://hq.example.org/api/sync/import-database-snapshot")
        assert kwargs["params"] == {"asynchronous": "false", "autoEncrypt": "true"}
        assert kwargs["headers"] == {"Content-Type": "application/zip"}

    def test_missing_sync_log_id(self, peer, session, tmp_path: Path):
        archive = tmp_path / "snapshot.zip"
        archive.write_bytes(b"PK")
        session.request.return_value = response(body={})
        with pytest.raises(PeerRequestError, match="sync log ID"):
            PeerClient(peer, session=session).send_snapshot(archive)


class TestWaitForImport:
    """Polling a remote import."""

    def test_polls_until_terminal(self, peer, session):
        session.request.side_effect = [
            response(body={"id": "remote-1", "status": "IN_PROGRESS"}),
            response(body={"id": "remote-1", "status": "SUCCESS"}),
        ]
        with patch("casesync.sync.client.time.sleep") as sleep:
            job = PeerClient(peer, session=session).wait_for_import("remote-1", interval=2)

        assert job.status == JobStatus.SUCCESS
        sleep.assert_called_once_with(2)
        assert session.request.call_args.args[1].endswith("/sync-logs/remote-1")

    def test_timeout(self, peer, session):
        session.request.return_value = response(body={"id": "remote-1", "status": "IN_PROGRESS"})
        with patch("casesync.sync.client.time.sleep"):
            with pytest.raises(PeerRequestError, match="Timed out"):
                PeerClient(peer, session=session).wait_for_import("remote-1", timeout=0)

    def test_retries_failed_status_check(self, peer, session):
        """A transient error while polling does not abandon the import."""
        session.request.side_effect = [
            response(status=503, body={}, text="Service Unavailable"),
            response(body={"id": "remote-1", "status": "SUCCESS"}),
        ]
        with patch("casesync.sync.client.time.sleep") as sleep:
            job = PeerClient(peer, session=session).wait_for_import("remote-1", interval=2)

        assert job.status == JobStatus.SUCCESS
        sleep.assert_called_once_with(2)

    def test_timeout_reports_last_error(self, peer, session):
        session.request.return_value = response(status=503, body={}, text="Service Unavailable")
        with patch("casesync.sync.client.time.sleep"):
            with pytest.raises(PeerRequestError, match="503"):
                PeerClient(peer, session=session).wait_for_import("remote-1", timeout=0)
