"""
Peer client -- the sending side of the sync protocol.

Every call is an authenticated request against an upstream server's
API. Anything other than the expected status code is a
``PeerRequestError`` carrying the status and response body.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Optional

import requests
from pydantic import ValidationError

from ..errors import PeerRequestError
from ..models import JobStatus, PeerDescriptor, SyncJob

logger = logging.getLogger("casesync.sync.client")

SNAPSHOT_CONTENT_TYPE = "application/zip"


class PeerClient:
    """HTTP client for one upstream server.

    Args:
        peer: Descriptor holding URL, credentials and timeout.
        job_id: Local sync job ID, used to prefix log lines.
        session: Optional preconfigured ``requests.Session``.
    """

    def __init__(
        self,
        peer: PeerDescriptor,
        job_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.peer = peer
        self.base_url = peer.normalized_url
        self.log_prefix = f"Sync {job_id}" if job_id else "Sync"
        self.session = session or requests.Session()
        self.session.auth = (peer.credentials.client_id, peer.credentials.client_secret)

    def _request(
        self,
        method: str,
        path: str,
        expected: int = 200,
        **kwargs: Any,
    ) -> Any:
        url = f"{self.base_url}/{path}"
        timeout = self.peer.timeout or None
        logger.debug("%s: %s %s", self.log_prefix, method, url)
        try:
            resp = self.session.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as exc:
            raise PeerRequestError(
                f"Request {method} {url} failed: {exc}"
            ) from exc

        if resp.status_code != expected:
            raise PeerRequestError(
                f"{method} {path}: {resp.status_code} {resp.text}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise PeerRequestError(f"{method} {path}: response is not JSON") from exc

    def get_available_outbreak_ids(self) -> list[str]:
        """Outbreak IDs this node may sync with the peer (empty = all)."""
        body = self._request("GET", "sync/available-outbreaks")
        ids = (body.get("outbreakIDs") or []) if isinstance(body, dict) else None
        if not isinstance(ids, list):
            raise PeerRequestError(
                f"Unexpected available outbreaks response: {str(body)[:200]}"
            )
        return [str(i) for i in ids]

    def send_snapshot(
        self,
        archive_path: Path,
        asynchronous: bool = True,
        auto_encrypt: bool = True,
    ) -> str:
        """Upload a snapshot archive.

        Returns:
            Remote sync job ID.
        """
        archive_path = Path(archive_path)
        logger.debug("%s: Sending %s to %s", self.log_prefix, archive_path.name, self.base_url)
        with open(archive_path, "rb") as fh:
            body = self._request(
                "POST",
                "sync/import-database-snapshot",
                params={
                    "asynchronous": str(asynchronous).lower(),
                    "autoEncrypt": str(auto_encrypt).lower(),
                },
                data=fh,
                headers={"Content-Type": SNAPSHOT_CONTENT_TYPE},
            )
        remote_id = body.get("syncLogId") if isinstance(body, dict) else None
        if not remote_id:
            raise PeerRequestError("Peer did not return a sync log ID")
        return str(remote_id)

    def get_job(self, remote_id: str) -> SyncJob:
        body = self._request("GET", f"sync-logs/{remote_id}")
        try:
            return SyncJob.model_validate(body)
        except ValidationError as exc:
            raise PeerRequestError(
                f"Unexpected sync log for remote sync {remote_id}: {exc}"
            ) from exc

    def get_server_version(self) -> dict:
        return self._request("GET", "system-settings/version")

    def wait_for_import(
        self,
        remote_id: str,
        interval: float = 5.0,
        timeout: float = 1800.0,
    ) -> SyncJob:
        """Poll a remote import until it reaches a terminal status.

        Failed status checks are retried until ``timeout`` expires.

        Raises:
            PeerRequestError: When ``timeout`` expires.
        """
        deadline = time.monotonic() + timeout
        last_error: Optional[PeerRequestError] = None
        while True:
            try:
                job = self.get_job(remote_id)
            except PeerRequestError as exc:
                last_error = exc
                job = None
                logger.warning(
                    "%s: Couldn't check remote sync %s status, retrying: %s",
                    self.log_prefix, remote_id, exc,
                )
            if job is not None and job.status.is_terminal:
                logger.debug(
                    "%s: Remote sync %s finished with %s",
                    self.log_prefix, remote_id, job.status.value,
                )
                return job
            if time.monotonic() >= deadline:
                detail = f": {last_error}" if last_error is not None else ""
                raise PeerRequestError(
                    f"Timed out after {timeout:.0f}s waiting for remote sync {remote_id}{detail}"
                )
            if job is not None:
                logger.debug(
                    "%s: Remote sync %s still %s",
                    self.log_prefix, remote_id, JobStatus.IN_PROGRESS.value,
                )
            time.sleep(interval)
