"""
Peer sync orchestrator -- pushes local changes to an upstream server.

    resolve peer -> check exclusivity -> create job -> ack caller
        -> resolve scope -> last sync -> export -> transfer -> finalize

Everything up to the ack is synchronous: configuration errors and a sync
already in progress reach the caller as exceptions. Once the caller has
the job ID, the rest runs on a background thread and its outcome is only
visible through the ledger and the logs.

At most one sync per peer runs at a time unless the caller forces one.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from ..catalog import ExportType, collections_for_export_type
from ..config import NodeConfig, load_config, resolve_home
from ..crypto import peer_passphrase
from ..errors import NoDataError, SyncError, SyncInProgressError, render_error
from ..ledger import JobLedger
from ..models import (
    ExportOptions,
    ExportResult,
    JobStatus,
    PeerDescriptor,
    SyncDirection,
    SyncJob,
    normalize_url,
)
from .client import PeerClient
from .worker import WorkerRunner

logger = logging.getLogger("casesync.sync.orchestrator")

# Overlap with the previous sync so records saved while it ran are not missed.
LAST_SYNC_OVERLAP = timedelta(minutes=1)

ClientFactory = Callable[[PeerDescriptor, str], PeerClient]


class SyncRegistry:
    """Thread-safe in-progress and pending maps keyed by peer URL."""

    def __init__(self):
        self._lock = threading.Lock()
        self._in_progress: dict[str, int] = {}
        self._pending: set[str] = set()

    def try_acquire(self, url: str, force: bool = False) -> bool:
        """Mark a sync as running. Fails if one is running and not forced."""
        url = normalize_url(url)
        with self._lock:
            if self._in_progress.get(url) and not force:
                return False
            self._in_progress[url] = self._in_progress.get(url, 0) + 1
            return True

    def release(self, url: str) -> None:
        url = normalize_url(url)
        with self._lock:
            count = self._in_progress.get(url, 0) - 1
            if count > 0:
                self._in_progress[url] = count
            else:
                self._in_progress.pop(url, None)

    def is_running(self, url: str) -> bool:
        with self._lock:
            return bool(self._in_progress.get(normalize_url(url)))

    def mark_pending(self, url: str) -> None:
        with self._lock:
            self._pending.add(normalize_url(url))

    def pop_pending(self, url: str) -> bool:
        """Clear and return the pending flag for a peer."""
        url = normalize_url(url)
        with self._lock:
            if url in self._pending:
                self._pending.discard(url)
                return True
            return False


class PeerSyncOrchestrator:
    """Runs outbound syncs with configured upstream servers.

    Args:
        home: Node home directory.
        config: Node configuration. Loaded from ``home`` if omitted.
        ledger: Job ledger. Created under ``home`` if omitted.
        runner: Worker runner for the export step.
        client_factory: Builds a ``PeerClient`` for a peer and job ID.
        detach: Run the post-ack steps on a background thread. Tests turn
            this off to run a sync inline.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        config: Optional[NodeConfig] = None,
        ledger: Optional[JobLedger] = None,
        runner: Optional[WorkerRunner] = None,
        client_factory: Optional[ClientFactory] = None,
        detach: bool = True,
    ):
        self.home = resolve_home(home)
        self.config = config or load_config(self.home)
        self.ledger = ledger or JobLedger(self.home)
        self.runner = runner or WorkerRunner(mode=self.config.sync.worker_mode)
        self.client_factory = client_factory or (lambda peer, job_id: PeerClient(peer, job_id))
        self.detach = detach
        self.registry = SyncRegistry()
        self._threads: list[threading.Thread] = []

    @property
    def outbound_dir(self) -> Path:
        return self.home / "sync" / "outbound"

    def sync_with_upstream(self, peer_url: str, force: bool = False) -> str:
        """Start a sync with an upstream server.

        Args:
            peer_url: URL of a configured upstream server.
            force: Start even if a sync with this peer is already running.

        Returns:
            ID of the new sync job.

        Raises:
            PeerConfigError: The peer is unknown or has sync disabled.
            SyncInProgressError: A sync with this peer is running.
        """
        peer = self.config.find_peer(peer_url)
        url = peer.normalized_url
        if not self.registry.try_acquire(url, force):
            raise SyncInProgressError(peer.display_name)

        job = self.ledger.create_sync_job(
            SyncJob(
                direction=SyncDirection.OUTBOUND,
                peer_url=url,
                peer_name=peer.display_name,
            )
        )
        logger.info("Sync %s: Started with upstream server '%s'", job.id, peer.display_name)

        if self.detach:
            thread = threading.Thread(
                target=self._run,
                args=(peer, job.id),
                name=f"casesync-sync-{job.id[:8]}",
                daemon=True,
            )
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
            thread.start()
        else:
            self._run(peer, job.id)
        return job.id

    def request_sync(self, peer_url: str) -> Optional[str]:
        """Sync on every change: start a sync, or defer it if one is running.

        Returns:
            The new job ID, or None when the sync was deferred.
        """
        peer = self.config.find_peer(peer_url)
        if self.registry.is_running(peer.normalized_url):
            logger.debug(
                "Sync on every change: sync with '%s' in progress, marking as pending",
                peer.display_name,
            )
            self.registry.mark_pending(peer.normalized_url)
            return None
        try:
            return self.sync_with_upstream(peer.normalized_url)
        except SyncInProgressError:
            self.registry.mark_pending(peer.normalized_url)
            return None

    def notify_change(self) -> list[str]:
        """Local data changed: sync every peer configured to sync on change.

        Returns:
            IDs of the syncs that started (deferred ones are not listed).
        """
        started = []
        for peer in self.config.upstream_servers:
            if not (peer.sync_enabled and peer.sync_on_every_change):
                continue
            job_id = self.request_sync(peer.normalized_url)
            if job_id is not None:
                started.append(job_id)
        return started

    def wait(self, timeout: Optional[float] = None) -> None:
        """Join background sync threads (CLI and tests)."""
        for thread in list(self._threads):
            thread.join(timeout)

    # -------------------------------------------------------------------
    # Background steps
    # -------------------------------------------------------------------

    def _run(self, peer: PeerDescriptor, job_id: str) -> None:
        prefix = f"Sync {job_id}"
        url = peer.normalized_url
        archive: Optional[Path] = None
        try:
            client = self.client_factory(peer, job_id)

            outbreak_ids = client.get_available_outbreak_ids()
            logger.debug(
                "%s: Allowed outbreaks: %s", prefix, ", ".join(outbreak_ids) or "all",
            )

            last = self.ledger.last_successful_sync(url)
            start = last.started_at - LAST_SYNC_OVERLAP if last else None
            if start is None:
                logger.debug("%s: No previous successful sync, doing a full sync", prefix)
            self.ledger.update_sync_job(
                job_id, outbreak_ids=outbreak_ids, information_start_date=start,
            )

            try:
                result = self._export(peer, outbreak_ids, start)
            except NoDataError:
                logger.info("%s: No data to send to '%s'", prefix, peer.display_name)
                self.ledger.finish_sync_job(job_id, JobStatus.SUCCESS)
                return
            archive = result.archive_path
            for warning in result.warnings:
                self.ledger.add_sync_warning(job_id, warning)

            self._transfer(client, peer, job_id, archive)
        except Exception as exc:
            logger.error("%s: Failed: %s", prefix, render_error(exc))
            self.ledger.finish_sync_job(job_id, JobStatus.FAILED, error=render_error(exc))
        else:
            self.ledger.finish_sync_job(job_id, JobStatus.SUCCESS)
        finally:
            self.registry.release(url)
            if archive is not None and not self.config.sync.debug:
                archive.unlink(missing_ok=True)
            if self.registry.pop_pending(url):
                logger.debug("%s: Triggering pending sync with '%s'", prefix, peer.display_name)
                try:
                    self.sync_with_upstream(url, force=True)
                except Exception as exc:
                    logger.error("Pending sync with '%s' could not start: %s", peer.display_name, exc)

    def _export(
        self,
        peer: PeerDescriptor,
        outbreak_ids: list[str],
        start: Optional[datetime],
    ) -> ExportResult:
        settings = self.config.sync
        options = ExportOptions(
            outbreak_ids=outbreak_ids,
            from_date=start,
            chunk_size=settings.chunk_size,
            exclude_deleted=False,
            redact_for_peer=True,
            password=peer_passphrase(peer.credentials) if peer.auto_encrypt else None,
            output_dir=self.outbound_dir,
            attachments_dir=self.config.attachments_root(self.home),
            file_workers=settings.file_workers,
            node_name=self.config.node_name,
        )
        reply = self.runner.call(
            "export",
            home=str(self.home),
            collections=collections_for_export_type(ExportType.FULL),
            options=options.model_dump(mode="json"),
        )
        return ExportResult.model_validate(reply)

    def _transfer(
        self,
        client: PeerClient,
        peer: PeerDescriptor,
        job_id: str,
        archive: Path,
    ) -> None:
        prefix = f"Sync {job_id}"
        settings = self.config.sync
        remote_id = client.send_snapshot(
            archive,
            asynchronous=settings.asynchronous_import,
            auto_encrypt=peer.auto_encrypt,
        )
        self.ledger.update_sync_job(job_id, remote_job_id=remote_id)
        logger.debug("%s: Upstream server accepted snapshot as %s", prefix, remote_id)

        if not settings.asynchronous_import:
            return

        remote = client.wait_for_import(
            remote_id,
            interval=settings.status_poll_interval,
            timeout=settings.status_poll_timeout,
        )
        if remote.status == JobStatus.FAILED:
            raise SyncError(
                f"Upstream server '{peer.display_name}' import failed: {remote.error}"
            )
        if remote.status == JobStatus.SUCCESS_WITH_WARNINGS:
            self.ledger.add_sync_warning(
                job_id, f"Upstream server import errors: {remote.error}"
            )
