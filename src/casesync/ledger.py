"""
Job ledger -- durable status records for exports and syncs.

One JSON file per job:
    <home>/ledger/
    ├── exports/<job id>.json
    └── syncs/<job id>.json

Writes never raise. A ledger that cannot be written must not take the
sync down with it, so failures are logged and the in-memory job is
returned as-is. A job reaches a terminal status once; later attempts to
move it are refused.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

from .models import (
    ExportJob,
    ImportProgress,
    JobStatus,
    SyncDirection,
    SyncJob,
    normalize_url,
)

logger = logging.getLogger("casesync.ledger")

JobT = TypeVar("JobT", ExportJob, SyncJob)


class JobLedger:
    """Persists export and sync jobs under ``<home>/ledger``.

    Args:
        home: Node home directory.
    """

    def __init__(self, home: Path):
        self.home = Path(home).expanduser()
        self.exports_dir = self.home / "ledger" / "exports"
        self.syncs_dir = self.home / "ledger" / "syncs"
        self._lock = threading.RLock()

    # -------------------------------------------------------------------
    # File helpers
    # -------------------------------------------------------------------

    def _write(self, directory: Path, job: BaseModel) -> bool:
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".job-", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(job.model_dump_json(indent=2))
            os.replace(tmp_name, directory / f"{job.id}.json")
            return True
        except OSError as exc:
            logger.error("Failed to persist job %s: %s", job.id, exc)
            return False

    def _read(self, directory: Path, job_id: str, model: type[JobT]) -> Optional[JobT]:
        path = directory / f"{job_id}.json"
        if not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, json.JSONDecodeError) as exc:
            logger.error("Failed to read job %s: %s", job_id, exc)
            return None

    def _read_all(self, directory: Path, model: type[JobT]) -> list[JobT]:
        if not directory.is_dir():
            return []
        jobs = []
        for path in directory.glob("*.json"):
            job = self._read(directory, path.stem, model)
            if job is not None:
                jobs.append(job)
        jobs.sort(key=lambda j: j.started_at, reverse=True)
        return jobs

    def _finish(
        self,
        directory: Path,
        job: JobT,
        status: JobStatus,
        error: Optional[str],
    ) -> bool:
        if job.status.is_terminal:
            logger.warning(
                "Job %s is already %s; ignoring transition to %s",
                job.id, job.status.value, status.value,
            )
            return False
        job.status = status
        job.error = error
        job.completed_at = datetime.now(timezone.utc)
        self._write(directory, job)
        return True

    # -------------------------------------------------------------------
    # Export jobs
    # -------------------------------------------------------------------

    def create_export_job(self, job: ExportJob) -> ExportJob:
        with self._lock:
            self._write(self.exports_dir, job)
        return job

    def get_export_job(self, job_id: str) -> Optional[ExportJob]:
        with self._lock:
            return self._read(self.exports_dir, job_id, ExportJob)

    def list_export_jobs(self) -> list[ExportJob]:
        with self._lock:
            return self._read_all(self.exports_dir, ExportJob)

    def finish_export_job(
        self,
        job_id: str,
        status: JobStatus,
        result_location: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move an export job to a terminal status.

        Returns:
            True if the transition happened.
        """
        with self._lock:
            job = self._read(self.exports_dir, job_id, ExportJob)
            if job is None:
                logger.error("Export job %s not found in ledger", job_id)
                return False
            job.result_location = result_location
            return self._finish(self.exports_dir, job, status, error)

    # -------------------------------------------------------------------
    # Sync jobs
    # -------------------------------------------------------------------

    def create_sync_job(self, job: SyncJob) -> SyncJob:
        with self._lock:
            self._write(self.syncs_dir, job)
        return job

    def get_sync_job(self, job_id: str) -> Optional[SyncJob]:
        with self._lock:
            return self._read(self.syncs_dir, job_id, SyncJob)

    def list_sync_jobs(
        self,
        peer_url: Optional[str] = None,
        status: Optional[JobStatus] = None,
        direction: Optional[SyncDirection] = None,
    ) -> list[SyncJob]:
        """Sync jobs, newest first, optionally filtered."""
        with self._lock:
            jobs = self._read_all(self.syncs_dir, SyncJob)
        if peer_url is not None:
            url = normalize_url(peer_url)
            jobs = [j for j in jobs if j.peer_url and normalize_url(j.peer_url) == url]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        if direction is not None:
            jobs = [j for j in jobs if j.direction == direction]
        return jobs

    def last_successful_sync(self, peer_url: str) -> Optional[SyncJob]:
        """Most recent SUCCESS outbound sync with a peer."""
        jobs = self.list_sync_jobs(
            peer_url=peer_url,
            status=JobStatus.SUCCESS,
            direction=SyncDirection.OUTBOUND,
        )
        return jobs[0] if jobs else None

    def update_sync_job(self, job_id: str, **changes) -> Optional[SyncJob]:
        """Update non-status fields of a running sync job."""
        with self._lock:
            job = self._read(self.syncs_dir, job_id, SyncJob)
            if job is None:
                logger.error("Sync job %s not found in ledger", job_id)
                return None
            for key, value in changes.items():
                setattr(job, key, value)
            self._write(self.syncs_dir, job)
            return job

    def add_sync_warning(self, job_id: str, warning: str) -> None:
        with self._lock:
            job = self._read(self.syncs_dir, job_id, SyncJob)
            if job is None:
                logger.error("Sync job %s not found in ledger", job_id)
                return
            job.warnings.append(warning)
            self._write(self.syncs_dir, job)

    def set_sync_progress(self, job_id: str, progress: ImportProgress) -> None:
        self.update_sync_job(job_id, progress=progress.model_copy(deep=True))

    def finish_sync_job(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
    ) -> bool:
        """Move a sync job to a terminal status.

        SUCCESS is promoted to SUCCESS_WITH_WARNINGS when warnings were
        recorded along the way.

        Returns:
            True if the transition happened.
        """
        with self._lock:
            job = self._read(self.syncs_dir, job_id, SyncJob)
            if job is None:
                logger.error("Sync job %s not found in ledger", job_id)
                return False
            if status == JobStatus.SUCCESS and job.warnings:
                status = JobStatus.SUCCESS_WITH_WARNINGS
                error = error or "; ".join(job.warnings)
            return self._finish(self.syncs_dir, job, status, error)
