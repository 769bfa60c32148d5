"""
Data models -- jobs, peers, and pipeline options/results.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, Enum):
    """Lifecycle of an export or sync job."""

    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    SUCCESS_WITH_WARNINGS = "SUCCESS_WITH_WARNINGS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.IN_PROGRESS


class SyncDirection(str, Enum):
    """Whether this node sent the snapshot or received it."""

    OUTBOUND = "outbound"
    INBOUND = "inbound"


class ImportStep(str, Enum):
    """Stages of a snapshot import, in order."""

    UNPACK_ARCHIVE = "unpack_archive"
    DECRYPT = "decrypt"
    UNPACK_ARTIFACTS = "unpack_artifacts"
    APPLY = "apply"
    DONE = "done"


class ImportProgress(BaseModel):
    """Resumable processed/total counter for an import."""

    step: ImportStep = ImportStep.UNPACK_ARCHIVE
    processed: int = 0
    total: int = 0
    completed: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class ExportJob(BaseModel):
    """Ledger entry for a snapshot export."""

    id: str = Field(default_factory=_new_id)
    requested_scope: dict[str, Any] = Field(default_factory=dict)
    outbreak_ids: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    status: JobStatus = JobStatus.IN_PROGRESS
    result_location: Optional[str] = None
    error: Optional[str] = None


class SyncJob(BaseModel):
    """Ledger entry for a sync with a peer (either direction)."""

    id: str = Field(default_factory=_new_id)
    direction: SyncDirection = SyncDirection.OUTBOUND
    peer_url: Optional[str] = None
    peer_name: Optional[str] = None
    outbreak_ids: list[str] = Field(default_factory=list)
    information_start_date: Optional[datetime] = None
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    status: JobStatus = JobStatus.IN_PROGRESS
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    progress: Optional[ImportProgress] = None
    remote_job_id: Optional[str] = None


class PeerCredentials(BaseModel):
    """Client application credentials issued by the upstream server."""

    client_id: str = ""
    client_secret: str = ""


class PeerDescriptor(BaseModel):
    """An upstream server this node can sync with.

    Attributes:
        url: Base URL of the peer API.
        name: Display name.
        credentials: Basic-auth credentials; also the encryption passphrase source.
        sync_enabled: Whether outbound syncs are allowed.
        auto_encrypt: Encrypt snapshots sent to this peer.
        timeout: Request timeout in seconds (0 = none).
        sync_on_every_change: Trigger a sync whenever local data changes.
    """

    url: str
    name: str = ""
    credentials: PeerCredentials = Field(default_factory=PeerCredentials)
    sync_enabled: bool = True
    auto_encrypt: bool = True
    timeout: float = 0
    sync_on_every_change: bool = False

    @property
    def normalized_url(self) -> str:
        return normalize_url(self.url)

    @property
    def display_name(self) -> str:
        return self.name or self.url


def normalize_url(url: str) -> str:
    """Drop a trailing slash so equal peers compare equal."""
    return url[:-1] if url.endswith("/") else url


class ExportOptions(BaseModel):
    """Knobs for one run of the export pipeline."""

    outbreak_ids: list[str] = Field(default_factory=list)
    from_date: Optional[datetime] = None
    where: Optional[dict[str, Any]] = None
    chunk_size: int = 10000
    include_empty: bool = False
    exclude_deleted: bool = True
    redact_for_peer: bool = False
    password: Optional[str] = None
    active_subset: bool = False
    location_ids: list[str] = Field(default_factory=list)
    output_dir: Optional[Path] = None
    attachments_dir: Optional[Path] = None
    file_workers: int = 5
    node_name: str = ""


class ExportResult(BaseModel):
    """Outcome of a successful export."""

    archive_path: Path
    record_counts: dict[str, int] = Field(default_factory=dict)
    batches: dict[str, list[int]] = Field(default_factory=dict)
    encrypted: bool = False
    warnings: list[str] = Field(default_factory=list)

    @property
    def total_records(self) -> int:
        return sum(self.record_counts.values())


class SnapshotManifest(BaseModel):
    """Describes the contents of a snapshot archive.

    Stored as ``manifest.json`` next to the nested artifacts so the
    receiver knows whether to decrypt before unpacking.
    """

    node_name: str = ""
    created_at: datetime = Field(default_factory=_now)
    schema_version: str = "1"
    encrypted: bool = False
    outbreak_ids: list[str] = Field(default_factory=list)
    from_date: Optional[datetime] = None
    collections: dict[str, int] = Field(default_factory=dict)
    artifacts: list[str] = Field(default_factory=list)


class ImportOptions(BaseModel):
    """Knobs for unpacking a snapshot."""

    password: Optional[str] = None
    work_dir: Optional[Path] = None
    decrypt_workers: int = 10


class ImportResult(BaseModel):
    """Directories produced by unpacking a snapshot."""

    work_dir: Path
    collections_dir: Path
    files_dir: Path
    manifest: Optional[SnapshotManifest] = None
    failures: dict[str, str] = Field(default_factory=dict)
    progress: ImportProgress = Field(default_factory=ImportProgress)


class ApplyReport(BaseModel):
    """Per-outcome counts from merging a snapshot into the store."""

    created: int = 0
    updated: int = 0
    removed: int = 0
    untouched: int = 0
    skipped: int = 0
    failed_records: dict[str, list[str]] = Field(default_factory=dict)
    failed_collections: dict[str, str] = Field(default_factory=dict)
    failed_files: dict[str, str] = Field(default_factory=dict)

    @property
    def warnings(self) -> list[str]:
        messages = []
        for name, error in self.failed_collections.items():
            messages.append(f"Collection {name}. Error: {error}")
        for name, failures in self.failed_records.items():
            messages.append(f"Collection {name}. Records: {'; '.join(failures)}")
        for name, error in self.failed_files.items():
            messages.append(f"Related files {name}. Error: {error}")
        return messages
