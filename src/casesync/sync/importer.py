"""
Collection import pipeline.

    snapshot.zip -> unpack -> decrypt artifacts -> unpack artifacts -> merge

``import_snapshot`` turns an archive into a flat directory of batch files
(``<collection>.<batch>.json``) and tracks every artifact in
``progress.json`` so a rerun in the same work directory picks up where
the last one stopped. ``apply_snapshot`` reads those batches and merges
each record into the local store.

One bad artifact does not sink the import. Failures are collected and the
import only aborts when nothing usable is left.
"""

from __future__ import annotations

import json
import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from ..archive import unzip, working_directory
from ..catalog import COLLECTIONS, get_collection, is_collection_file
from ..crypto import decrypt_file, is_encrypted
from ..errors import (
    ArchiveError,
    DecryptionError,
    MergeError,
    SnapshotImportError,
    SyncError,
    render_error,
)
from ..ledger import JobLedger
from ..merge import MergeOutcome, merge_record
from ..models import (
    ApplyReport,
    ImportOptions,
    ImportProgress,
    ImportResult,
    ImportStep,
    JobStatus,
    SnapshotManifest,
    SyncDirection,
    SyncJob,
)
from ..store import DocumentStore, record_id
from .exporter import COLLECTIONS_DIR, FILES_DIR, MANIFEST_NAME

logger = logging.getLogger("casesync.sync.importer")

PROGRESS_FILE = "progress.json"

ProgressCallback = Callable[[ImportProgress], None]


class _ProgressTracker:
    """Thread-safe wrapper that persists progress after every change."""

    def __init__(self, path: Path, callback: Optional[ProgressCallback]):
        self._path = path
        self._callback = callback
        self._lock = threading.Lock()
        self.progress = self._load()

    def _load(self) -> ImportProgress:
        if self._path.exists():
            try:
                return ImportProgress.model_validate_json(self._path.read_text(encoding="utf-8"))
            except ValueError as exc:
                logger.warning("Ignoring unreadable import progress: %s", exc)
        return ImportProgress()

    def _save(self) -> None:
        self._path.write_text(self.progress.model_dump_json(indent=2), encoding="utf-8")
        if self._callback is not None:
            self._callback(self.progress.model_copy(deep=True))

    def start(self, step: ImportStep, keys: list[str]) -> None:
        with self._lock:
            self.progress.step = step
            self.progress.total = len(keys)
            self.progress.processed = sum(
                1 for k in keys if k in self.progress.completed or k in self.progress.failed
            )
            self._save()

    def is_done(self, key: str) -> bool:
        return key in self.progress.completed

    def is_failed(self, key: str) -> bool:
        return key in self.progress.failed

    def done(self, key: str) -> None:
        with self._lock:
            if key not in self.progress.completed:
                self.progress.completed.append(key)
                self.progress.processed += 1
            self._save()

    def fail(self, key: str, error: str) -> None:
        with self._lock:
            if key not in self.progress.failed:
                self.progress.processed += 1
            self.progress.failed[key] = error
            self._save()


def _read_manifest(snapshot_dir: Path) -> Optional[SnapshotManifest]:
    path = snapshot_dir / MANIFEST_NAME
    if not path.exists():
        return None
    try:
        return SnapshotManifest.model_validate_json(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        logger.warning("Snapshot manifest is unreadable: %s", exc)
        return None


def import_snapshot(
    archive_path: Path,
    options: Optional[ImportOptions] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> ImportResult:
    """Unpack (and decrypt) a snapshot into flat per-batch files.

    Args:
        archive_path: Snapshot archive produced by the export pipeline.
        options: Password, work directory and decrypt parallelism.
        on_progress: Called with a copy of the progress after each change.

    Returns:
        ImportResult with the collection files directory. The caller owns
        the work directory.

    Raises:
        ArchiveError: The top-level archive is missing or corrupt.
        DecryptionError: The snapshot is encrypted and no password was given.
        SnapshotImportError: Every artifact failed.
    """
    options = options or ImportOptions()
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise ArchiveError(f"Snapshot not found: {archive_path}")

    work_dir = Path(options.work_dir or default_work_dir(archive_path))
    work_dir.mkdir(parents=True, exist_ok=True)
    snapshot_dir = work_dir / "snapshot"
    collections_dir = work_dir / COLLECTIONS_DIR
    files_dir = work_dir / FILES_DIR
    collections_dir.mkdir(exist_ok=True)
    files_dir.mkdir(exist_ok=True)

    tracker = _ProgressTracker(work_dir / PROGRESS_FILE, on_progress)

    # 1. unpack the top-level archive
    tracker.start(ImportStep.UNPACK_ARCHIVE, ["archive"])
    if not tracker.is_done("archive"):
        unzip(archive_path, snapshot_dir)
        tracker.done("archive")

    manifest = _read_manifest(snapshot_dir)
    artifacts = sorted(
        p.relative_to(snapshot_dir).as_posix()
        for p in snapshot_dir.rglob("*.zip")
    )

    encrypted = manifest.encrypted if manifest else any(
        is_encrypted(snapshot_dir / a) for a in artifacts
    )

    # 2. decrypt every nested artifact
    if encrypted:
        if not options.password:
            raise DecryptionError("Snapshot is encrypted but no password was given")
        keys = [f"decrypt:{a}" for a in artifacts]
        tracker.start(ImportStep.DECRYPT, keys)

        def decrypt_one(artifact: str) -> None:
            key = f"decrypt:{artifact}"
            if tracker.is_done(key) or tracker.is_failed(key):
                return
            path = snapshot_dir / artifact
            try:
                if is_encrypted(path):
                    decrypt_file(path, options.password)
                tracker.done(key)
            except (DecryptionError, OSError) as exc:
                logger.error("Failed to decrypt %s: %s", artifact, exc)
                tracker.fail(key, render_error(exc))

        with ThreadPoolExecutor(max_workers=max(1, options.decrypt_workers)) as pool:
            list(pool.map(decrypt_one, artifacts))

    # 3. unpack every nested artifact
    usable = [a for a in artifacts if not tracker.is_failed(f"decrypt:{a}")]
    keys = [f"unpack:{a}" for a in usable]
    tracker.start(ImportStep.UNPACK_ARTIFACTS, keys)
    for artifact in usable:
        key = f"unpack:{artifact}"
        if tracker.is_done(key) or tracker.is_failed(key):
            continue
        source = snapshot_dir / artifact
        if artifact.startswith(f"{COLLECTIONS_DIR}/"):
            target = collections_dir
        else:
            rel_parent = Path(artifact).relative_to(FILES_DIR).parent
            target = files_dir / rel_parent
        try:
            unzip(source, target)
            tracker.done(key)
        except (ArchiveError, OSError) as exc:
            logger.error("Failed to unpack %s: %s", artifact, exc)
            tracker.fail(key, render_error(exc))

    failures = {
        key.split(":", 1)[1]: error for key, error in tracker.progress.failed.items()
    }
    if artifacts and len(failures) >= len(artifacts):
        raise SnapshotImportError(
            "No usable data in snapshot: "
            + "; ".join(f"{name}: {error}" for name, error in sorted(failures.items()))
        )

    tracker.start(ImportStep.APPLY, [])
    logger.info(
        "Snapshot %s unpacked: %d artifact(s), %d failure(s)",
        archive_path.name, len(artifacts), len(failures),
    )
    return ImportResult(
        work_dir=work_dir,
        collections_dir=collections_dir,
        files_dir=files_dir,
        manifest=manifest,
        failures=failures,
        progress=tracker.progress.model_copy(deep=True),
    )


def default_work_dir(archive_path: Path) -> Path:
    """Default resumable work directory next to the archive."""
    return archive_path.with_name(archive_path.name + ".import")


def _batch_sort_key(filename: str) -> tuple[int, int]:
    parts = filename.split(".")
    order = list(COLLECTIONS).index(parts[0])
    try:
        batch = int(parts[1])
    except (IndexError, ValueError):
        batch = 0
    return order, batch


def collection_batch_files(collections_dir: Path) -> list[Path]:
    """Batch files of known collections, in catalog then batch order."""
    names = [
        p.name for p in Path(collections_dir).glob("*.json")
        if is_collection_file(p.name)
    ]
    return [Path(collections_dir) / n for n in sorted(names, key=_batch_sort_key)]


def _restore_related_file(
    files_dir: Path, collection: str, path_value: str, attachments_root: Path,
) -> None:
    rel = Path(path_value)
    if rel.is_absolute() or ".." in rel.parts:
        raise ArchiveError(f"unsupported attachment path '{path_value}'")
    source = files_dir / collection / rel
    if not source.is_file():
        return
    target = attachments_root / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)


def apply_snapshot(
    store: DocumentStore,
    result: ImportResult,
    outbreak_ids: Optional[list[str]] = None,
    attachments_root: Optional[Path] = None,
    log_prefix: str = "Sync",
) -> ApplyReport:
    """Merge every batch of an unpacked snapshot into the store.

    Records outside ``outbreak_ids`` are skipped silently. Read or parse
    failures mark a collection as failed; merge failures are kept per
    record. The apply is fatal only when every collection failed.

    Raises:
        SnapshotImportError: No collection could be imported.
    """
    allowed = list(outbreak_ids or [])
    report = ApplyReport()
    seen: set[str] = set()

    for batch_file in collection_batch_files(result.collections_dir):
        name = batch_file.name.split(".", 1)[0]
        spec = get_collection(name)
        seen.add(name)

        try:
            records = json.loads(batch_file.read_text(encoding="utf-8"))
            if not isinstance(records, list):
                raise ValueError("batch file does not contain a list")
        except (OSError, ValueError) as exc:
            logger.error("%s: Failed to read collection file %s. %s", log_prefix, batch_file, exc)
            report.failed_collections[name] = f"Failed to read collection file {batch_file.name}. {exc}"
            continue

        for record in records:
            if not isinstance(record, dict):
                continue
            rid = record_id(record)
            if not spec.accepts(record, allowed):
                logger.debug(
                    "%s: Skipped record (collection: %s, id: %s) as its outbreak is not accepted",
                    log_prefix, name, rid,
                )
                report.skipped += 1
                continue
            try:
                merged = merge_record(store, spec.storage_name, record)
            except MergeError as exc:
                logger.debug("%s: %s", log_prefix, exc)
                report.failed_records.setdefault(name, []).append(f'ID: "{rid}". Error: {exc}')
                continue

            if merged.outcome is MergeOutcome.CREATED:
                report.created += 1
            elif merged.outcome is MergeOutcome.UPDATED:
                report.updated += 1
            elif merged.outcome is MergeOutcome.REMOVED:
                report.removed += 1
            else:
                report.untouched += 1

            if (
                spec.has_files
                and attachments_root is not None
                and merged.outcome in (MergeOutcome.CREATED, MergeOutcome.UPDATED)
                and record.get(spec.file_field)
            ):
                try:
                    _restore_related_file(
                        result.files_dir, name, str(record[spec.file_field]), Path(attachments_root),
                    )
                except (ArchiveError, OSError) as exc:
                    report.failed_files[f"{name}/{rid}"] = str(exc)

    if seen and len(report.failed_collections) == len(seen):
        raise SnapshotImportError(
            "Failed collections: " + " ".join(
                f"Collection {n}. Error: {e}" for n, e in report.failed_collections.items()
            )
        )

    logger.info(
        "%s: merged snapshot (created=%d updated=%d removed=%d untouched=%d skipped=%d)",
        log_prefix, report.created, report.updated, report.removed,
        report.untouched, report.skipped,
    )
    return report


def import_and_apply(
    store: DocumentStore,
    ledger: JobLedger,
    archive_path: Path,
    outbreak_ids: Optional[list[str]] = None,
    password: Optional[str] = None,
    attachments_root: Optional[Path] = None,
    decrypt_workers: int = 10,
    job: Optional[SyncJob] = None,
    keep_files: bool = False,
    remove_archive: bool = False,
) -> SyncJob:
    """Import a received snapshot and record the outcome as an inbound job.

    Never raises for pipeline failures: they end up on the job as FAILED.
    """
    if job is None:
        job = ledger.create_sync_job(
            SyncJob(direction=SyncDirection.INBOUND, outbreak_ids=list(outbreak_ids or []))
        )
    prefix = f"Sync {job.id}"
    logger.debug("%s: Importing the DB at %s", prefix, archive_path)

    try:
        with working_directory(prefix="casesync-import-", keep=keep_files) as work_dir:
            result = import_snapshot(
                Path(archive_path),
                ImportOptions(password=password, work_dir=work_dir, decrypt_workers=decrypt_workers),
                on_progress=lambda progress: ledger.set_sync_progress(job.id, progress),
            )
            for artifact, error in result.failures.items():
                ledger.add_sync_warning(job.id, f"Artifact {artifact}: {error}")

            report = apply_snapshot(
                store, result, outbreak_ids, attachments_root, log_prefix=prefix,
            )
            for warning in report.warnings:
                ledger.add_sync_warning(job.id, warning)

            progress = result.progress.model_copy(deep=True)
            progress.step = ImportStep.DONE
            ledger.set_sync_progress(job.id, progress)
    except (SyncError, OSError) as exc:
        logger.error("%s: Import failed: %s", prefix, exc)
        ledger.finish_sync_job(job.id, JobStatus.FAILED, error=render_error(exc))
    else:
        ledger.finish_sync_job(job.id, JobStatus.SUCCESS)
    finally:
        if remove_archive:
            Path(archive_path).unlink(missing_ok=True)

    return ledger.get_sync_job(job.id) or job
