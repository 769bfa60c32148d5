"""
Collection export pipeline.

    collections -> filter -> page -> redact -> copy files -> zip -> encrypt -> snapshot.zip

Each collection is read through one forward-only cursor in pages of
``chunk_size`` records. Every page becomes its own artifact
(``<collection>.<batch>.json.zip``) and, when a password is set, is
encrypted on its own before being folded into the top-level archive.

Snapshot layout:
    snapshot_<timestamp>.zip
    ├── manifest.json
    ├── collections/
    │   ├── outbreak.0.json.zip
    │   ├── person.0.json.zip
    │   └── person.1.json.zip
    └── files/
        └── fileAttachment/<relative path>.zip
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..archive import working_directory, zip_directory, zip_file
from ..catalog import CollectionSpec, get_collection
from ..crypto import encrypt_file
from ..errors import ConfigError, NoDataError, render_error
from ..filters import Compare, In, NotEquals, and_all, parse_where, translate
from ..ledger import JobLedger
from ..models import (
    ExportJob,
    ExportOptions,
    ExportResult,
    JobStatus,
    SnapshotManifest,
)
from ..scope import AccessScope, SnapshotRequest, resolve_collections, resolve_outbreak_ids
from ..store import DocumentStore

logger = logging.getLogger("casesync.sync.exporter")

PERSON_TYPE_CASE = "LNG_REFERENCE_DATA_CATEGORY_PERSON_TYPE_CASE"
PERSON_TYPE_EVENT = "LNG_REFERENCE_DATA_CATEGORY_PERSON_TYPE_EVENT"
PERSON_TYPE_CONTACT = "LNG_REFERENCE_DATA_CATEGORY_PERSON_TYPE_CONTACT"
FOLLOW_UP_ACTIVE = "LNG_REFERENCE_DATA_CONTACT_FINAL_FOLLOW_UP_STATUS_TYPE_UNDER_FOLLOW_UP"

MANIFEST_NAME = "manifest.json"
COLLECTIONS_DIR = "collections"
FILES_DIR = "files"


# ---------------------------------------------------------------------------
# Active subset
# ---------------------------------------------------------------------------


def _person_locations(person: dict) -> set[str]:
    locations = {
        str(a["locationId"])
        for a in person.get("addresses") or []
        if isinstance(a, dict) and a.get("locationId")
    }
    if person.get("locationId"):
        locations.add(str(person["locationId"]))
    return locations


def compute_active_person_ids(
    store: DocumentStore,
    outbreak_ids: list[str],
    location_ids: Optional[list[str]] = None,
    max_hops: int = 1,
) -> set[str]:
    """People a mobile client needs to carry.

    Contacts under active follow-up, cases/events located in an
    authorized location, and cases/events reachable from those contacts
    through relationships, expanded one hop per round for ``max_hops``
    rounds. Recomputed from scratch on every call.

    Args:
        store: Local replica.
        outbreak_ids: Allowed outbreaks (empty = all).
        location_ids: Authorized locations (empty = all).
        max_hops: Relationship rounds to expand.
    """
    base = and_all(
        NotEquals("deleted", True),
        In("outbreakId", tuple(outbreak_ids)) if outbreak_ids else None,
    )
    persons = {p["_id"]: p for p in store.find("person", translate(base))}
    allowed_locations = set(location_ids or [])

    active: set[str] = set()
    for pid, person in persons.items():
        kind = person.get("type")
        if kind == PERSON_TYPE_CONTACT:
            status = (person.get("followUp") or {}).get("status")
            if status == FOLLOW_UP_ACTIVE:
                active.add(pid)
        elif kind in (PERSON_TYPE_CASE, PERSON_TYPE_EVENT):
            if not allowed_locations or _person_locations(person) & allowed_locations:
                active.add(pid)

    relationships = store.find("relationship", translate(base))
    frontier = {pid for pid in active if persons[pid].get("type") == PERSON_TYPE_CONTACT}
    for _ in range(max_hops):
        reached: set[str] = set()
        for rel in relationships:
            ids = [str(p.get("id")) for p in rel.get("persons") or [] if p.get("id")]
            if not frontier.intersection(ids):
                continue
            for other in ids:
                person = persons.get(other)
                if (
                    person is not None
                    and other not in active
                    and person.get("type") in (PERSON_TYPE_CASE, PERSON_TYPE_EVENT)
                ):
                    reached.add(other)
        if not reached:
            break
        active |= reached
        frontier = reached

    logger.debug("Active subset resolved to %d person(s)", len(active))
    return active


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def build_predicate(
    spec: CollectionSpec,
    options: ExportOptions,
    active_ids: Optional[set[str]] = None,
) -> dict:
    """Native predicate for one collection's export."""
    subset = None
    if active_ids is not None and spec.active_subset and spec.person_field:
        subset = In(spec.person_field, tuple(sorted(active_ids)))
    incremental = and_all(
        Compare("updatedAt", "gte", options.from_date) if options.from_date else None,
        parse_where(options.where),
    )
    return translate(
        and_all(
            spec.deleted_filter() if options.exclude_deleted and spec.exclude_deleted else None,
            spec.scope_filter(options.outbreak_ids),
            subset,
            incremental,
        )
    )


def _redact(records: list[dict], spec: CollectionSpec) -> list[dict]:
    if not spec.redacted_fields:
        return records
    return [
        {k: v for k, v in record.items() if k not in spec.redacted_fields}
        for record in records
    ]


def _relative_attachment(path_value: str) -> Optional[Path]:
    rel = Path(path_value)
    if rel.is_absolute() or ".." in rel.parts:
        return None
    return rel


def _export_related_files(
    spec: CollectionSpec,
    records: list[dict],
    options: ExportOptions,
    staging_dir: Path,
    files_dir: Path,
) -> list[str]:
    """Copy attachment files referenced by a batch. Best effort.

    Returns:
        Warnings for files that could not be exported.
    """
    if options.attachments_dir is None:
        return []

    root = Path(options.attachments_dir)
    warnings: list[str] = []

    def copy_one(record: dict) -> Optional[str]:
        value = record.get(spec.file_field)
        if not value:
            return None
        rel = _relative_attachment(str(value))
        if rel is None:
            return f"{spec.name} {record.get('_id')}: unsupported attachment path '{value}'"
        source = root / rel
        if not source.is_file():
            return f"{spec.name} {record.get('_id')}: attachment '{rel}' not found"
        staged = staging_dir / spec.name / rel
        staged.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, staged)
        target = files_dir / spec.name / rel.parent / f"{rel.name}.zip"
        zip_file(staged, target, arcname=rel.name)
        staged.unlink()
        if options.password:
            encrypt_file(target, options.password)
        return None

    with ThreadPoolExecutor(max_workers=max(1, options.file_workers)) as pool:
        for message in pool.map(copy_one, records):
            if message:
                logger.warning("Related file export: %s", message)
                warnings.append(message)
    return warnings


def _export_collection(
    store: DocumentStore,
    spec: CollectionSpec,
    predicate: dict,
    options: ExportOptions,
    work_dir: Path,
    package_dir: Path,
) -> tuple[int, list[int], list[str]]:
    """Export one collection in batches.

    Returns:
        (record count, sizes of written batches, warnings)
    """
    raw_dir = work_dir / "raw"
    raw_dir.mkdir(parents=True, exist_ok=True)
    collections_dir = package_dir / COLLECTIONS_DIR
    collections_dir.mkdir(parents=True, exist_ok=True)

    total = 0
    sizes: list[int] = []
    warnings: list[str] = []

    for batch_number, page in enumerate(
        store.iter_batches(spec.storage_name, predicate, options.chunk_size)
    ):
        if not page and not (options.include_empty and batch_number == 0):
            break

        if options.redact_for_peer:
            page = _redact(page, spec)

        if spec.has_files and page:
            warnings.extend(
                _export_related_files(
                    spec, page, options, work_dir / "staged-files", package_dir / FILES_DIR,
                )
            )

        batch_name = f"{spec.name}.{batch_number}.json"
        raw_file = raw_dir / batch_name
        raw_file.write_text(json.dumps(page, indent=2, default=str), encoding="utf-8")
        artifact = zip_file(raw_file, collections_dir / f"{batch_name}.zip")
        raw_file.unlink()
        if options.password:
            encrypt_file(artifact, options.password)

        total += len(page)
        sizes.append(len(page))
        logger.debug(
            "Exported batch %d of collection '%s' (%d records)",
            batch_number, spec.name, len(page),
        )

    logger.debug("Collection '%s' export success (%d records)", spec.name, total)
    return total, sizes, warnings


def _archive_path(output_dir: Path) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
    candidate = output_dir / f"snapshot_{stamp}.zip"
    counter = 1
    while candidate.exists():
        candidate = output_dir / f"snapshot_{stamp}_{counter}.zip"
        counter += 1
    return candidate


def _publish_archive(package_dir: Path, output_dir: Path) -> Path:
    """Zip the package under a hidden name, then rename it into place."""
    final = _archive_path(output_dir)
    partial = final.with_name(f".{final.name}.partial")
    try:
        zip_directory(package_dir, partial)
        os.replace(partial, final)
    except Exception:
        partial.unlink(missing_ok=True)
        raise
    return final


def export_collections(
    store: DocumentStore,
    collections: list[str],
    options: ExportOptions,
) -> ExportResult:
    """Export collections into a snapshot archive.

    Collections are exported one after another with no shared
    transaction. The working directory is removed whatever happens.

    Args:
        store: Local replica to read from.
        collections: Catalog names to export, in order.
        options: Filters, batching, redaction and encryption settings.

    Returns:
        ExportResult pointing at the snapshot archive.

    Raises:
        NoDataError: Nothing matched and ``include_empty`` is off.
        ConfigError: Unknown collection or invalid chunk size.
    """
    if options.chunk_size <= 0:
        raise ConfigError("chunk_size must be a positive integer")
    specs = [get_collection(name) for name in collections]

    logger.debug(
        "Started database export for the following collections: %s",
        ", ".join(collections),
    )

    active_ids = None
    if options.active_subset:
        active_ids = compute_active_person_ids(store, options.outbreak_ids, options.location_ids)

    output_dir = Path(options.output_dir or tempfile.gettempdir())
    output_dir.mkdir(parents=True, exist_ok=True)

    counts: dict[str, int] = {}
    batches: dict[str, list[int]] = {}
    warnings: list[str] = []

    with working_directory(prefix="casesync-export-") as work_dir:
        package_dir = work_dir / "package"
        package_dir.mkdir()

        for spec in specs:
            predicate = build_predicate(spec, options, active_ids)
            logger.debug("Exporting collection: %s", spec.name)
            count, sizes, collection_warnings = _export_collection(
                store, spec, predicate, options, work_dir, package_dir,
            )
            counts[spec.name] = count
            if sizes:
                batches[spec.name] = sizes
            warnings.extend(collection_warnings)

        if not sum(counts.values()) and not options.include_empty:
            raise NoDataError()

        manifest = SnapshotManifest(
            node_name=options.node_name,
            encrypted=bool(options.password),
            outbreak_ids=options.outbreak_ids,
            from_date=options.from_date,
            collections=counts,
            artifacts=sorted(
                p.relative_to(package_dir).as_posix()
                for p in package_dir.rglob("*.zip")
            ),
        )
        (package_dir / MANIFEST_NAME).write_text(
            manifest.model_dump_json(indent=2), encoding="utf-8",
        )

        archive_path = _publish_archive(package_dir, output_dir)

    logger.info(
        "Sync payload created at %s (%d records, %d collections)",
        archive_path, sum(counts.values()), len(batches),
    )
    return ExportResult(
        archive_path=archive_path,
        record_counts=counts,
        batches=batches,
        encrypted=bool(options.password),
        warnings=warnings,
    )


def export_snapshot(
    store: DocumentStore,
    ledger: JobLedger,
    scope: AccessScope,
    request: SnapshotRequest,
    options: Optional[ExportOptions] = None,
) -> tuple[ExportJob, ExportResult]:
    """Export a snapshot on behalf of a caller, recorded in the ledger.

    The scope check runs before any job is created, so access errors
    surface to the caller directly.

    Raises:
        AccessDeniedError: Requested outbreaks are outside the scope.
        NoDataError: Nothing to export (the job still completes).
    """
    outbreak_ids = resolve_outbreak_ids(scope, request)
    collections = resolve_collections(request)

    options = (options or ExportOptions()).model_copy(deep=True)
    options.outbreak_ids = outbreak_ids
    options.location_ids = scope.location_ids
    options.from_date = request.from_date or options.from_date
    options.where = request.where or options.where
    options.exclude_deleted = not request.include_deleted
    options.active_subset = request.active_subset or options.active_subset

    job = ledger.create_export_job(
        ExportJob(
            requested_scope=request.model_dump(mode="json", exclude_none=True),
            outbreak_ids=outbreak_ids,
        )
    )
    logger.info("Export %s: started for %d collection(s)", job.id, len(collections))

    try:
        result = export_collections(store, collections, options)
    except NoDataError as exc:
        ledger.finish_export_job(job.id, JobStatus.SUCCESS, error=str(exc))
        raise
    except Exception as exc:
        logger.error("Export %s failed: %s", job.id, exc)
        ledger.finish_export_job(job.id, JobStatus.FAILED, error=render_error(exc))
        raise

    ledger.finish_export_job(
        job.id, JobStatus.SUCCESS, result_location=str(result.archive_path),
    )
    job = ledger.get_export_job(job.id) or job
    return job, result
