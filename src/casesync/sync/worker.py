"""
Worker runner -- export/import off the request path.

Callers never run the pipelines directly. They send a ``WorkerMessage``
naming a task and its keyword arguments; the worker looks the task up,
runs it, and answers with a ``WorkerReply``. Tasks take plain values
(home path, dumped option models) so the same message works for a
thread pool and a process pool.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from ..errors import ConfigError, NoDataError, WorkerError, render_error
from ..ledger import JobLedger
from ..models import ExportOptions
from ..scope import AccessScope, SnapshotRequest
from ..store import open_store
from .exporter import export_collections, export_snapshot
from .importer import import_and_apply

logger = logging.getLogger("casesync.sync.worker")

WORKER_MODES = ("thread", "process")


class WorkerMessage(BaseModel):
    """A task request: function name plus keyword arguments."""

    fn: str
    kwargs: dict[str, Any] = Field(default_factory=dict)


class WorkerReply(BaseModel):
    """A task answer. ``error_type`` is the exception class name on failure."""

    ok: bool
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def export_task(home: str, collections: list[str], options: dict) -> dict:
    """Run the export pipeline against the store under ``home``."""
    store = open_store(Path(home))
    result = export_collections(store, collections, ExportOptions(**options))
    return result.model_dump(mode="json")


def snapshot_task(home: str, scope: dict, request: dict, options: dict) -> dict:
    """Export a snapshot for an authenticated caller, recorded in the ledger."""
    home_path = Path(home)
    job, result = export_snapshot(
        open_store(home_path),
        JobLedger(home_path),
        AccessScope(**scope),
        SnapshotRequest(**request),
        ExportOptions(**options),
    )
    return {"job": job.model_dump(mode="json"), "result": result.model_dump(mode="json")}


def import_task(
    home: str,
    archive_path: str,
    outbreak_ids: Optional[list[str]] = None,
    password: Optional[str] = None,
    attachments_root: Optional[str] = None,
    decrypt_workers: int = 10,
    keep_files: bool = False,
    remove_archive: bool = False,
    job_id: Optional[str] = None,
) -> dict:
    """Import and merge a received snapshot, recorded as an inbound job."""
    home_path = Path(home)
    ledger = JobLedger(home_path)
    job = import_and_apply(
        open_store(home_path),
        ledger,
        Path(archive_path),
        outbreak_ids=outbreak_ids,
        password=password,
        attachments_root=Path(attachments_root) if attachments_root else None,
        decrypt_workers=decrypt_workers,
        keep_files=keep_files,
        remove_archive=remove_archive,
        job=ledger.get_sync_job(job_id) if job_id else None,
    )
    return job.model_dump(mode="json")


TASKS: dict[str, Callable[..., Any]] = {
    "export": export_task,
    "snapshot": snapshot_task,
    "import": import_task,
}


def handle_message(message: WorkerMessage) -> WorkerReply:
    """Dispatch one message. Never raises; failures become error replies."""
    task = TASKS.get(message.fn)
    if task is None:
        return WorkerReply(
            ok=False, error=f"Unknown worker task '{message.fn}'", error_type="WorkerError",
        )
    try:
        return WorkerReply(ok=True, result=task(**message.kwargs))
    except NoDataError as exc:
        return WorkerReply(ok=False, error=str(exc), error_type="NoDataError")
    except Exception as exc:
        logger.error("Worker task %s failed: %s", message.fn, render_error(exc))
        return WorkerReply(ok=False, error=render_error(exc), error_type=type(exc).__name__)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class WorkerRunner:
    """Pool that executes worker tasks.

    Args:
        mode: ``thread`` or ``process``.
        max_workers: Pool size.
    """

    def __init__(self, mode: str = "thread", max_workers: int = 2):
        if mode not in WORKER_MODES:
            raise ConfigError(f"Unknown worker mode '{mode}'")
        self.mode = mode
        if mode == "process":
            self._executor = ProcessPoolExecutor(max_workers=max_workers)
        else:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="casesync-worker",
            )

    def submit(self, fn: str, **kwargs: Any) -> "Future[WorkerReply]":
        message = WorkerMessage(fn=fn, kwargs=kwargs)
        logger.debug("Submitting worker task %s", fn)
        return self._executor.submit(handle_message, message)

    def call(self, fn: str, timeout: Optional[float] = None, **kwargs: Any) -> Any:
        """Run a task and wait for its result.

        Raises:
            NoDataError: The task found nothing to export.
            WorkerError: Any other task failure.
        """
        reply = self.submit(fn, **kwargs).result(timeout=timeout)
        if reply.ok:
            return reply.result
        if reply.error_type == "NoDataError":
            raise NoDataError(reply.error or "No data to export")
        raise WorkerError(reply.error or "Worker task failed", reply.error_type or "")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
