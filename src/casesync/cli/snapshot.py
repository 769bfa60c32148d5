"""Snapshot commands: export, import."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.table import Table

from ._common import SYNC_HOME, console, fail, open_home, status_icon
from ..catalog import ExportType
from ..errors import NoDataError, WorkerError
from ..models import ExportResult, JobStatus, SyncJob
from ..sync.worker import WorkerRunner


def register_snapshot_commands(main: click.Group) -> None:
    """Register the export and import commands."""

    @main.command("export")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option(
        "--type", "export_type",
        type=click.Choice([t.value for t in ExportType]), default=None,
        help="Collection set to export (default: full).",
    )
    @click.option("--collection", "collections", multiple=True, help="Export only these collections.")
    @click.option("--outbreak", "outbreaks", multiple=True, help="Restrict to outbreak ID(s).")
    @click.option("--from-date", default=None, help="Only records updated at or after this ISO date.")
    @click.option("--where", default=None, help="Extra filter as JSON (loopback style).")
    @click.option("--include-deleted", is_flag=True, help="Include soft-deleted records.")
    @click.option("--include-empty", is_flag=True, help="Write empty collections too.")
    @click.option("--active-subset", is_flag=True, help="Only persons under active follow-up.")
    @click.option("--password", default=None, help="Encrypt every artifact with this secret.")
    @click.option("--chunk-size", type=int, default=None, help="Records per batch file.")
    @click.option("--output-dir", default=".", type=click.Path(), help="Where to write the snapshot.")
    @click.option("--verbose", "-v", is_flag=True)
    def export_cmd(home, export_type, collections, outbreaks, from_date, where,
                   include_deleted, include_empty, active_subset, password,
                   chunk_size, output_dir, verbose):
        """Export local collections into a snapshot archive."""
        home_path, config = open_home(home, verbose)

        request = {
            "export_type": export_type,
            "collections": list(collections),
            "from_date": from_date,
            "include_deleted": include_deleted,
            "active_subset": active_subset,
        }
        if outbreaks:
            request["outbreak_id"] = {"inq": list(outbreaks)}
        if where:
            try:
                request["where"] = json.loads(where)
            except json.JSONDecodeError as exc:
                fail(f"--where is not valid JSON: {exc}")

        runner = WorkerRunner(mode=config.sync.worker_mode)
        try:
            reply = runner.call(
                "snapshot",
                home=str(home_path),
                scope={},
                request=request,
                options={
                    "chunk_size": chunk_size or config.sync.chunk_size,
                    "include_empty": include_empty,
                    "password": password,
                    "output_dir": str(Path(output_dir).expanduser().resolve()),
                    "attachments_dir": str(config.attachments_root(home_path)),
                    "file_workers": config.sync.file_workers,
                    "node_name": config.node_name,
                },
            )
        except NoDataError as exc:
            console.print(f"\n  [yellow]{exc}[/]\n")
            return
        except WorkerError as exc:
            fail(str(exc))
        finally:
            runner.shutdown()

        result = ExportResult.model_validate(reply["result"])
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Collection", style="cyan")
        table.add_column("Records", justify="right")
        table.add_column("Batches", justify="right", style="dim")
        for name, count in result.record_counts.items():
            table.add_row(name, str(count), str(len(result.batches.get(name, []))))

        console.print()
        console.print(table)
        console.print(f"\n  [green]Snapshot:[/] {result.archive_path}")
        console.print(f"  Records: {result.total_records}  Encrypted: {'yes' if result.encrypted else 'no'}")
        for warning in result.warnings:
            console.print(f"  [yellow]Warning:[/] {warning}")
        console.print()

    @main.command("import")
    @click.argument("archive", type=click.Path(exists=True, dir_okay=False))
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--password", default=None, help="Secret the snapshot was encrypted with.")
    @click.option("--outbreak", "outbreaks", multiple=True, help="Only accept these outbreak ID(s).")
    @click.option("--keep", is_flag=True, help="Keep the unpacked work directory.")
    @click.option("--verbose", "-v", is_flag=True)
    def import_cmd(archive, home, password, outbreaks, keep, verbose):
        """Import a snapshot archive into the local store."""
        home_path, config = open_home(home, verbose)

        runner = WorkerRunner(mode=config.sync.worker_mode)
        try:
            reply = runner.call(
                "import",
                home=str(home_path),
                archive_path=str(Path(archive).resolve()),
                outbreak_ids=list(outbreaks),
                password=password,
                attachments_root=str(config.attachments_root(home_path)),
                decrypt_workers=config.sync.decrypt_workers,
                keep_files=keep,
            )
        except WorkerError as exc:
            fail(str(exc))
        finally:
            runner.shutdown()

        job = SyncJob.model_validate(reply)
        console.print(f"\n  Import {job.id[:12]}: {status_icon(job.status)}")
        for warning in job.warnings:
            console.print(f"  [yellow]Warning:[/] {warning}")
        if job.error and not job.warnings:
            console.print(f"  [red]{job.error}[/]")
        console.print()
        if job.status == JobStatus.FAILED:
            sys.exit(1)
