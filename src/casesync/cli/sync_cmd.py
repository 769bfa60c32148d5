"""Sync commands: run, request, status."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ._common import SYNC_HOME, console, fail, open_home, status_icon
from ..errors import PeerConfigError, SyncInProgressError
from ..ledger import JobLedger
from ..models import JobStatus
from ..sync.orchestrator import PeerSyncOrchestrator


def _print_job(ledger: JobLedger, job_id: str) -> bool:
    job = ledger.get_sync_job(job_id)
    if job is None:
        console.print(f"  [red]Sync {job_id} missing from the ledger[/]")
        return False
    console.print(f"\n  Sync {job.id[:12]} with [cyan]{job.peer_name}[/]: {status_icon(job.status)}")
    if job.information_start_date:
        console.print(f"  Changes since: [dim]{job.information_start_date.isoformat()}[/]")
    for warning in job.warnings:
        console.print(f"  [yellow]Warning:[/] {warning}")
    if job.error and not job.warnings:
        console.print(f"  [red]{job.error}[/]")
    console.print()
    return job.status != JobStatus.FAILED


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Peer sync -- push local changes to upstream servers."""

    @sync.command("run")
    @click.argument("peer_url")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--force", is_flag=True, help="Start even if a sync with this peer is running.")
    @click.option("--verbose", "-v", is_flag=True)
    def sync_run(peer_url, home, force, verbose):
        """Sync with an upstream server and wait for the result."""
        home_path, config = open_home(home, verbose)
        orchestrator = PeerSyncOrchestrator(home_path, config=config)
        try:
            job_id = orchestrator.sync_with_upstream(peer_url, force=force)
        except (PeerConfigError, SyncInProgressError) as exc:
            fail(str(exc))

        console.print(f"\n  Started sync [dim]{job_id}[/]...")
        orchestrator.wait()
        orchestrator.runner.shutdown()
        if not _print_job(orchestrator.ledger, job_id):
            sys.exit(1)

    @sync.command("request")
    @click.argument("peer_url")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--verbose", "-v", is_flag=True)
    def sync_request(peer_url, home, verbose):
        """Sync on change: start a sync, or defer it if one is running."""
        home_path, config = open_home(home, verbose)
        orchestrator = PeerSyncOrchestrator(home_path, config=config)
        try:
            job_id = orchestrator.request_sync(peer_url)
        except PeerConfigError as exc:
            fail(str(exc))

        if job_id is None:
            console.print("\n  [yellow]Sync already running; marked as pending.[/]\n")
            return
        orchestrator.wait()
        orchestrator.runner.shutdown()
        _print_job(orchestrator.ledger, job_id)

    @sync.command("status")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--peer", "peer_url", default=None, help="Only syncs with this peer URL.")
    @click.option("--limit", default=10, help="How many jobs to show.")
    def sync_status(home, peer_url, limit):
        """Show recent sync jobs."""
        home_path, _config = open_home(home)
        jobs = JobLedger(home_path).list_sync_jobs(peer_url=peer_url)[:limit]

        console.print()
        if not jobs:
            console.print("  [dim]No syncs yet.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                      title=f"Sync Jobs ({len(jobs)})")
        table.add_column("ID", style="dim")
        table.add_column("Direction")
        table.add_column("Peer", style="cyan")
        table.add_column("Started", style="dim")
        table.add_column("Status")
        for job in jobs:
            table.add_row(
                job.id[:12],
                job.direction.value,
                job.peer_name or job.peer_url or "-",
                job.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                status_icon(job.status),
            )
        console.print(table)
        console.print()
