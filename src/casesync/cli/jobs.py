"""Jobs command: list export and sync jobs from the ledger."""

from __future__ import annotations

import json

import click
from rich.table import Table

from ._common import SYNC_HOME, console, open_home, status_icon
from ..ledger import JobLedger


def register_jobs_commands(main: click.Group) -> None:
    """Register the jobs command."""

    @main.command()
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--kind", type=click.Choice(["export", "sync"]), default="export")
    @click.option("--limit", default=20, help="How many jobs to show.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def jobs(home, kind, limit, json_out):
        """Show recent jobs from the ledger."""
        home_path, _config = open_home(home)
        ledger = JobLedger(home_path)
        entries = ledger.list_export_jobs() if kind == "export" else ledger.list_sync_jobs()
        entries = entries[:limit]

        if json_out:
            click.echo(json.dumps([j.model_dump(mode="json") for j in entries], indent=2))
            return

        console.print()
        if not entries:
            console.print(f"  [dim]No {kind} jobs yet.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                      title=f"{kind.capitalize()} Jobs ({len(entries)})")
        table.add_column("ID", style="dim")
        table.add_column("Started", style="dim")
        table.add_column("Status")
        table.add_column("Details")
        for job in entries:
            if kind == "export":
                details = job.result_location or job.error or ""
            else:
                details = f"{job.direction.value} {job.peer_name or ''}".strip()
            table.add_row(
                job.id[:12],
                job.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                status_icon(job.status),
                details,
            )
        console.print(table)
        console.print()
