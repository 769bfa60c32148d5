"""Shared utilities for all CLI command modules.

Provides the Rich console instance, status formatting and the home /
config loading every command starts with.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from rich.console import Console

from .. import SYNC_HOME
from ..config import NodeConfig, load_config, setup_logging
from ..models import JobStatus

console = Console()
logger = logging.getLogger("casesync.cli")


def status_icon(status: JobStatus) -> str:
    """Map a job status to Rich markup."""
    return {
        JobStatus.IN_PROGRESS: "[bold cyan]IN PROGRESS[/]",
        JobStatus.SUCCESS: "[bold green]SUCCESS[/]",
        JobStatus.SUCCESS_WITH_WARNINGS: "[bold yellow]WARNINGS[/]",
        JobStatus.FAILED: "[bold red]FAILED[/]",
    }.get(status, "[dim]UNKNOWN[/]")


def open_home(home: str, verbose: bool = False) -> tuple[Path, NodeConfig]:
    """Resolve an initialized home, set up logging and load its config.

    Exits with status 1 if the node was never initialized.
    """
    home_path = Path(home).expanduser()
    if not home_path.exists():
        console.print("[bold red]No node found.[/] Run casesync init first.")
        sys.exit(1)
    setup_logging(home_path, verbose=verbose)
    return home_path, load_config(home_path)


def fail(message: str) -> None:
    console.print(f"\n  [red]Error:[/] {message}\n")
    sys.exit(1)


__all__ = ["SYNC_HOME", "console", "fail", "logger", "open_home", "status_icon"]
