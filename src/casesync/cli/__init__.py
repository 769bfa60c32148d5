"""
casesync CLI -- node data sync from the command line.

The main Click group is defined here and every command group is
registered from its own module.

Entry point: casesync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="casesync")
def main():
    """casesync -- snapshot export, import and peer sync."""


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .init_cmd import register_init_commands
from .snapshot import register_snapshot_commands
from .sync_cmd import register_sync_commands
from .peer import register_peer_commands
from .jobs import register_jobs_commands
from .serve import register_serve_commands

register_init_commands(main)
register_snapshot_commands(main)
register_sync_commands(main)
register_peer_commands(main)
register_jobs_commands(main)
register_serve_commands(main)
