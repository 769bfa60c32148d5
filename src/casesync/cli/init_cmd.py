"""Init command: create a node home with a default configuration."""

from __future__ import annotations

from pathlib import Path

import click

from ._common import SYNC_HOME, console
from ..config import CONFIG_FILE, NodeConfig, load_config, save_config

HOME_DIRS = ("config", "db", "ledger", "logs", "attachments", "sync")


def register_init_commands(main: click.Group) -> None:
    """Register the init command."""

    @main.command()
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--node-name", default=None, help="Name this node reports to peers.")
    def init(home, node_name):
        """Create the node home directory and a default config."""
        home_path = Path(home).expanduser()
        for name in HOME_DIRS:
            (home_path / name).mkdir(parents=True, exist_ok=True)

        config_file = home_path / CONFIG_FILE
        config = load_config(home_path) if config_file.exists() else NodeConfig()
        if node_name:
            config.node_name = node_name
        save_config(config, home_path)

        console.print(f"\n  [green]Node ready:[/] [cyan]{config.node_name}[/]")
        console.print(f"  Home: [dim]{home_path}[/]")
        console.print(f"  Config: [dim]{config_file}[/]\n")
