"""Peer commands: add, list, check."""

from __future__ import annotations

import json

import click
from rich.table import Table

from ._common import SYNC_HOME, console, fail, open_home
from ..config import save_config
from ..errors import PeerConfigError, PeerRequestError
from ..models import PeerCredentials, PeerDescriptor, normalize_url
from ..sync.client import PeerClient


def register_peer_commands(main: click.Group) -> None:
    """Register the peer command group."""

    @main.group()
    def peer():
        """Upstream servers this node syncs with."""

    @peer.command("add")
    @click.argument("url")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--name", default="", help="Display name.")
    @click.option("--client-id", required=True, help="Client application ID issued by the peer.")
    @click.option("--client-secret", required=True, help="Client application secret.")
    @click.option("--no-encrypt", is_flag=True, help="Send snapshots unencrypted.")
    @click.option("--disabled", is_flag=True, help="Register with sync disabled.")
    @click.option("--timeout", default=0.0, help="Request timeout in seconds (0 = none).")
    @click.option("--sync-on-change", is_flag=True, help="Sync whenever local data changes.")
    def peer_add(url, home, name, client_id, client_secret, no_encrypt, disabled,
                 timeout, sync_on_change):
        """Add or replace an upstream server."""
        home_path, config = open_home(home)
        descriptor = PeerDescriptor(
            url=url,
            name=name,
            credentials=PeerCredentials(client_id=client_id, client_secret=client_secret),
            sync_enabled=not disabled,
            auto_encrypt=not no_encrypt,
            timeout=timeout,
            sync_on_every_change=sync_on_change,
        )
        config.upstream_servers = [
            p for p in config.upstream_servers if p.normalized_url != normalize_url(url)
        ] + [descriptor]
        save_config(config, home_path)
        console.print(f"\n  [green]Added upstream server:[/] [cyan]{descriptor.display_name}[/]\n")

    @peer.command("list")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def peer_list(home, json_out):
        """List configured upstream servers."""
        _home_path, config = open_home(home)
        peers = config.upstream_servers

        if json_out:
            data = [p.model_dump(mode="json", exclude={"credentials"}) for p in peers]
            click.echo(json.dumps(data, indent=2))
            return

        console.print()
        if not peers:
            console.print("  [dim]No upstream servers configured.[/]")
            console.print("  Add one: casesync peer add URL --client-id ID --client-secret SECRET\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2),
                      title=f"Upstream Servers ({len(peers)})")
        table.add_column("Name", style="cyan")
        table.add_column("URL", style="dim")
        table.add_column("Sync")
        table.add_column("Encrypt")
        for p in peers:
            table.add_row(
                p.display_name,
                p.url,
                "[green]on[/]" if p.sync_enabled else "[red]off[/]",
                "yes" if p.auto_encrypt else "no",
            )
        console.print(table)
        console.print()

    @peer.command("check")
    @click.argument("url")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def peer_check(url, home):
        """Check that an upstream server is reachable and accepts our credentials."""
        _home_path, config = open_home(home)
        try:
            descriptor = config.find_peer(url)
            client = PeerClient(descriptor)
            version = client.get_server_version()
            outbreaks = client.get_available_outbreak_ids()
        except (PeerConfigError, PeerRequestError) as exc:
            fail(str(exc))

        console.print(f"\n  [green]Reachable:[/] [cyan]{descriptor.display_name}[/]")
        console.print(f"  Version: {version.get('version', 'unknown')}")
        console.print(f"  Outbreaks: {', '.join(outbreaks) or 'all'}\n")
