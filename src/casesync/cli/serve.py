"""Serve command: run the sync API for downstream nodes."""

from __future__ import annotations

import click

from ._common import SYNC_HOME, console, fail, open_home


def register_serve_commands(main: click.Group) -> None:
    """Register the serve command."""

    @main.command()
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    @click.option("--host", default="127.0.0.1", help="Bind address.")
    @click.option("--port", default=8000, help="Bind port.")
    @click.option("--verbose", "-v", is_flag=True)
    def serve(home, host, port, verbose):
        """Accept snapshots from downstream nodes until interrupted."""
        from ..server import SyncServer

        home_path, config = open_home(home, verbose)
        if not config.client_applications:
            console.print("  [yellow]No client applications configured; every request will be refused.[/]")

        server = SyncServer(home_path, config=config, host=host, port=port)
        console.print(f"\n  Serving sync API on [cyan]http://{host}:{port}[/] (Ctrl+C to stop)\n")
        try:
            server.run_forever()
        except OSError as exc:
            fail(f"Could not start server: {exc}")
