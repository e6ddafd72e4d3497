"""Server command for the bump CLI."""

import click

from bump_bridge.api.server import main as run_server
from bump_bridge.constants import SERVER_HOST, SERVER_PORT


@click.command()
@click.option("--host", default=SERVER_HOST, show_default=True, help="Interface to bind")
@click.option("--port", default=SERVER_PORT, show_default=True, type=int, help="Port to listen on")
def server(host, port):
    """Run the bridge server."""
    try:
        run_server(host=host, port=port)
    except Exception as e:
        raise click.ClickException(str(e))
