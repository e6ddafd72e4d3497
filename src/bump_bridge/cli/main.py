"""Main CLI entry point for the bump bridge."""

import click

from bump_bridge.cli.commands.auth import auth
from bump_bridge.cli.commands.info import info
from bump_bridge.cli.commands.server import server


@click.group()
def cli():
    """bump: local terminal and coding agent bridge."""
    pass


# Register commands
cli.add_command(server)
cli.add_command(info)
cli.add_command(auth)


if __name__ == "__main__":
    cli()
