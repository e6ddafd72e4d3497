"""Auth command for the bump CLI."""

import click

from bump_bridge.providers.agent_cli import check_auth, resolve_agent_path


@click.command()
def auth():
    """Check whether the agent CLI is logged in."""
    click.echo(f"Agent binary: {resolve_agent_path()}")
    status = check_auth()
    if status.authenticated:
        click.echo(f"Logged in as {status.email}")
    else:
        raise click.ClickException("Not logged in. Run the agent's login command first.")
