"""Info command for the bump CLI."""

import click
import requests

from bump_bridge.constants import LOG_DIR, LOG_FILE_NAME, SERVER_HOST, SERVER_PORT, TERMINALS_DIR


@click.command()
@click.option("--host", default=SERVER_HOST, help="Bridge server host")
@click.option("--port", default=SERVER_PORT, type=int, help="Bridge server port")
def info(host, port):
    """Display information about a running bridge."""
    click.echo(f"Server log: {LOG_DIR / LOG_FILE_NAME}")
    click.echo(f"Terminal logs: {TERMINALS_DIR}")

    base_url = f"http://{host}:{port}"
    try:
        health = requests.get(f"{base_url}/health", timeout=5)
        health.raise_for_status()
        terminals = requests.get(f"{base_url}/terminals", timeout=5).json()
        agent = requests.get(f"{base_url}/agent/status", timeout=5).json()
    except requests.exceptions.RequestException:
        click.echo(f"Server: not reachable at {base_url}")
        return

    click.echo(f"Server: running at {base_url} (version {health.json().get('version')})")
    click.echo(f"Open terminals: {len(terminals)}")
    for terminal in terminals:
        state = "alive" if terminal.get("alive") else terminal.get("status")
        click.echo(f"  {terminal['id']}  {state}  {terminal.get('title', '')}")
    click.echo(f"Agent: {agent.get('status')} ({agent.get('state')})")
