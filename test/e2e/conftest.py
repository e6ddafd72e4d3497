"""Shared fixtures for end-to-end tests.

E2E tests require:
- A running bridge server (bump server, on localhost:9890 by default)
- The agent CLI installed and logged in

Run with: pytest -m e2e test/e2e/ -v
"""

import pytest
import requests

from bump_bridge.constants import API_BASE_URL


@pytest.fixture(scope="session", autouse=True)
def require_bridge_server():
    """Skip all E2E tests if the bridge server is not reachable."""
    try:
        resp = requests.get(f"{API_BASE_URL}/health", timeout=5)
        if resp.status_code != 200:
            pytest.skip("Bridge server not healthy")
    except requests.ConnectionError:
        pytest.skip("Bridge server not running, start with: bump server")


@pytest.fixture()
def require_agent_login():
    """Skip test if the agent CLI is missing or logged out."""
    resp = requests.get(f"{API_BASE_URL}/auth", timeout=30)
    if not resp.json().get("authenticated"):
        pytest.skip("Agent CLI not installed or not logged in")
