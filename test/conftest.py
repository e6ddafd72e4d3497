"""Shared fixtures: a scripted ACP agent run with the current interpreter."""

import os
import sys
from pathlib import Path

import pytest

FAKE_AGENT = Path(__file__).parent / "fixtures" / "fake_acp_agent.py"


@pytest.fixture
def fake_agent_command():
    """Command line that launches the scripted ACP agent."""
    return [sys.executable, str(FAKE_AGENT)]


@pytest.fixture
def fake_agent_env():
    """Build an environment for the scripted agent with extra knobs set."""

    def build(**knobs):
        env = dict(os.environ)
        env.update({name: "1" for name, enabled in knobs.items() if enabled})
        return env

    return build
