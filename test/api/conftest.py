"""Fixtures for API tests: an app wired to mocked managers."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from bump_bridge.api.server import create_app
from bump_bridge.core.events import EventBus
from bump_bridge.models.agent import AgentState, AgentStatus


@pytest.fixture
def terminal_manager():
    manager = MagicMock()
    manager.open = AsyncMock(return_value="term-1")
    manager.close = AsyncMock()
    manager.close_all = AsyncMock()
    manager.cwd = AsyncMock(return_value="/home/user/project")
    manager.branch = AsyncMock(return_value="main")
    manager.snapshots.return_value = []
    return manager


@pytest.fixture
def agent_manager():
    manager = MagicMock()
    for name in ("start", "stop", "prompt", "cancel", "shutdown"):
        setattr(manager, name, AsyncMock())
    manager.status.return_value = AgentStatus.IDLE
    manager.state = AgentState.IDLE
    manager.pending_permission.return_value = None
    manager.tool_calls.return_value = []
    return manager


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def app(event_bus, terminal_manager, agent_manager):
    return create_app(event_bus=event_bus, terminal_manager=terminal_manager, agent_manager=agent_manager)


@pytest.fixture
def client(app):
    """Create a test client."""
    return TestClient(app)
