"""Shared route helpers: component lookup and error mapping."""

import logging

from fastapi import HTTPException, Request, status

from bump_bridge.core.agent_manager import AgentSessionManager
from bump_bridge.core.terminal_manager import TerminalManager
from bump_bridge.errors import (
    BridgeError,
    InvalidAgentState,
    InvalidPermissionDecision,
    ProcessExited,
    ProtocolFailure,
    SpawnFailure,
    UnexpectedProtocolState,
    UnknownTarget,
)

logger = logging.getLogger(__name__)


def get_terminal_manager(request: Request) -> TerminalManager:
    return request.app.state.terminal_manager


def get_agent_manager(request: Request) -> AgentSessionManager:
    return request.app.state.agent_manager


def to_http_exception(error: Exception, action: str) -> HTTPException:
    """Map a bridge error to the HTTP status the API reports for it."""
    if isinstance(error, UnknownTarget):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)
    if isinstance(error, (InvalidAgentState, UnexpectedProtocolState, InvalidPermissionDecision)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.message)
    if isinstance(error, SpawnFailure):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}: {error.message}",
        )
    if isinstance(error, (ProcessExited, ProtocolFailure)):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error.message)

    if not isinstance(error, BridgeError):
        logger.error(f"Unexpected error while trying to {action}: {error}", exc_info=error)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(error)}",
    )
