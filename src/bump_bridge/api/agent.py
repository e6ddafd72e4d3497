"""
Agent API endpoints for the agent session, turns and permission decisions
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, status
from bump_bridge.api.deps import get_agent_manager, get_terminal_manager, to_http_exception
from bump_bridge.api.models import (
    AgentStatusResponse, PermissionResponseRequest, PromptRequest, StartAgentRequest
)
from bump_bridge.core.agent_manager import AgentSessionManager
from bump_bridge.core.terminal_manager import TerminalManager
from bump_bridge.models.agent import PermissionDecision, PermissionRequest, PromptResult, ToolCall

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent", tags=["agent"])


def _status(manager: AgentSessionManager) -> AgentStatusResponse:
    return AgentStatusResponse(status=manager.status().value, state=manager.state.value)


@router.post("/start", response_model=AgentStatusResponse)
async def start_agent(
    request: StartAgentRequest, manager: AgentSessionManager = Depends(get_agent_manager)
) -> AgentStatusResponse:
    """Start an agent session, stopping any existing one first."""
    try:
        await manager.start(request.workspace_path)
        return _status(manager)
    except Exception as e:
        raise to_http_exception(e, "start agent")


@router.post("/stop", response_model=AgentStatusResponse)
async def stop_agent(manager: AgentSessionManager = Depends(get_agent_manager)) -> AgentStatusResponse:
    try:
        await manager.stop()
        return _status(manager)
    except Exception as e:
        raise to_http_exception(e, "stop agent")


@router.post("/prompt", response_model=PromptResult)
async def prompt_agent(
    request: PromptRequest,
    manager: AgentSessionManager = Depends(get_agent_manager),
    terminals: TerminalManager = Depends(get_terminal_manager),
) -> PromptResult:
    """Run one turn with terminal output attached as context."""
    try:
        snapshots = terminals.snapshots(request.terminal_ids)
        return await manager.prompt(request.text, snapshots)
    except Exception as e:
        raise to_http_exception(e, "prompt agent")


@router.post("/cancel", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_agent(manager: AgentSessionManager = Depends(get_agent_manager)) -> None:
    try:
        await manager.cancel()
    except Exception as e:
        raise to_http_exception(e, "cancel agent turn")


@router.get("/status", response_model=AgentStatusResponse)
async def agent_status(manager: AgentSessionManager = Depends(get_agent_manager)) -> AgentStatusResponse:
    return _status(manager)


@router.get("/permission", response_model=Optional[PermissionRequest])
async def pending_permission(
    manager: AgentSessionManager = Depends(get_agent_manager),
) -> Optional[PermissionRequest]:
    """The pending permission request, or null."""
    return manager.pending_permission()


@router.post("/permission", response_model=PermissionRequest)
async def respond_permission(
    request: PermissionResponseRequest, manager: AgentSessionManager = Depends(get_agent_manager)
) -> PermissionRequest:
    """Answer the pending permission request; returns the request that was answered."""
    try:
        return manager.respond_permission(
            PermissionDecision(option_id=request.option_id, cancelled=request.cancelled)
        )
    except Exception as e:
        raise to_http_exception(e, "respond to permission request")


@router.get("/tool-calls", response_model=List[ToolCall])
async def list_tool_calls(manager: AgentSessionManager = Depends(get_agent_manager)) -> List[ToolCall]:
    return manager.tool_calls()
