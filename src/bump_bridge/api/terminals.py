"""
Terminal API endpoints for terminal lifecycle and terminal I/O
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, status
from bump_bridge.api.deps import get_terminal_manager, to_http_exception
from bump_bridge.api.models import (
    BranchResponse, CwdResponse, OpenTerminalRequest, OpenTerminalResponse,
    SnapshotResponse, TerminalInputRequest, TerminalResizeRequest
)
from bump_bridge.core.terminal_manager import TerminalManager
from bump_bridge.models.terminal import TerminalInfo

logger = logging.getLogger(__name__)

router = APIRouter(tags=["terminals"])


@router.post("/terminals", response_model=OpenTerminalResponse, status_code=status.HTTP_201_CREATED)
async def open_terminal(
    request: Optional[OpenTerminalRequest] = None,
    manager: TerminalManager = Depends(get_terminal_manager),
) -> OpenTerminalResponse:
    """Open a new terminal running a login shell."""
    try:
        terminal_id = await manager.open(request.cwd if request else None)
        return OpenTerminalResponse(id=terminal_id)
    except Exception as e:
        raise to_http_exception(e, "open terminal")


@router.get("/terminals", response_model=List[TerminalInfo])
async def list_terminals(manager: TerminalManager = Depends(get_terminal_manager)) -> List[TerminalInfo]:
    """List all open terminals."""
    return manager.list_terminals()


@router.get("/terminals/{terminal_id}", response_model=TerminalInfo)
async def get_terminal(terminal_id: str, manager: TerminalManager = Depends(get_terminal_manager)) -> TerminalInfo:
    try:
        return manager.get(terminal_id).info()
    except Exception as e:
        raise to_http_exception(e, "get terminal")


@router.post("/terminals/{terminal_id}/input", status_code=status.HTTP_204_NO_CONTENT)
async def write_terminal(
    terminal_id: str,
    request: TerminalInputRequest,
    manager: TerminalManager = Depends(get_terminal_manager),
) -> None:
    """Send raw input. Input to an unknown terminal is dropped."""
    manager.write(terminal_id, request.data)


@router.post("/terminals/{terminal_id}/resize", status_code=status.HTTP_204_NO_CONTENT)
async def resize_terminal(
    terminal_id: str,
    request: TerminalResizeRequest,
    manager: TerminalManager = Depends(get_terminal_manager),
) -> None:
    manager.resize(terminal_id, request.cols, request.rows)


@router.delete("/terminals/{terminal_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_terminal(terminal_id: str, manager: TerminalManager = Depends(get_terminal_manager)) -> None:
    """Close a terminal. Closing an unknown terminal is a no-op."""
    try:
        await manager.close(terminal_id)
    except Exception as e:
        raise to_http_exception(e, "close terminal")


@router.get("/terminals/{terminal_id}/snapshot", response_model=SnapshotResponse)
async def get_snapshot(terminal_id: str, manager: TerminalManager = Depends(get_terminal_manager)) -> SnapshotResponse:
    try:
        return SnapshotResponse(terminal_id=terminal_id, snapshot=manager.snapshot(terminal_id))
    except Exception as e:
        raise to_http_exception(e, "get terminal snapshot")


@router.get("/terminals/{terminal_id}/cwd", response_model=CwdResponse)
async def get_cwd(terminal_id: str, manager: TerminalManager = Depends(get_terminal_manager)) -> CwdResponse:
    try:
        return CwdResponse(terminal_id=terminal_id, cwd=await manager.cwd(terminal_id))
    except Exception as e:
        raise to_http_exception(e, "get terminal cwd")


@router.get("/terminals/{terminal_id}/branch", response_model=BranchResponse)
async def get_branch(terminal_id: str, manager: TerminalManager = Depends(get_terminal_manager)) -> BranchResponse:
    try:
        return BranchResponse(terminal_id=terminal_id, branch=await manager.branch(terminal_id))
    except Exception as e:
        raise to_http_exception(e, "get terminal branch")
