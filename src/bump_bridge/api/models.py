"""
API Request/Response Models

These are API-specific models for request/response validation,
separate from domain models in bump_bridge/models/ folder.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator


# Terminal API Models
class OpenTerminalRequest(BaseModel):
    """Request model for opening a terminal."""
    cwd: Optional[str] = Field(None, description="Working directory, defaults to the home directory")


class OpenTerminalResponse(BaseModel):
    id: str = Field(..., description="Terminal identifier")


class TerminalInputRequest(BaseModel):
    """Request model for sending raw input to a terminal."""
    data: str = Field(..., description="Raw input, including control characters")


class TerminalResizeRequest(BaseModel):
    cols: int = Field(..., description="Columns")
    rows: int = Field(..., description="Rows")


class SnapshotResponse(BaseModel):
    terminal_id: str
    snapshot: str = Field(..., description="Bounded buffer contents")


class CwdResponse(BaseModel):
    terminal_id: str
    cwd: str


class BranchResponse(BaseModel):
    terminal_id: str
    branch: Optional[str] = Field(None, description="Git branch or short sha, None outside a repository")


# Agent API Models
class StartAgentRequest(BaseModel):
    workspace_path: str = Field(..., description="Workspace root the agent session is scoped to", min_length=1)


class PromptRequest(BaseModel):
    """Request model for one agent turn."""
    text: str = Field(..., description="User prompt", min_length=1)
    terminal_ids: Optional[List[str]] = Field(
        None, description="Terminals whose output is sent as context, defaults to all"
    )


class AgentStatusResponse(BaseModel):
    status: str = Field(..., description="idle or active")
    state: str = Field(..., description="Agent session state")


class PermissionResponseRequest(BaseModel):
    """A decision for the pending permission request."""
    option_id: Optional[str] = Field(None, description="Selected option id")
    cancelled: bool = Field(False, description="Cancel the request instead of selecting")

    @model_validator(mode="after")
    def _one_of(self) -> "PermissionResponseRequest":
        if self.cancelled == (self.option_id is not None):
            raise ValueError("Provide exactly one of option_id or cancelled")
        return self
