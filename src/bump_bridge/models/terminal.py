from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TerminalStatus(str, Enum):
    """Terminal liveness states."""

    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    CLOSED = "closed"


class TerminalInfo(BaseModel):
    """Terminal listing entry - one PTY-backed shell session."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(..., description="Unique terminal identifier")
    log_path: str = Field(..., description="Append-only log file for this terminal")
    title: str = Field(..., description="Derived terminal title")
    alive: bool = Field(..., description="Whether the shell process is running")
    status: TerminalStatus = Field(..., description="Current terminal status")
    pid: Optional[int] = Field(None, description="Shell process id")
