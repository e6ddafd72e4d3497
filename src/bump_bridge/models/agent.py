"""Agent session domain models.

Tool calls, permission requests, and turn results as tracked by the agent
session. Wire payloads from the agent use camelCase keys; the ``from_wire``
constructors translate them.
"""

import re
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# "Run `ls -la`" -> title "Run", subtitle "ls -la"
TITLE_PATTERN = re.compile(r"^(.+?)\s+`([^`]+)`$")


class AgentState(str, Enum):
    """Agent session lifecycle states."""

    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    PROMPTING = "prompting"
    AWAITING_PERMISSION = "awaiting_permission"
    STOPPED = "stopped"


class AgentStatus(str, Enum):
    """Coarse agent status reported to the UI."""

    IDLE = "idle"
    ACTIVE = "active"


class ToolCallKind(str, Enum):
    READ = "read"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    SEARCH = "search"
    EXECUTE = "execute"
    THINK = "think"
    FETCH = "fetch"
    ASK = "ask"
    SWITCH_MODE = "switch_mode"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ToolCallKind":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class ToolCallStatus(str, Enum):
    """Tool call status. Completed and failed are terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ToolCallStatus":
        if value in (cls.COMPLETED.value, cls.FAILED.value):
            return cls(value)
        return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return self is not ToolCallStatus.PENDING


class ToolCall(BaseModel):
    """A discrete action requested by the agent."""

    tool_call_id: str = Field(..., description="Agent-assigned tool call id")
    title: str = Field(..., description="Tool call title")
    subtitle: Optional[str] = Field(None, description="Backtick-quoted detail split off the title")
    kind: ToolCallKind = Field(ToolCallKind.OTHER, description="Tool call kind")
    status: ToolCallStatus = Field(ToolCallStatus.PENDING, description="Tool call status")
    content: Optional[List[Any]] = Field(None, description="Text or diff content blocks")
    raw_input: Any = Field(None, description="Tool input, any JSON value")
    raw_output: Any = Field(None, description="Tool output, any JSON value; set once the call finishes")
    timestamp: float = Field(default_factory=time.time, description="Creation time")

    @staticmethod
    def split_title(raw_title: str) -> "tuple[str, Optional[str]]":
        match = TITLE_PATTERN.match(raw_title or "")
        if match:
            return match.group(1), match.group(2)
        return raw_title or "", None

    @classmethod
    def from_wire(cls, update: Dict[str, Any]) -> "ToolCall":
        """Build a tool call from a ``tool_call`` session update."""
        title, subtitle = cls.split_title(update.get("title", ""))
        return cls(
            tool_call_id=update["toolCallId"],
            title=title,
            subtitle=subtitle,
            kind=ToolCallKind.parse(update.get("kind")),
            status=ToolCallStatus.parse(update.get("status")),
            content=update.get("content"),
            raw_input=update.get("rawInput"),
        )


class PermissionOptionKind(str, Enum):
    ALLOW_ONCE = "allow_once"
    ALLOW_ALWAYS = "allow_always"
    REJECT_ONCE = "reject_once"
    REJECT_ALWAYS = "reject_always"


class PermissionOption(BaseModel):
    option_id: str = Field(..., description="Option id echoed back in the decision")
    name: str = Field(..., description="Human-readable label")
    kind: PermissionOptionKind = Field(..., description="Decision kind")


class ToolCallRef(BaseModel):
    tool_call_id: str
    title: str = ""
    kind: ToolCallKind = ToolCallKind.OTHER


class PermissionRequest(BaseModel):
    """An agent-initiated approval request awaiting a user decision."""

    request_id: Any = Field(..., description="JSON-RPC id of the agent's request")
    tool_call: ToolCallRef
    options: List[PermissionOption]

    @classmethod
    def from_wire(cls, request_id: Any, params: Dict[str, Any]) -> "PermissionRequest":
        tool_call = params.get("toolCall") or {}
        return cls(
            request_id=request_id,
            tool_call=ToolCallRef(
                tool_call_id=tool_call.get("toolCallId", ""),
                title=tool_call.get("title") or "",
                kind=ToolCallKind.parse(tool_call.get("kind")),
            ),
            options=[
                PermissionOption(option_id=opt["optionId"], name=opt.get("name", ""), kind=opt["kind"])
                for opt in params.get("options", [])
            ],
        )

    def find_option(self, option_id: str) -> Optional[PermissionOption]:
        for option in self.options:
            if option.option_id == option_id:
                return option
        return None


class PermissionDecision(BaseModel):
    """A user's answer to a permission request: an option id or a cancellation."""

    option_id: Optional[str] = None
    cancelled: bool = False

    @model_validator(mode="after")
    def _one_of(self) -> "PermissionDecision":
        if self.cancelled == (self.option_id is not None):
            raise ValueError("Provide exactly one of option_id or cancelled")
        return self

    @classmethod
    def cancel(cls) -> "PermissionDecision":
        return cls(cancelled=True)

    @classmethod
    def select(cls, option_id: str) -> "PermissionDecision":
        return cls(option_id=option_id)

    def to_wire(self) -> Dict[str, Any]:
        if self.cancelled:
            return {"outcome": {"outcome": "cancelled"}}
        return {"outcome": {"outcome": "selected", "optionId": self.option_id}}


class PromptResult(BaseModel):
    """Outcome of one agent turn."""

    model_config = ConfigDict(frozen=True)

    stop_reason: str
    text: str = ""
    cancelled: bool = False


class AuthStatus(BaseModel):
    authenticated: bool
    email: Optional[str] = None
