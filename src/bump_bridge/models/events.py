"""Events pushed from the core to UI subscribers."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from bump_bridge.models.agent import PermissionOption, ToolCall, ToolCallRef


class TerminalDataEvent(BaseModel):
    type: Literal["terminal.data"] = "terminal.data"
    terminal_id: str
    data: str = Field(..., description="Output chunk, decoded as UTF-8 with replacement")


class TerminalExitEvent(BaseModel):
    type: Literal["terminal.exit"] = "terminal.exit"
    terminal_id: str
    code: Optional[int] = None
    respawned: bool = False


class TerminalTitleEvent(BaseModel):
    type: Literal["terminal.title"] = "terminal.title"
    terminal_id: str
    title: str


class MessageChunkUpdate(BaseModel):
    kind: Literal["message_chunk"] = "message_chunk"
    text: Optional[str] = None
    thinking: bool = False


class ToolCallCreatedUpdate(BaseModel):
    kind: Literal["tool_call_created"] = "tool_call_created"
    tool_call: ToolCall


class ToolCallUpdatedUpdate(BaseModel):
    kind: Literal["tool_call_updated"] = "tool_call_updated"
    tool_call: ToolCall


AgentUpdatePayload = Union[MessageChunkUpdate, ToolCallCreatedUpdate, ToolCallUpdatedUpdate]


class AgentUpdateEvent(BaseModel):
    type: Literal["agent.update"] = "agent.update"
    update: AgentUpdatePayload = Field(..., discriminator="kind")


class PermissionRequestEvent(BaseModel):
    type: Literal["agent.permission_request"] = "agent.permission_request"
    tool_call: ToolCallRef
    options: List[PermissionOption]


class AgentStatusEvent(BaseModel):
    type: Literal["agent.status"] = "agent.status"
    state: str
    detail: Optional[str] = None


BridgeEvent = Union[
    TerminalDataEvent,
    TerminalExitEvent,
    TerminalTitleEvent,
    AgentUpdateEvent,
    PermissionRequestEvent,
    AgentStatusEvent,
]


def event_to_dict(event: BridgeEvent) -> Dict[str, Any]:
    return event.model_dump(mode="json")
