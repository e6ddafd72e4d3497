"""Agent session: one conversation with one agent process.

State machine:
    idle -> starting -> ready -> prompting -> awaiting_permission -> prompting
    -> ready -> ... -> stopped

The session drives the transport (handshake, session/new, session/prompt,
session/cancel), keeps the tool-call registry current from session/update
notifications, and answers the agent's permission and file requests.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import aiofiles
from pydantic import ValidationError

from bump_bridge.clients.acp import INTERNAL_ERROR, AgentTransport
from bump_bridge.constants import CANCEL_SETTLE_TIMEOUT, CONTEXT_MAX_BYTES, HANDSHAKE_TIMEOUT
from bump_bridge.core.events import EventBus
from bump_bridge.core.permissions import PermissionCoordinator
from bump_bridge.errors import (
    AgentRequestError,
    BridgeError,
    InvalidAgentState,
    ProcessExited,
    ProtocolFailure,
    SpawnFailure,
)
from bump_bridge.models.agent import (
    AgentState,
    PermissionRequest,
    PromptResult,
    ToolCall,
    ToolCallKind,
    ToolCallStatus,
)
from bump_bridge.models.events import (
    AgentStatusEvent,
    AgentUpdateEvent,
    MessageChunkUpdate,
    PermissionRequestEvent,
    ToolCallCreatedUpdate,
    ToolCallUpdatedUpdate,
)
from bump_bridge.providers.agent_cli import agent_command, agent_env
from bump_bridge.utils.terminal import strip_ansi

logger = logging.getLogger(__name__)

INVALID_PARAMS = -32602
CONTEXT_PREAMBLE = "The user has terminal sessions running. Their recent output follows."
TURN_STATES = (AgentState.PROMPTING, AgentState.AWAITING_PERMISSION)


def bound_snapshot(text: str, max_bytes: Optional[int]) -> str:
    """Strip ANSI codes and keep at most the last ``max_bytes`` bytes."""
    clean = strip_ansi(text)
    if max_bytes is None:
        return clean
    encoded = clean.encode("utf-8")
    if len(encoded) <= max_bytes:
        return clean
    return encoded[len(encoded) - max_bytes :].decode("utf-8", errors="ignore")


def build_prompt_blocks(
    text: str,
    context_snapshots: Sequence[Tuple[str, str]] = (),
    max_bytes: Optional[int] = CONTEXT_MAX_BYTES,
) -> List[Dict[str, Any]]:
    """Terminal snapshots as text blocks, followed by the user's text."""
    blocks: List[Dict[str, Any]] = []
    for terminal_id, snapshot in context_snapshots:
        clean = bound_snapshot(snapshot, max_bytes).strip()
        if not clean:
            continue
        if not blocks:
            blocks.append({"type": "text", "text": CONTEXT_PREAMBLE})
        blocks.append({"type": "text", "text": f"Terminal {terminal_id}:\n```\n{clean}\n```"})
    blocks.append({"type": "text", "text": text})
    return blocks


def _content_text(content: Any) -> Optional[str]:
    if isinstance(content, dict) and content.get("type") == "text":
        return content.get("text")
    return None


class AgentSession:
    """One agent subprocess and the conversation running on it.

    Attributes:
        state: Current lifecycle state
        workspace: Resolved workspace root, set by start()
        session_id: Agent-assigned session id
        tool_calls: Registry of tool calls in creation order
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        permissions: Optional[PermissionCoordinator] = None,
        transport_factory: Callable[[], AgentTransport] = AgentTransport,
        command: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        context_max_bytes: Optional[int] = CONTEXT_MAX_BYTES,
        handshake_timeout: Optional[float] = HANDSHAKE_TIMEOUT,
        cancel_settle_timeout: Optional[float] = CANCEL_SETTLE_TIMEOUT,
    ):
        self.event_bus = event_bus or EventBus()
        self.permissions = permissions or PermissionCoordinator()
        self.transport_factory = transport_factory
        self.command = command
        self.env = env
        self.context_max_bytes = context_max_bytes
        self.handshake_timeout = handshake_timeout
        self.cancel_settle_timeout = cancel_settle_timeout

        self.state = AgentState.IDLE
        self.workspace: Optional[Path] = None
        self.session_id: Optional[str] = None
        self.transport: Optional[AgentTransport] = None
        self.tool_calls: Dict[str, ToolCall] = {}
        self._turn_text: List[str] = []
        self._turn_cancelled: Optional[asyncio.Future] = None
        self._cancelled_request: Optional[asyncio.Task] = None
        self._stopping = False

    def _set_state(self, state: AgentState, detail: Optional[str] = None) -> None:
        if state == self.state and detail is None:
            return
        logger.info(f"Agent state {self.state.value} -> {state.value}")
        self.state = state
        self.event_bus.publish(AgentStatusEvent(state=state.value, detail=detail))

    @property
    def pending_permission(self) -> Optional[PermissionRequest]:
        return self.permissions.pending

    def list_tool_calls(self) -> List[ToolCall]:
        return list(self.tool_calls.values())

    async def start(self, workspace_path: str) -> None:
        """Spawn the agent and open a session scoped to ``workspace_path``.

        Raises:
            InvalidAgentState: If the session is not idle
            SpawnFailure: If the workspace or the agent binary is unusable
            ProtocolFailure: If the handshake or session creation fails
            ProcessExited: If the agent dies during startup
        """
        if self.state != AgentState.IDLE:
            raise InvalidAgentState(f"Cannot start agent while {self.state.value}")

        workspace = Path(workspace_path).expanduser().resolve()
        if not workspace.is_dir():
            raise SpawnFailure(f"Workspace is not a directory: {workspace}")

        self.workspace = workspace
        self._set_state(AgentState.STARTING)

        command = self.command or await asyncio.to_thread(agent_command)
        env = self.env if self.env is not None else agent_env()
        transport = self.transport_factory()
        self._register_handlers(transport)
        self.transport = transport

        try:
            await transport.connect(command, cwd=str(workspace), env=env, handshake_timeout=self.handshake_timeout)
            result = await transport.request("session/new", {"cwd": str(workspace), "mcpServers": []})
            session_id = result.get("sessionId") if isinstance(result, dict) else None
            if not session_id:
                raise ProtocolFailure(f"Agent returned no sessionId: {result!r}")
        except (BridgeError, asyncio.CancelledError) as e:
            logger.error(f"Failed to start agent session in {workspace}: {e}")
            self.transport = None
            await transport.disconnect()
            self.workspace = None
            self._set_state(AgentState.IDLE, detail=str(e))
            raise

        self.session_id = session_id
        logger.info(f"Agent session {session_id} ready in {workspace}")
        self._set_state(AgentState.READY)

    def _register_handlers(self, transport: AgentTransport) -> None:
        transport.on_notification("session/update", self._handle_update)
        transport.on_request("session/request_permission", self._handle_permission)
        transport.on_request("fs/read_text_file", self._handle_read_file)
        transport.on_request("fs/write_text_file", self._handle_write_file)
        transport.add_exit_listener(lambda code: self._on_transport_exit(transport, code))

    def _on_transport_exit(self, transport: AgentTransport, returncode: Optional[int]) -> None:
        if transport is not self.transport or self._stopping or self.state == AgentState.STARTING:
            return
        logger.warning(f"Agent process exited unexpectedly (code={returncode})")
        self.permissions.cancel_pending()
        self._set_state(AgentState.STOPPED, detail=f"Agent process exited with code {returncode}")

    async def prompt(
        self, text: str, context_snapshots: Sequence[Tuple[str, str]] = ()
    ) -> PromptResult:
        """Run one turn and return its outcome.

        ``context_snapshots`` are (terminal_id, output) pairs embedded ahead of
        the user's text.

        Raises:
            InvalidAgentState: If the session is not ready
            ProcessExited: If the agent dies or the session is stopped mid-turn
            ProtocolFailure: If the agent rejects the prompt
        """
        if self.state != AgentState.READY:
            raise InvalidAgentState(f"Cannot prompt while agent is {self.state.value}")

        blocks = build_prompt_blocks(text, context_snapshots, self.context_max_bytes)
        turn_cancelled = asyncio.get_running_loop().create_future()
        self._turn_cancelled = turn_cancelled
        self._set_state(AgentState.PROMPTING)

        transport = self.transport
        request: Optional[asyncio.Task] = None
        try:
            await self._settle_cancelled_turn(transport)
            self._turn_text = []
            if not turn_cancelled.done():
                request = asyncio.create_task(
                    transport.request("session/prompt", {"sessionId": self.session_id, "prompt": blocks}),
                    name="acp-prompt",
                )
                await asyncio.wait({request, turn_cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if request is not None:
                request.cancel()
            if self.state in TURN_STATES:
                self._set_state(AgentState.READY)
            raise
        finally:
            self._turn_cancelled = None

        if request is None or not request.done():
            # cancel() answered the turn; the agent's late reply is discarded
            if request is not None:
                request.add_done_callback(_discard_result)
                self._cancelled_request = request
            return PromptResult(stop_reason="cancelled", text="".join(self._turn_text), cancelled=True)

        try:
            result = request.result()
        except ProcessExited:
            raise
        except BridgeError as e:
            logger.error(f"Prompt failed: {e}")
            if self.state in TURN_STATES:
                self._set_state(AgentState.READY)
            raise

        # updates sent ahead of the response may still be queued
        await transport.drain()
        stop_reason = result.get("stopReason", "end_turn") if isinstance(result, dict) else "end_turn"
        if self.state in TURN_STATES:
            self._set_state(AgentState.READY)
        return PromptResult(
            stop_reason=stop_reason,
            text="".join(self._turn_text),
            cancelled=stop_reason == "cancelled" or turn_cancelled.done(),
        )

    async def _settle_cancelled_turn(self, transport: AgentTransport) -> None:
        """Wait for the agent to answer a cancelled turn and flush its trailing updates."""
        request, self._cancelled_request = self._cancelled_request, None
        if request is None:
            return
        if not request.done():
            done, _ = await asyncio.wait({request}, timeout=self.cancel_settle_timeout)
            if not done:
                logger.warning(
                    f"Agent did not answer the cancelled turn within {self.cancel_settle_timeout}s"
                )
        await transport.drain()

    async def cancel(self) -> None:
        """Cancel the in-flight turn. No-op outside a turn."""
        if self.state not in TURN_STATES:
            logger.debug(f"Nothing to cancel while agent is {self.state.value}")
            return

        self.permissions.cancel_pending()
        try:
            await self.transport.notify("session/cancel", {"sessionId": self.session_id})
        except ProcessExited as e:
            logger.warning(f"Could not send session/cancel: {e}")
        if self._turn_cancelled is not None and not self._turn_cancelled.done():
            self._turn_cancelled.set_result(None)
        if self.state in TURN_STATES:
            self._set_state(AgentState.READY)

    async def stop(self) -> None:
        """Tear the session down from any state. Idempotent."""
        if self.state == AgentState.STOPPED and self.transport is None:
            return
        self._stopping = True
        self.permissions.cancel_pending()

        transport, self.transport = self.transport, None
        if transport is not None:
            try:
                await transport.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting agent transport: {e}")

        self.tool_calls.clear()
        self._cancelled_request = None
        self._set_state(AgentState.STOPPED)

    # session/update

    def _handle_update(self, params: Dict[str, Any]) -> None:
        session_id = params.get("sessionId")
        if session_id is not None and session_id != self.session_id:
            logger.debug(f"Ignoring update for foreign session {session_id}")
            return

        update = params.get("update") or {}
        kind = update.get("sessionUpdate")
        if kind == "agent_message_chunk":
            text = _content_text(update.get("content"))
            if text and self.state in TURN_STATES:
                self._turn_text.append(text)
            self._publish(MessageChunkUpdate(text=text))
        elif kind == "agent_thought_chunk":
            self._publish(MessageChunkUpdate(text=_content_text(update.get("content")), thinking=True))
        elif kind == "tool_call":
            self.record_tool_call(update)
        elif kind == "tool_call_update":
            self.update_tool_call(update)
        else:
            logger.debug(f"Ignoring session update {kind}")

    def _publish(self, update) -> None:
        self.event_bus.publish(AgentUpdateEvent(update=update))

    def record_tool_call(self, update: Dict[str, Any]) -> Optional[ToolCall]:
        """Create a registry entry; a repeated id overwrites fields in place."""
        try:
            call = ToolCall.from_wire(update)
        except (KeyError, ValidationError) as e:
            logger.warning(f"Dropping malformed tool_call update: {e}")
            return None

        existing = self.tool_calls.get(call.tool_call_id)
        if existing is None:
            self.tool_calls[call.tool_call_id] = call
            self._publish(ToolCallCreatedUpdate(tool_call=call))
            return call

        changes: Dict[str, Any] = {"timestamp": existing.timestamp, "raw_output": existing.raw_output}
        if existing.status.is_terminal:
            changes["status"] = existing.status
        call = call.model_copy(update=changes)
        self.tool_calls[call.tool_call_id] = call
        self._publish(ToolCallUpdatedUpdate(tool_call=call))
        return call

    def update_tool_call(self, update: Dict[str, Any]) -> Optional[ToolCall]:
        """Merge an update into an existing entry. Unknown ids are dropped."""
        tool_call_id = update.get("toolCallId")
        existing = self.tool_calls.get(tool_call_id)
        if existing is None:
            logger.debug(f"Dropping update for unknown tool call {tool_call_id}")
            return None

        changes: Dict[str, Any] = {}
        status = existing.status
        if update.get("status") and not status.is_terminal:
            status = changes["status"] = ToolCallStatus.parse(update["status"])
        if update.get("title"):
            changes["title"], changes["subtitle"] = ToolCall.split_title(update["title"])
        if update.get("kind"):
            changes["kind"] = ToolCallKind.parse(update["kind"])
        if update.get("content") is not None:
            changes["content"] = update["content"]
        if update.get("rawInput") is not None:
            changes["raw_input"] = update["rawInput"]
        if update.get("rawOutput") is not None and status.is_terminal:
            changes["raw_output"] = update["rawOutput"]

        call = existing.model_copy(update=changes)
        self.tool_calls[tool_call_id] = call
        self._publish(ToolCallUpdatedUpdate(tool_call=call))
        return call

    # agent -> client requests

    async def _handle_permission(self, request_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            request = PermissionRequest.from_wire(request_id, params)
        except (KeyError, ValidationError) as e:
            raise AgentRequestError(f"Malformed permission request: {e}", INVALID_PARAMS) from e

        future = self.permissions.submit(request)
        suspended = not future.done() and self.state == AgentState.PROMPTING
        if not future.done():
            if suspended:
                self._set_state(AgentState.AWAITING_PERMISSION)
            self.event_bus.publish(
                PermissionRequestEvent(tool_call=request.tool_call, options=request.options)
            )

        decision = await future
        if suspended and self.state == AgentState.AWAITING_PERMISSION:
            self._set_state(AgentState.PROMPTING)
        return decision.to_wire()

    def _workspace_path(self, raw: Optional[str]) -> Path:
        if not raw:
            raise AgentRequestError("Missing path", INVALID_PARAMS)
        path = Path(raw)
        if not path.is_absolute():
            path = self.workspace / path
        resolved = path.resolve()
        if resolved != self.workspace and self.workspace not in resolved.parents:
            raise AgentRequestError(f"Path is outside the workspace: {raw}", INVALID_PARAMS)
        return resolved

    async def _handle_read_file(self, request_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        path = self._workspace_path(params.get("path"))
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
                content = await f.read()
        except OSError as e:
            raise AgentRequestError(f"Failed to read {path}: {e}", INTERNAL_ERROR) from e

        line, limit = params.get("line"), params.get("limit")
        if line or limit:
            lines = content.splitlines(keepends=True)
            start = max(int(line) - 1, 0) if line else 0
            end = start + int(limit) if limit else None
            content = "".join(lines[start:end])
        return {"content": content}

    async def _handle_write_file(self, request_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        path = self._workspace_path(params.get("path"))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(params.get("content", ""))
        except OSError as e:
            raise AgentRequestError(f"Failed to write {path}: {e}", INTERNAL_ERROR) from e
        logger.info(f"Agent wrote {path}")
        return {}


def _discard_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
