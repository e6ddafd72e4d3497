"""Owner of the (at most one) active agent session."""

import logging
from typing import Callable, List, Optional, Sequence, Tuple

from bump_bridge.core.agent_session import AgentSession
from bump_bridge.core.events import EventBus
from bump_bridge.errors import NoActiveSession
from bump_bridge.models.agent import (
    AgentState,
    AgentStatus,
    PermissionDecision,
    PermissionRequest,
    PromptResult,
    ToolCall,
)

logger = logging.getLogger(__name__)


class AgentSessionManager:
    """Starts, stops and routes commands to the current agent session.

    Starting a new session always stops the previous one first.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        session_factory: Optional[Callable[[EventBus], AgentSession]] = None,
    ):
        self.event_bus = event_bus or EventBus()
        self.session_factory = session_factory or (lambda bus: AgentSession(event_bus=bus))
        self.session: Optional[AgentSession] = None

    def _require_session(self) -> AgentSession:
        # a crashed session counts as no session
        if self.session is None or self.session.state == AgentState.STOPPED:
            raise NoActiveSession()
        return self.session

    async def start(self, workspace_path: str) -> AgentSession:
        if self.session is not None:
            logger.info("Stopping previous agent session before starting a new one")
            await self.stop()

        session = self.session_factory(self.event_bus)
        self.session = session
        try:
            await session.start(workspace_path)
        except BaseException:
            if self.session is session:
                self.session = None
            raise
        return session

    async def stop(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.stop()

    async def prompt(
        self, text: str, context_snapshots: Sequence[Tuple[str, str]] = ()
    ) -> PromptResult:
        return await self._require_session().prompt(text, context_snapshots)

    async def cancel(self) -> None:
        if self.session is not None:
            await self.session.cancel()

    def status(self) -> AgentStatus:
        if self.session is None or self.session.state == AgentState.STOPPED:
            return AgentStatus.IDLE
        return AgentStatus.ACTIVE

    @property
    def state(self) -> AgentState:
        return self.session.state if self.session is not None else AgentState.IDLE

    def respond_permission(self, decision: PermissionDecision) -> PermissionRequest:
        return self._require_session().permissions.resolve(decision)

    def pending_permission(self) -> Optional[PermissionRequest]:
        return self.session.pending_permission if self.session is not None else None

    def tool_calls(self) -> List[ToolCall]:
        return self.session.list_tool_calls() if self.session is not None else []

    async def shutdown(self) -> None:
        """Stop the active session, logging rather than raising on failure."""
        try:
            await self.stop()
        except Exception as e:
            logger.error(f"Error stopping agent session during shutdown: {e}")
