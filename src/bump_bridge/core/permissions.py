"""Single-slot coordinator for agent permission requests."""

import asyncio
import logging
from typing import Optional

from bump_bridge.constants import PERMISSION_MODE, PERMISSION_TIMEOUT
from bump_bridge.errors import InvalidPermissionDecision, UnexpectedProtocolState
from bump_bridge.models.agent import PermissionDecision, PermissionOptionKind, PermissionRequest

logger = logging.getLogger(__name__)

MODE_ASK = "ask"
MODE_AUTO_ALLOW_ONCE = "auto_allow_once"
PERMISSION_MODES = (MODE_ASK, MODE_AUTO_ALLOW_ONCE)


class PermissionCoordinator:
    """Holds at most one pending permission request until the user decides.

    Args:
        timeout: Seconds before an unanswered request is cancelled, None to wait forever
        mode: "ask" to wait for the user, "auto_allow_once" to approve immediately
    """

    def __init__(self, timeout: Optional[float] = PERMISSION_TIMEOUT, mode: str = PERMISSION_MODE):
        if mode not in PERMISSION_MODES:
            raise ValueError(f"Unknown permission mode '{mode}', expected one of {PERMISSION_MODES}")
        self.timeout = timeout
        self.mode = mode
        self._pending: Optional[PermissionRequest] = None
        self._future: Optional[asyncio.Future] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> Optional[PermissionRequest]:
        return self._pending

    def submit(self, request: PermissionRequest) -> "asyncio.Future[PermissionDecision]":
        """Register a request and return a future for the decision.

        Raises:
            UnexpectedProtocolState: If another request is still pending
        """
        if self._pending is not None:
            raise UnexpectedProtocolState(
                f"Permission request for {request.tool_call.tool_call_id} arrived while "
                f"{self._pending.tool_call.tool_call_id} is still pending"
            )

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        if self.mode == MODE_AUTO_ALLOW_ONCE:
            decision = self._auto_decision(request)
            logger.info(f"Auto-answered permission for {request.tool_call.tool_call_id}: {decision.option_id}")
            future.set_result(decision)
            return future

        self._pending = request
        self._future = future
        future.add_done_callback(lambda f: self._on_done(request, f))
        if self.timeout is not None:
            self._timer = loop.call_later(self.timeout, self._expire, request)
        logger.info(f"Permission requested for tool call {request.tool_call.tool_call_id}")
        return future

    @staticmethod
    def _auto_decision(request: PermissionRequest) -> PermissionDecision:
        for option in request.options:
            if option.kind == PermissionOptionKind.ALLOW_ONCE:
                return PermissionDecision.select(option.option_id)
        if request.options:
            return PermissionDecision.select(request.options[0].option_id)
        return PermissionDecision.cancel()

    def resolve(self, decision: PermissionDecision) -> PermissionRequest:
        """Answer the pending request and free the slot.

        Raises:
            UnexpectedProtocolState: Nothing is pending
            InvalidPermissionDecision: The option id is not one the request offered
        """
        request = self._pending
        if request is None:
            raise UnexpectedProtocolState("No permission request is pending")
        if decision.option_id is not None and request.find_option(decision.option_id) is None:
            raise InvalidPermissionDecision(
                f"Option '{decision.option_id}' is not offered for tool call {request.tool_call.tool_call_id}"
            )
        return self._complete(decision)

    def cancel_pending(self) -> Optional[PermissionRequest]:
        """Resolve any outstanding request as cancelled."""
        if self._pending is None:
            return None
        logger.info(f"Cancelling permission request for {self._pending.tool_call.tool_call_id}")
        return self._complete(PermissionDecision.cancel())

    def _complete(self, decision: PermissionDecision) -> PermissionRequest:
        request, future = self._pending, self._future
        self._clear()
        if future is not None and not future.done():
            future.set_result(decision)
        return request

    def _clear(self) -> None:
        self._pending = None
        self._future = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self, request: PermissionRequest) -> None:
        if self._pending is request:
            logger.warning(
                f"Permission request for {request.tool_call.tool_call_id} unanswered after "
                f"{self.timeout}s, cancelling"
            )
            self._complete(PermissionDecision.cancel())

    def _on_done(self, request: PermissionRequest, future: asyncio.Future) -> None:
        # The waiting handler went away (agent disconnected)
        if future.cancelled() and self._pending is request:
            self._clear()
