"""
Event stream WebSocket: pushes every bridge event to the UI and accepts
terminal input, resize and permission responses in the other direction
"""
import asyncio
import logging
from typing import Any, Dict
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from bump_bridge.core.events import EventBus
from bump_bridge.errors import BridgeError
from bump_bridge.models.agent import PermissionDecision
from bump_bridge.models.events import event_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


async def _send_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event_to_dict(event))


async def _receive_commands(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive_json()
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object event stream message: {message!r}")
            continue
        try:
            handle_command(websocket, message)
        except (BridgeError, ValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Rejected event stream command {message.get('type')}: {e}")


def handle_command(websocket: WebSocket, message: Dict[str, Any]) -> None:
    """Apply one inbound command from the UI."""
    state = websocket.app.state
    kind = message.get("type")
    if kind == "terminal.write":
        state.terminal_manager.write(message["terminal_id"], message["data"])
    elif kind == "terminal.resize":
        state.terminal_manager.resize(message["terminal_id"], int(message["cols"]), int(message["rows"]))
    elif kind == "agent.permission_response":
        decision = PermissionDecision(
            option_id=message.get("option_id"), cancelled=bool(message.get("cancelled", False))
        )
        state.agent_manager.respond_permission(decision)
    else:
        logger.warning(f"Unknown event stream command: {kind}")


@router.websocket("/events")
async def event_stream(websocket: WebSocket):
    """WebSocket endpoint streaming bridge events."""
    await websocket.accept()
    event_bus: EventBus = websocket.app.state.event_bus
    queue = event_bus.subscribe()
    logger.info("Event stream connected")

    sender = asyncio.create_task(_send_events(websocket, queue))
    receiver = asyncio.create_task(_receive_commands(websocket))
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(f"Event stream error: {error}")
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
        event_bus.unsubscribe(queue)
        logger.info("Event stream disconnected")
