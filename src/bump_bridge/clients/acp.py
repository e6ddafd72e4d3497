"""Agent Client Protocol transport: newline-delimited JSON-RPC 2.0 over stdio.

The transport owns the agent subprocess. One reader task splits its stdout
into frames; responses complete their pending futures directly, while
notifications and agent-initiated requests go through an ordered queue that a
single dispatcher task drains. Request handlers run in their own tasks so a
handler that waits on the user never holds up later notifications.
"""

import asyncio
import inspect
import json
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

from bump_bridge.constants import ACP_PROTOCOL_VERSION, HANDSHAKE_TIMEOUT, PROCESS_KILL_TIMEOUT
from bump_bridge.errors import (
    AgentRequestError,
    BridgeError,
    HandshakeTimeout,
    ProcessExited,
    ProtocolFailure,
    SpawnFailure,
)
from bump_bridge.utils.process import terminate_process_tree

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
READ_CHUNK_SIZE = 65536
STDERR_TAIL_LINES = 20

NotificationHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
RequestHandler = Callable[[Any, Dict[str, Any]], Awaitable[Any]]
ExitListener = Callable[[Optional[int]], None]


class NdjsonDecoder:
    """Incremental splitter for newline-delimited JSON frames.

    Bytes may arrive in arbitrary pieces; only complete lines are parsed.
    Malformed lines are logged and dropped.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        self._buffer.extend(data)
        frames = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            frame = self.parse_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[Dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        line = bytes(self._buffer)
        self._buffer.clear()
        frame = self.parse_line(line)
        return [frame] if frame is not None else []

    @staticmethod
    def parse_line(line: bytes) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        try:
            frame = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Dropping malformed agent frame: {e}")
            return None
        if not isinstance(frame, dict):
            logger.warning(f"Dropping non-object agent frame: {type(frame).__name__}")
            return None
        if "method" not in frame and "id" not in frame:
            logger.warning("Dropping agent frame without method or id")
            return None
        return frame


class AgentTransport:
    """JSON-RPC connection to one agent subprocess."""

    def __init__(self):
        self._process: Optional[asyncio.subprocess.Process] = None
        self._decoder = NdjsonDecoder()
        self._next_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._notification_handlers: Dict[str, NotificationHandler] = {}
        self._request_handlers: Dict[str, RequestHandler] = {}
        self._exit_listeners: List[ExitListener] = []
        # frames, None at end of stream, or a Future used as a barrier by drain()
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._request_tasks: Set[asyncio.Task] = set()
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._closed = asyncio.Event()
        self._exit_handled = False
        self._disconnecting = False

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def connected(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._exit_handled
            and not self._disconnecting
        )

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        self._notification_handlers[method] = handler

    def on_request(self, method: str, handler: RequestHandler) -> None:
        """Register a handler for an agent-initiated request.

        The handler receives ``(request_id, params)``; its return value is sent
        back as the result. ``AgentRequestError`` becomes a JSON-RPC error with
        its code, anything else an internal error.
        """
        self._request_handlers[method] = handler

    def add_exit_listener(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    async def connect(
        self,
        command: List[str],
        cwd: str,
        env: Optional[Dict[str, str]] = None,
        handshake_timeout: Optional[float] = HANDSHAKE_TIMEOUT,
    ) -> Dict[str, Any]:
        """Spawn the agent and complete the initialize handshake.

        Returns:
            The agent's initialize result

        Raises:
            SpawnFailure: Binary missing or not executable
            HandshakeTimeout: No handshake response in time
            ProcessExited: The agent died during the handshake
        """
        if self._process is not None:
            raise RuntimeError("Agent transport already connected")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise SpawnFailure(f"Failed to start agent '{command[0]}' in {cwd}: {e}") from e

        logger.info(f"Started agent {command[0]} pid={self._process.pid} cwd={cwd}")
        self._reader_task = asyncio.create_task(self._read_stdout(), name="acp-reader")
        self._stderr_task = asyncio.create_task(self._read_stderr(), name="acp-stderr")
        self._dispatch_task = asyncio.create_task(self._dispatch(), name="acp-dispatch")

        try:
            init = await asyncio.wait_for(
                self.request(
                    "initialize",
                    {
                        "protocolVersion": ACP_PROTOCOL_VERSION,
                        "clientCapabilities": {
                            "fs": {"readTextFile": True, "writeTextFile": True}
                        },
                    },
                ),
                handshake_timeout,
            )
            init = init or {}
            auth_methods = init.get("authMethods") or []
            if auth_methods:
                method_id = auth_methods[0].get("id")
                logger.info(f"Authenticating agent with method {method_id}")
                await asyncio.wait_for(
                    self.request("authenticate", {"methodId": method_id}), handshake_timeout
                )
        except asyncio.TimeoutError:
            await self.disconnect()
            raise HandshakeTimeout(f"Agent did not complete the handshake within {handshake_timeout}s")
        except BridgeError:
            await self.disconnect()
            raise

        logger.info(f"Agent handshake complete (protocolVersion={init.get('protocolVersion')})")
        return init

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a request and wait for its response."""
        if not self.connected:
            raise ProcessExited("Agent process is not running", self.returncode)

        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(
                {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params or {}}
            )
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        await self._send({"jsonrpc": JSONRPC_VERSION, "method": method, "params": params or {}})

    async def respond(self, request_id: Any, result: Any) -> None:
        await self._send({"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result})

    async def respond_error(self, request_id: Any, code: int, message: str, data: Any = None) -> None:
        error: Dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        await self._send({"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error})

    async def _send(self, frame: Dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None or not self.connected:
            raise ProcessExited("Agent process is not running", self.returncode)
        data = json.dumps(frame, separators=(",", ":")).encode("utf-8") + b"\n"
        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessExited(f"Agent stdin closed: {e}", self.returncode) from e

    async def _read_stdout(self) -> None:
        stdout = self._process.stdout
        try:
            while True:
                data = await stdout.read(READ_CHUNK_SIZE)
                if not data:
                    break
                for frame in self._decoder.feed(data):
                    self._route(frame)
            for frame in self._decoder.flush():
                self._route(frame)

            returncode = await self._process.wait()
            if self._stderr_task is not None:
                await asyncio.wait({self._stderr_task}, timeout=1.0)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Agent reader failed: {e}", exc_info=True)
            returncode = self._process.returncode
        self._handle_exit(returncode)

    async def _read_stderr(self) -> None:
        stderr = self._process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug(f"agent stderr: {text}")

    def _route(self, frame: Dict[str, Any]) -> None:
        if "method" in frame:
            self._inbound.put_nowait(frame)
            return
        request_id = frame["id"]
        future = self._pending.get(request_id) if isinstance(request_id, int) else None
        if future is None or future.done():
            logger.debug(f"Dropping response for unknown request id={request_id!r}")
            return
        if "result" not in frame and "error" not in frame:
            logger.warning(f"Agent response without result or error: id={request_id}")
            future.set_exception(ProtocolFailure(f"Malformed response to request {request_id}: no result or error"))
            return
        error = frame.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            future.set_exception(
                AgentRequestError(
                    error.get("message", "Unknown agent error"),
                    error.get("code", INTERNAL_ERROR),
                    error.get("data"),
                )
            )
        else:
            future.set_result(frame.get("result"))

    async def _dispatch(self) -> None:
        while True:
            frame = await self._inbound.get()
            if frame is None:
                return
            if isinstance(frame, asyncio.Future):
                if not frame.done():
                    frame.set_result(None)
                continue
            method = frame["method"]
            params = frame.get("params") or {}
            if "id" in frame:
                task = asyncio.create_task(
                    self._serve_request(frame["id"], method, params), name=f"acp-request-{method}"
                )
                self._request_tasks.add(task)
                task.add_done_callback(self._request_tasks.discard)
                continue

            handler = self._notification_handlers.get(method)
            if handler is None:
                logger.debug(f"Ignoring agent notification {method}")
                continue
            try:
                result = handler(params)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Notification handler for {method} failed: {e}", exc_info=True)

    async def _serve_request(self, request_id: Any, method: str, params: Dict[str, Any]) -> None:
        handler = self._request_handlers.get(method)
        try:
            if handler is None:
                logger.warning(f"Agent called unsupported method {method}")
                await self.respond_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
                return
            try:
                result = await handler(request_id, params)
            except AgentRequestError as e:
                await self.respond_error(request_id, e.rpc_code, e.message, e.data)
                return
            except BridgeError as e:
                logger.warning(f"Rejected agent request {method}: {e.message}")
                await self.respond_error(request_id, INTERNAL_ERROR, e.message)
                return
            except Exception as e:
                logger.error(f"Handler for agent request {method} failed: {e}", exc_info=True)
                await self.respond_error(request_id, INTERNAL_ERROR, f"Internal error: {e}")
                return
            await self.respond(request_id, result)
        except ProcessExited:
            logger.debug(f"Agent gone before response to {method} id={request_id} was sent")

    def _fail_pending(self, error: ProcessExited) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _handle_exit(self, returncode: Optional[int]) -> None:
        if self._exit_handled:
            return
        self._exit_handled = True

        if self._disconnecting:
            reason = "Agent session ended"
            logger.info(f"Agent process stopped (code={returncode})")
        else:
            reason = f"Agent process exited with code {returncode}"
            if self._stderr_tail:
                reason = f"{reason}: {self.stderr_tail}"
            logger.warning(reason)

        self._fail_pending(ProcessExited(reason, returncode))
        self._inbound.put_nowait(None)
        for listener in list(self._exit_listeners):
            try:
                listener(returncode)
            except Exception as e:
                logger.error(f"Agent exit listener failed: {e}", exc_info=True)
        self._closed.set()

    async def drain(self) -> None:
        """Wait until every inbound message received so far has been dispatched."""
        if self._dispatch_task is None or self._dispatch_task.done():
            return
        barrier = asyncio.get_running_loop().create_future()
        self._inbound.put_nowait(barrier)
        await asyncio.wait({barrier, self._dispatch_task}, return_when=asyncio.FIRST_COMPLETED)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def disconnect(self) -> None:
        """Kill the agent and fail every outstanding request. Idempotent."""
        if self._process is None:
            return
        if self._disconnecting:
            await self._closed.wait()
            return
        self._disconnecting = True
        self._fail_pending(ProcessExited("Agent session ended", self.returncode))

        try:
            await terminate_process_tree(self._process, PROCESS_KILL_TIMEOUT)
        except Exception as e:
            logger.error(f"Failed to terminate agent pid={self._process.pid}: {e}")

        if self._reader_task is not None:
            done, _ = await asyncio.wait({self._reader_task}, timeout=PROCESS_KILL_TIMEOUT)
            if not done:
                self._reader_task.cancel()
        self._handle_exit(self._process.returncode)

        for task in [self._stderr_task, self._dispatch_task, *self._request_tasks]:
            if task is not None and not task.done():
                task.cancel()
        if self._process.stdin is not None:
            self._process.stdin.close()
