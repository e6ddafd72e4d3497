"""Exception hierarchy for the bump bridge.

Every error raised by the terminal and agent layers derives from
``BridgeError`` and carries a short machine-readable ``code`` that the API
layer uses when mapping failures to HTTP responses.
"""

from typing import Any, Optional


class BridgeError(Exception):
    """Base exception for all bridge errors.

    Attributes:
        message: Human-readable error message
        code: Error code for client-side error handling
    """

    def __init__(self, message: str, code: str = "BRIDGE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class SpawnFailure(BridgeError):
    """A shell or agent binary could not be started.

    Examples:
        - Agent binary missing from PATH
        - Working directory does not exist
        - Binary not executable
    """

    def __init__(self, message: str):
        super().__init__(message, "SPAWN_FAILURE")


class ProtocolFailure(BridgeError):
    """The agent protocol stream misbehaved.

    The transport stays usable; only the offending request fails.
    """

    def __init__(self, message: str, code: str = "PROTOCOL_FAILURE"):
        super().__init__(message, code)


class HandshakeTimeout(ProtocolFailure):
    """The agent did not complete the initialize handshake in time."""

    def __init__(self, message: str):
        super().__init__(message, "HANDSHAKE_TIMEOUT")


class AgentRequestError(ProtocolFailure):
    """The agent answered a request with a JSON-RPC error object."""

    def __init__(self, message: str, rpc_code: int = -32603, data: Any = None):
        self.rpc_code = rpc_code
        self.data = data
        super().__init__(message, "AGENT_REQUEST_ERROR")


class UnexpectedProtocolState(ProtocolFailure):
    """A protocol message arrived that the current state cannot accept.

    Examples:
        - A second permission request while one is still pending
        - A permission response with nothing pending
    """

    def __init__(self, message: str):
        super().__init__(message, "UNEXPECTED_PROTOCOL_STATE")


class ProcessExited(BridgeError):
    """The agent or shell process terminated.

    All requests outstanding on the affected transport fail with this error.
    """

    def __init__(self, message: str, returncode: Optional[int] = None):
        self.returncode = returncode
        super().__init__(message, "PROCESS_EXITED")


class UnknownTarget(BridgeError):
    """A command referenced a terminal or agent session that does not exist."""

    def __init__(self, message: str, code: str = "UNKNOWN_TARGET"):
        super().__init__(message, code)


class NoActiveSession(UnknownTarget):
    """An agent command was issued with no agent session running."""

    def __init__(self, message: str = "Agent not started"):
        super().__init__(message, "NO_ACTIVE_SESSION")


class InvalidAgentState(BridgeError):
    """An agent command is not valid in the session's current state."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_AGENT_STATE")


class InvalidPermissionDecision(BridgeError):
    """A permission decision named an option the request does not offer."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_PERMISSION_DECISION")
