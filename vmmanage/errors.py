"""
Error taxonomy for persistent VM sessions.

ConnectFailed, Timeout, WorkerDead and ProtocolError end the current session;
the caller has to open a new one. OperationError is informational: the worker
reported a failure for one opcode and the session stays usable.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for every failure surfaced by the session supervisor."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConnectFailed(SessionError):
    """Authentication or target resolution failed while opening a session."""


class Timeout(SessionError):
    """No response arrived within the allotted poll budget."""


class WorkerDead(SessionError):
    """The worker process is no longer running."""


class ProtocolError(SessionError):
    """A message could not be parsed against the expected framing."""


class UnknownOpcode(ProtocolError):
    """A command line carried a token that is not a known opcode."""

    def __init__(self, token: str):
        super().__init__(f"Unknown command: {token}")
        self.token = token


class SessionNotReady(ProtocolError):
    """A command was issued to a session that is not in the Ready state."""


class SessionActive(SessionError):
    """open() was called while a previous session is still live."""


class ChannelClosed(SessionError):
    """The other end of the command channel has gone away."""


class OperationError(SessionError):
    """The worker explicitly reported failure for an opcode."""

    def __init__(self, message: str, opcode: Optional[str] = None):
        super().__init__(message)
        self.opcode = opcode
