"""
Wire vocabulary shared by the controller and the worker.

Commands are single lines: a bare opcode token or OPCODE:PAYLOAD.
Responses are either one status line or a block of lines opened by
<NAME>_START and closed by <NAME>_END.
"""

import re
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from vmmanage.errors import OperationError, ProtocolError, UnknownOpcode

SESSION_READY = "SESSION_READY"
SESSION_ENDED = "SESSION_ENDED"
NO_SNAPSHOTS = "NO_SNAPSHOTS"
SUCCESS_PREFIX = "SUCCESS:"
ERROR_PREFIX = "ERROR:"

SNAPSHOTS_BLOCK = "SNAPSHOTS"
DETAILS_BLOCK = "DETAILS"

_BLOCK_START = re.compile(r"^([A-Z][A-Z0-9_]*)_START$")


def block_name(line: str) -> Optional[str]:
    """Return NAME if line is a <NAME>_START sentinel, else None."""
    match = _BLOCK_START.match(line)
    return match.group(1) if match else None


def start_sentinel(name: str) -> str:
    return f"{name}_START"


def end_sentinel(name: str) -> str:
    return f"{name}_END"


def wrap_block(name: str, lines: List[str]) -> str:
    """Frame body lines between the paired sentinels of block `name`."""
    closing = end_sentinel(name)
    for line in lines:
        if "\n" in line:
            raise ProtocolError(f"Block {name} body line contains a newline: {line!r}")
        if line == closing:
            raise ProtocolError(f"Block {name} body line collides with its closing sentinel")
    return "\n".join([start_sentinel(name)] + list(lines) + [closing])


def unwrap_block(message: str) -> Tuple[str, List[str]]:
    """Split a framed block into (name, body lines)."""
    lines = message.split("\n")
    name = block_name(lines[0])
    if name is None:
        raise ProtocolError(f"Not a block message: {lines[0]!r}")
    closing = end_sentinel(name)
    if len(lines) < 2 or lines[-1] != closing:
        raise ProtocolError(f"Block {name} is missing its {closing} sentinel")
    body = lines[1:-1]
    if closing in body:
        raise ProtocolError(f"Block {name} closes more than once")
    return name, body


class Opcode(Enum):
    """Operations the worker can execute on the resolved VM."""
    LIST_SNAPSHOTS = "LIST_SNAPSHOTS"
    CREATE_SNAPSHOT = "CREATE_SNAPSHOT"
    DELETE_SNAPSHOT = "DELETE_SNAPSHOT"
    RESTART_VM = "RESTART_VM"
    POWEROFF_VM = "POWEROFF_VM"
    POWERON_VM = "POWERON_VM"
    GRACEFUL_SHUTDOWN = "GRACEFUL_SHUTDOWN"
    GRACEFUL_RESTART = "GRACEFUL_RESTART"
    GET_DETAILS = "GET_DETAILS"
    END_SESSION = "END_SESSION"

    @property
    def cli_name(self) -> str:
        return _CLI_NAMES[self]

    @property
    def takes_payload(self) -> bool:
        return self is Opcode.DELETE_SNAPSHOT

    @classmethod
    def from_cli_name(cls, name: str) -> "Opcode":
        for opcode, cli_name in _CLI_NAMES.items():
            if cli_name == name:
                return opcode
        try:
            return cls(name.upper())
        except ValueError:
            raise UnknownOpcode(name) from None


_CLI_NAMES: Dict[Opcode, str] = {
    Opcode.LIST_SNAPSHOTS: "list-snapshots",
    Opcode.CREATE_SNAPSHOT: "create-snapshot",
    Opcode.DELETE_SNAPSHOT: "delete-snapshot",
    Opcode.RESTART_VM: "restart",
    Opcode.POWEROFF_VM: "power-off",
    Opcode.POWERON_VM: "power-on",
    Opcode.GRACEFUL_SHUTDOWN: "graceful-shutdown",
    Opcode.GRACEFUL_RESTART: "graceful-restart",
    Opcode.GET_DETAILS: "get-details",
    Opcode.END_SESSION: "end-session",
}


class Command:
    """One opcode plus its optional payload."""

    def __init__(self, opcode: Opcode, payload: Optional[str] = None):
        if opcode.takes_payload:
            if payload is None or not payload.strip():
                raise ValueError(f"{opcode.value} requires a payload")
            payload = payload.strip()
            if "\n" in payload or "\r" in payload:
                raise ValueError(f"{opcode.value} payload must be a single line")
        elif payload is not None:
            raise ValueError(f"{opcode.value} takes no payload")
        self.opcode = opcode
        self.payload = payload

    def encode(self) -> str:
        if self.payload is None:
            return self.opcode.value
        return f"{self.opcode.value}:{self.payload}"

    @classmethod
    def parse(cls, line: str) -> "Command":
        """Parse one command line; unknown or malformed tokens raise UnknownOpcode."""
        text = line.strip()
        token, sep, payload = text.partition(":")
        try:
            opcode = Opcode(token)
        except ValueError:
            raise UnknownOpcode(text) from None
        try:
            return cls(opcode, payload if sep else None)
        except ValueError:
            raise UnknownOpcode(text) from None

    def __eq__(self, other):
        if not isinstance(other, Command):
            return NotImplemented
        return self.opcode is other.opcode and self.payload == other.payload

    def __repr__(self):
        return f"Command({self.encode()!r})"


class ResponseKind(Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    NO_SNAPSHOTS = "NO_SNAPSHOTS"
    READY = "READY"
    ENDED = "ENDED"
    BLOCK = "BLOCK"


class Response:
    """A status line or a sentinel-framed block written by the worker."""

    def __init__(self, kind: ResponseKind, message: str = "",
                 block: Optional[str] = None, lines: Optional[List[str]] = None):
        self.kind = kind
        self.message = message
        self.block = block
        self.lines = list(lines or [])

    @classmethod
    def success(cls, message: str) -> "Response":
        return cls(ResponseKind.SUCCESS, message)

    @classmethod
    def error(cls, message: str) -> "Response":
        return cls(ResponseKind.ERROR, message)

    @classmethod
    def ready(cls) -> "Response":
        return cls(ResponseKind.READY)

    @classmethod
    def ended(cls) -> "Response":
        return cls(ResponseKind.ENDED)

    @classmethod
    def no_snapshots(cls) -> "Response":
        return cls(ResponseKind.NO_SNAPSHOTS)

    @classmethod
    def block_of(cls, name: str, lines: List[str]) -> "Response":
        return cls(ResponseKind.BLOCK, block=name, lines=lines)

    @property
    def ok(self) -> bool:
        return self.kind is not ResponseKind.ERROR

    def encode(self) -> str:
        if self.kind is ResponseKind.SUCCESS:
            return f"{SUCCESS_PREFIX} {self.message}"
        if self.kind is ResponseKind.ERROR:
            return f"{ERROR_PREFIX} {self.message}"
        if self.kind is ResponseKind.NO_SNAPSHOTS:
            return NO_SNAPSHOTS
        if self.kind is ResponseKind.READY:
            return SESSION_READY
        if self.kind is ResponseKind.ENDED:
            return SESSION_ENDED
        return wrap_block(self.block, self.lines)

    @classmethod
    def parse(cls, raw: str) -> "Response":
        """Parse one complete response message."""
        text = raw.rstrip("\n")
        if not text:
            raise ProtocolError("Empty response")
        first = text.split("\n", 1)[0]
        if block_name(first) is not None:
            name, body = unwrap_block(text)
            return cls.block_of(name, body)
        if "\n" in text:
            raise ProtocolError(f"Unframed multi-line response starting with {first!r}")

        line = text.strip()
        if line.startswith(SUCCESS_PREFIX):
            return cls.success(line[len(SUCCESS_PREFIX):].strip())
        if line.startswith(ERROR_PREFIX):
            return cls.error(line[len(ERROR_PREFIX):].strip())
        if line == NO_SNAPSHOTS:
            return cls.no_snapshots()
        if line == SESSION_READY:
            return cls.ready()
        if line == SESSION_ENDED:
            return cls.ended()
        raise ProtocolError(f"Unrecognized response: {line!r}")

    def raise_for_error(self, opcode: Optional[Opcode] = None) -> "Response":
        """Raise OperationError if the worker reported a failure."""
        if self.kind is ResponseKind.ERROR:
            raise OperationError(self.message, opcode.value if opcode else None)
        return self

    def __repr__(self):
        if self.kind is ResponseKind.BLOCK:
            return f"Response(BLOCK {self.block}, {len(self.lines)} lines)"
        return f"Response({self.encode()!r})"


# Response kinds each opcode may legally receive; ERROR is always legal.
_EXPECTED: Dict[Opcode, FrozenSet[Tuple[ResponseKind, Optional[str]]]] = {
    Opcode.LIST_SNAPSHOTS: frozenset({(ResponseKind.NO_SNAPSHOTS, None),
                                      (ResponseKind.BLOCK, SNAPSHOTS_BLOCK)}),
    Opcode.GET_DETAILS: frozenset({(ResponseKind.BLOCK, DETAILS_BLOCK)}),
    Opcode.END_SESSION: frozenset({(ResponseKind.ENDED, None)}),
}
_STATUS_ONLY = frozenset({(ResponseKind.SUCCESS, None)})


def check_response(command: Command, response: Response) -> Response:
    """Raise ProtocolError if `response` is not a legal answer to `command`."""
    if response.kind is ResponseKind.ERROR:
        return response
    expected = _EXPECTED.get(command.opcode, _STATUS_ONLY)
    if (response.kind, response.block) not in expected:
        raise ProtocolError(
            f"Unexpected response to {command.opcode.value}: {response!r}")
    return response
