"""
Half-duplex command channel between the controller and one worker.

The channel is a connected local stream socket pair. The controller keeps one
end; the worker inherits the other as a file descriptor. Messages are UTF-8
lines; a <NAME>_START line opens a block that is delivered as one message once
its <NAME>_END line arrives. Receiving a message consumes it.
"""

import logging
import os
import secrets
import select
import socket
import time
from typing import List, Optional, Tuple

from vmmanage.errors import ChannelClosed, ProtocolError
from vmmanage.protocol import block_name, end_sentinel

logger = logging.getLogger(__name__)

_RECV_SIZE = 65536


def new_channel_id() -> str:
    """Identity unique across concurrently running controllers."""
    return f"{os.getpid()}-{time.time_ns()}-{secrets.token_hex(4)}"


class CommandChannel:
    """One end of a command channel."""

    def __init__(self, sock: socket.socket, channel_id: str = ""):
        self.channel_id = channel_id
        self._sock = sock
        self._buffer = b""
        self._lines: List[str] = []
        self._eof = False
        self._closed = False

    @classmethod
    def pair(cls, channel_id: Optional[str] = None) -> Tuple["CommandChannel", socket.socket]:
        """
        Create a connected channel.

        Returns the controller end and the raw socket meant for the worker.
        The worker socket is inheritable so it can be passed with pass_fds.
        """
        channel_id = channel_id or new_channel_id()
        controller_sock, worker_sock = socket.socketpair()
        worker_sock.set_inheritable(True)
        return cls(controller_sock, channel_id), worker_sock

    @classmethod
    def from_fd(cls, fd: int, channel_id: str = "") -> "CommandChannel":
        """Adopt an inherited socket descriptor (worker side)."""
        return cls(socket.socket(fileno=fd), channel_id)

    @property
    def closed(self) -> bool:
        return self._closed

    def fileno(self) -> int:
        return self._sock.fileno()

    def send(self, message: str) -> None:
        """Write one complete message in a single unit."""
        if self._closed:
            raise ChannelClosed(f"Channel {self.channel_id} is closed")
        text = message.rstrip("\n")
        lines = text.split("\n")
        name = block_name(lines[0])
        if name is None and len(lines) > 1:
            raise ProtocolError(f"Unframed multi-line message starting with {lines[0]!r}")
        if name is not None and (len(lines) < 2 or lines[-1] != end_sentinel(name)):
            raise ProtocolError(f"Block {name} is missing its {end_sentinel(name)} sentinel")
        try:
            self._sock.sendall((text + "\n").encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ChannelClosed(f"Channel {self.channel_id} peer is gone: {e}") from e

    def receive(self, timeout: float) -> Optional[str]:
        """
        Wait up to `timeout` seconds for one complete message.

        Returns None when nothing complete arrived in time. Raises
        ChannelClosed once the peer is gone and nothing is left to read, and
        ProtocolError if the peer went away in the middle of a block.
        """
        if self._closed:
            raise ChannelClosed(f"Channel {self.channel_id} is closed")
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            message = self._next_message()
            if message is not None:
                return message
            if self._eof:
                if self._lines or self._buffer:
                    raise ProtocolError(
                        f"Channel {self.channel_id} closed inside a partial message")
                raise ChannelClosed(f"Channel {self.channel_id} peer closed the connection")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            readable, _, _ = select.select([self._sock], [], [], remaining)
            if readable:
                self._read_available()

    def pending(self) -> bool:
        """True if an unconsumed message (or part of one) is buffered or readable."""
        if self._closed:
            return False
        if self._lines or self._buffer:
            return True
        if self._eof:
            return False
        readable, _, _ = select.select([self._sock], [], [], 0)
        if readable:
            self._read_available()
        return bool(self._lines or self._buffer)

    def drain(self) -> List[str]:
        """Discard every complete message currently available and return them."""
        stale = []
        while True:
            try:
                message = self.receive(0)
            except ChannelClosed:
                break
            if message is None:
                break
            stale.append(message)
        if stale:
            logger.warning(f"⚠️ Discarded {len(stale)} stale message(s) on channel {self.channel_id}")
        return stale

    def close(self) -> None:
        """Close this end. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError:
            pass

    def _read_available(self) -> None:
        try:
            data = self._sock.recv(_RECV_SIZE)
        except (ConnectionResetError, BrokenPipeError):
            data = b""
        if not data:
            self._eof = True
            return
        self._buffer += data
        *complete, self._buffer = self._buffer.split(b"\n")
        for raw in complete:
            self._lines.append(raw.decode("utf-8", errors="replace").rstrip("\r"))

    def _next_message(self) -> Optional[str]:
        if not self._lines:
            return None
        name = block_name(self._lines[0])
        if name is None:
            return self._lines.pop(0)
        closing = end_sentinel(name)
        try:
            last = self._lines.index(closing, 1)
        except ValueError:
            return None  # block not complete yet
        message = self._lines[:last + 1]
        del self._lines[:last + 1]
        return "\n".join(message)
