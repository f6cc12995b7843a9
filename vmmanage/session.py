"""
Persistent VM sessions.

A session is one authenticated worker process bound to one VM. The supervisor
opens it once, then exchanges one command and one response at a time over the
session's command channel, and finally shuts the worker down.
"""

import atexit
import logging
import subprocess
import time
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, NamedTuple, Optional

from vmmanage.channel import CommandChannel
from vmmanage.config import Settings
from vmmanage.errors import (
    ChannelClosed,
    ConnectFailed,
    ProtocolError,
    SessionActive,
    SessionError,
    SessionNotReady,
    Timeout,
    WorkerDead,
)
from vmmanage.protocol import (
    SESSION_READY,
    Command,
    Opcode,
    Response,
    ResponseKind,
    check_response,
)
from vmmanage.utils import ProcessWithOutput, cleanup_old_logs

logger = logging.getLogger(__name__)


class Target(NamedTuple):
    """A VM and the vCenter server it lives on."""
    name: str
    server: str

    def __str__(self):
        return f"{self.name} on {self.server}"


class SessionState(Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    ENDED = "ended"
    FAILED = "failed"


class Session:
    """One engagement with one target, owned by the caller."""

    def __init__(self, session_id: str, target: Target, channel: CommandChannel,
                 worker: ProcessWithOutput) -> None:
        self.id = session_id
        self.target = target
        self.channel = channel
        self.worker = worker
        self.state = SessionState.INITIALIZING
        self.commands_sent = 0
        self.released = False

    @property
    def active(self) -> bool:
        return self.state in (SessionState.READY, SessionState.BUSY)

    def __repr__(self):
        return f"Session({self.id}, {self.target}, {self.state.value})"


class SessionSupervisor:
    """Owns the session state machine: open, send, close."""

    def __init__(self, settings: Optional[Settings] = None, debug: bool = False) -> None:
        self.settings = settings or Settings.load()
        self.debug = debug
        self._active: Optional[Session] = None

        cleanup_old_logs(self.settings.state_dir, self.settings.log_max_age_days)
        atexit.register(self.close_active)

    @property
    def active_session(self) -> Optional[Session]:
        if self._active is not None and not self._active.released:
            return self._active
        return None

    def open(self, target: Target) -> Session:
        """Spawn a worker for target and wait for it to report ready."""
        current = self.active_session
        if current is not None:
            if current.state not in (SessionState.ENDED, SessionState.FAILED):
                raise SessionActive(f"Session {current.id} for {current.target} is still {current.state.value}")
            # A failed session's worker may still be running
            self._release(current)

        channel, worker_sock = CommandChannel.pair()
        session_id = channel.channel_id
        cmd = self.settings.worker_argv() + [
            "--vm", target.name,
            "--server", target.server,
            "--channel-fd", str(worker_sock.fileno()),
            "--session-id", session_id,
            "--state-dir", str(self.settings.state_dir),
            "--poll-interval", str(self.settings.worker_poll_interval),
        ]
        if self.debug:
            cmd.append("--verbose")

        logger.info(f"🚀 Starting persistent session for {target}...")
        try:
            worker = ProcessWithOutput(
                cmd,
                state_dir=self.settings.state_dir,
                log_prefix=f"session_{session_id}",
                debug=self.debug,
                pass_fds=(worker_sock.fileno(),),
            )
        except OSError as e:
            channel.close()
            raise ConnectFailed(f"Could not start session worker: {e}") from e
        finally:
            worker_sock.close()

        session = Session(session_id, target, channel, worker)
        self._active = session
        logger.debug(f"Session {session_id} worker PID: {worker.pid}")

        try:
            self._wait_for_ready(session)
        except SessionError:
            session.state = SessionState.FAILED
            self._release(session)
            raise
        except Exception as e:
            session.state = SessionState.FAILED
            self._release(session)
            raise ConnectFailed(f"Session startup failed: {e}") from e

        session.state = SessionState.READY
        logger.info("✅ Persistent session established - instant operations ready!")
        return session

    def _wait_for_ready(self, session: Session) -> None:
        """Poll for SESSION_READY with a fixed number of fixed-interval attempts."""
        attempts = self.settings.open_attempts
        for attempt in range(attempts):
            try:
                message = session.channel.receive(self.settings.open_interval)
            except ChannelClosed:
                self._reap(session)
                raise ConnectFailed(self._exit_reason(session))

            if message is None and not session.worker.is_alive():
                # Pick up anything written just before exiting
                try:
                    message = session.channel.receive(0)
                except ChannelClosed:
                    message = None
                if message is None:
                    raise ConnectFailed(self._exit_reason(session))

            if message is not None:
                try:
                    response = Response.parse(message)
                except ProtocolError:
                    response = None
                if response is not None and response.kind is ResponseKind.READY:
                    logger.debug(f"Session {session.id} ready after {attempt + 1}/{attempts} attempts")
                    return
                if response is not None and response.kind is ResponseKind.ERROR:
                    raise ConnectFailed(response.message)
                raise ConnectFailed(f"Unexpected startup message while waiting for {SESSION_READY}: "
                                    f"{message!r}")

            if attempt % 5 == 4:
                logger.debug(f"Waiting for session... [{attempt + 1}/{attempts}]")

        total = attempts * self.settings.open_interval
        raise Timeout(f"Session startup timeout after {attempts} attempts (~{total:g}s)")

    def _exit_reason(self, session: Session) -> str:
        code = session.worker.poll()
        reason = f"Session worker exited with code {code} before becoming ready"
        tail = session.worker.stderr_tail(1)
        if tail:
            reason += f": {tail[-1]}"
        return reason

    def send(self, session: Session, command: Command, timeout: Optional[float] = None) -> Response:
        """
        Run one command round trip.

        Returns the worker's response, including ERROR responses (see
        Response.raise_for_error). Raises Timeout, WorkerDead or ProtocolError,
        all of which leave the session FAILED.
        """
        if session.state is not SessionState.READY:
            raise SessionNotReady(f"Session {session.id} is {session.state.value}, not ready")
        if timeout is None:
            timeout = self.settings.timeout_for(command.opcode)

        try:
            response = self._round_trip(session, command, timeout)
        except SessionError:
            session.state = SessionState.FAILED
            raise
        except OSError as e:
            session.state = SessionState.FAILED
            raise WorkerDead(f"Session channel failed: {e}") from e
        except Exception as e:
            session.state = SessionState.FAILED
            raise ProtocolError(f"Internal fault during {command.opcode.value}: {e}") from e

        if response.kind is ResponseKind.ENDED:
            session.state = SessionState.ENDED
            self._release(session)
        else:
            session.state = SessionState.READY
        return response

    def _round_trip(self, session: Session, command: Command, timeout: float) -> Response:
        channel = session.channel

        # A prior response must never leak into this round trip
        channel.drain()

        if not session.worker.is_alive():
            raise WorkerDead(f"Session died unexpectedly (exit code {session.worker.poll()})")

        session.state = SessionState.BUSY
        logger.debug(f"Session {session.id} -> {command.encode()}")
        try:
            channel.send(command.encode())
        except ChannelClosed as e:
            raise WorkerDead(f"Session died unexpectedly: {e.message}") from e
        session.commands_sent += 1

        interval = self.settings.poll_interval
        attempts = max(1, int(-(-timeout // interval)))
        for _ in range(attempts):
            try:
                message = channel.receive(interval)
            except ChannelClosed:
                self._reap(session)
                raise WorkerDead(f"Session died during {command.opcode.value} "
                                 f"(exit code {session.worker.poll()})")
            if message is not None:
                response = check_response(command, Response.parse(message))
                logger.debug(f"Session {session.id} <- {response!r}")
                return response
            if not session.worker.is_alive():
                raise WorkerDead(f"Session died during {command.opcode.value} "
                                 f"(exit code {session.worker.poll()})")

        raise Timeout(f"Command timeout after {timeout:g}s")

    def execute(self, session: Session, opcode: Opcode, payload: Optional[str] = None,
                timeout: Optional[float] = None) -> Response:
        """Send opcode and raise OperationError if the worker reports failure."""
        response = self.send(session, Command(opcode, payload), timeout)
        return response.raise_for_error(opcode)

    def close(self, session: Session) -> None:
        """
        Shut the worker down and remove the channel.

        Asks politely first, then escalates to SIGTERM and SIGKILL. Safe to
        call repeatedly and on a worker that already exited.
        """
        if session.released:
            return

        logger.info(f"🔌 Ending VM session for {session.target}...")
        try:
            if session.state is SessionState.READY and session.worker.is_alive():
                self._request_end(session)
        except Exception as e:
            logger.debug(f"End-of-session request failed: {e}")
        finally:
            if session.state is not SessionState.FAILED:
                session.state = SessionState.ENDED
            self._release(session)

    def _request_end(self, session: Session) -> None:
        channel = session.channel
        channel.drain()
        channel.send(Command(Opcode.END_SESSION).encode())
        deadline = time.monotonic() + self.settings.close_grace
        while time.monotonic() < deadline:
            try:
                message = channel.receive(min(self.settings.poll_interval, deadline - time.monotonic()))
            except ChannelClosed:
                break
            if message is not None and Response.parse(message).kind is ResponseKind.ENDED:
                logger.debug(f"Session {session.id} acknowledged end of session")
                break
            if not session.worker.is_alive():
                break
        try:
            session.worker.wait(timeout=max(0.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            pass

    def _release(self, session: Session) -> None:
        """Make sure the worker is gone, then remove channel and log files."""
        if session.released:
            return
        try:
            self._stop_worker(session.worker)
        finally:
            session.channel.close()
            session.worker.cleanup()
            session.released = True
            if self._active is session:
                self._active = None

    def _reap(self, session: Session) -> None:
        try:
            session.worker.wait(timeout=self.settings.kill_grace)
        except subprocess.TimeoutExpired:
            pass

    def _stop_worker(self, worker: ProcessWithOutput) -> None:
        if not worker.is_alive():
            worker.wait()
            return

        logger.debug(f"Stopping session worker (PID: {worker.pid})...")
        worker.terminate()
        try:
            worker.wait(timeout=self.settings.terminate_grace)
            return
        except subprocess.TimeoutExpired:
            pass

        logger.warning("⚠️ Session worker didn't stop gracefully, forcing shutdown...")
        worker.kill()
        try:
            worker.wait(timeout=self.settings.kill_grace)
        except subprocess.TimeoutExpired:
            logger.error(f"❌ Session worker (PID: {worker.pid}) survived SIGKILL")

    def close_active(self) -> None:
        """Close whatever session is still open (registered with atexit)."""
        session = self.active_session
        if session is None:
            return
        try:
            self.close(session)
        except Exception as e:
            logger.warning(f"⚠️ Session cleanup failed: {e}")

    @contextmanager
    def session(self, target: Target) -> Iterator[Session]:
        """Open a session for target and always close it afterwards."""
        session = self.open(target)
        try:
            yield session
        finally:
            self.close(session)
