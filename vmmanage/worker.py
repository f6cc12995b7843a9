#!/usr/bin/env python3
"""
Session worker program.

Authenticates to one vCenter, resolves one VM, reports SESSION_READY and then
executes one command at a time from its command channel until END_SESSION.

Usage: vmmanage-worker --vm NAME --server HOST --channel-fd FD [options]
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import typer

from vmmanage.backend import POWERED_OFF, POWERED_ON, BackendError, Snapshot, VMBackend
from vmmanage.channel import CommandChannel
from vmmanage.config import Settings
from vmmanage.credentials import CredentialStore
from vmmanage.errors import ChannelClosed, ProtocolError, UnknownOpcode
from vmmanage.protocol import DETAILS_BLOCK, SNAPSHOTS_BLOCK, Command, Opcode, Response
from vmmanage.utils import setup_logging

logger = logging.getLogger(__name__)

SNAPSHOT_DESCRIPTION = "Manual snapshot created via vmmanage"

# Prefix of the ERROR response when a handler fails unexpectedly
_FAILURE_PREFIXES = {
    Opcode.LIST_SNAPSHOTS: "Failed to list snapshots",
    Opcode.CREATE_SNAPSHOT: "Failed to create snapshot",
    Opcode.DELETE_SNAPSHOT: "Failed to delete snapshot",
    Opcode.RESTART_VM: "Failed to restart VM",
    Opcode.POWEROFF_VM: "Failed to power off VM",
    Opcode.POWERON_VM: "Failed to power on VM",
    Opcode.GRACEFUL_SHUTDOWN: "Failed to initiate graceful shutdown",
    Opcode.GRACEFUL_RESTART: "Failed to initiate graceful restart",
    Opcode.GET_DETAILS: "Failed to get VM details",
}


def _one_line(text: str) -> str:
    return " ".join(str(text).splitlines())


def _format_time(created: datetime) -> str:
    return created.strftime("%Y-%m-%d %H:%M:%S")


class WorkerSession:
    """Executes opcodes against one resolved VM, strictly one at a time."""

    def __init__(self, channel: CommandChannel, backend: VMBackend, vm_name: str,
                 poll_interval: float = 0.1,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.channel = channel
        self.backend = backend
        self.vm_name = vm_name
        self.poll_interval = poll_interval
        self.clock = clock
        self.running = False
        self.handlers: Dict[Opcode, Callable[[Command], Response]] = {
            Opcode.LIST_SNAPSHOTS: self.list_snapshots,
            Opcode.CREATE_SNAPSHOT: self.create_snapshot,
            Opcode.DELETE_SNAPSHOT: self.delete_snapshot,
            Opcode.RESTART_VM: self.restart,
            Opcode.POWEROFF_VM: self.power_off,
            Opcode.POWERON_VM: self.power_on,
            Opcode.GRACEFUL_SHUTDOWN: self.graceful_shutdown,
            Opcode.GRACEFUL_RESTART: self.graceful_restart,
            Opcode.GET_DETAILS: self.get_details,
            Opcode.END_SESSION: self.end_session,
        }

    def start(self) -> bool:
        """Authenticate and resolve the VM once; report READY or one ERROR."""
        try:
            self.backend.connect()
            self.backend.resolve(self.vm_name)
        except Exception as e:
            logger.error(f"❌ Session startup failed: {e}")
            self._send_quietly(Response.error(_one_line(e)))
            self._disconnect()
            return False

        if not self._send_quietly(Response.ready()):
            self._disconnect()
            return False
        logger.info(f"✅ Session ready for {self.vm_name}")
        return True

    def run(self) -> int:
        """Serve commands until END_SESSION. Returns the process exit code."""
        if not self.start():
            return 1

        self.running = True
        while self.running:
            try:
                message = self.channel.receive(self.poll_interval)
            except ChannelClosed:
                logger.warning("⚠️ Controller went away, ending session")
                self._disconnect()
                return 1
            except ProtocolError as e:
                logger.error(f"❌ Unreadable command: {e}")
                self._send_quietly(Response.error(f"Session error - {e.message}"))
                self._disconnect()
                return 1
            if message is None:
                continue

            response = self.handle_line(message)
            try:
                self.channel.send(response.encode())
            except ProtocolError as e:
                logger.error(f"❌ Could not encode response: {e}")
                self._send_quietly(Response.error(f"Session error - {e.message}"))
            except ChannelClosed:
                logger.warning("⚠️ Controller went away before the response was delivered")
                self._disconnect()
                return 1
        return 0

    def handle_line(self, line: str) -> Response:
        try:
            command = Command.parse(line)
        except UnknownOpcode as e:
            logger.warning(f"⚠️ {e.message}")
            return Response.error(e.message)
        return self.handle(command)

    def handle(self, command: Command) -> Response:
        """Execute exactly one command to completion."""
        logger.info(f"Executing {command.encode()}")
        handler = self.handlers[command.opcode]
        try:
            return handler(command)
        except Exception as e:
            prefix = _FAILURE_PREFIXES.get(command.opcode, "Session error")
            logger.error(f"❌ {prefix}: {e}")
            return Response.error(f"{prefix} - {_one_line(e)}")

    def _age_days(self, created: datetime) -> float:
        now = self.clock()
        if created.tzinfo is not None and now.tzinfo is None:
            now = now.astimezone(created.tzinfo)
        elif created.tzinfo is None and now.tzinfo is not None:
            now = now.replace(tzinfo=None)
        return round((now - created).total_seconds() / 86400, 1)

    def list_snapshots(self, command: Command) -> Response:
        snapshots = self.backend.list_snapshots()
        if not snapshots:
            return Response.no_snapshots()

        lines: List[str] = []
        for index, snapshot in enumerate(snapshots, 1):
            lines.append(f"{index}. {_one_line(snapshot.name)}")
            if snapshot.created is not None:
                lines.append(f"   Created: {_format_time(snapshot.created)}")
                lines.append(f"   Age: {self._age_days(snapshot.created)} days")
            if snapshot.size_gb is not None:
                lines.append(f"   Size: {round(snapshot.size_gb, 2)} GB")
            lines.append(f"   Description: {_one_line(snapshot.description)}")
            lines.append("")
        return Response.block_of(SNAPSHOTS_BLOCK, lines)

    def create_snapshot(self, command: Command) -> Response:
        name = self.clock().strftime("Manual-Snapshot-%Y-%m-%d-%H-%M-%S")
        snapshot = self.backend.create_snapshot(name, SNAPSHOT_DESCRIPTION)
        message = f"Snapshot '{name}' created successfully"
        if snapshot.size_gb is not None:
            message += f" (Size: {round(snapshot.size_gb, 2)} GB)"
        return Response.success(message)

    def delete_snapshot(self, command: Command) -> Response:
        name = command.payload
        snapshot = self.backend.find_snapshot(name)
        if snapshot is None:
            return Response.error(f"Snapshot '{name}' not found")
        try:
            self.backend.remove_snapshot(snapshot)
        except BackendError as e:
            return Response.error(f"Snapshot deletion failed - {_one_line(e)}")
        return Response.success(f"Snapshot '{name}' deleted successfully")

    def restart(self, command: Command) -> Response:
        self.backend.reset()
        return Response.success("VM restart initiated successfully")

    def power_off(self, command: Command) -> Response:
        if self.backend.power_state() == POWERED_OFF:
            return Response.success("VM is already powered off")
        self.backend.power_off()
        return Response.success("VM power off initiated successfully")

    def power_on(self, command: Command) -> Response:
        if self.backend.power_state() == POWERED_ON:
            return Response.success("VM is already powered on")
        self.backend.power_on()
        return Response.success("VM power on initiated successfully")

    def graceful_shutdown(self, command: Command) -> Response:
        if self.backend.power_state() == POWERED_OFF:
            return Response.success("VM is already powered off")
        if not self.backend.guest_tools_running():
            return Response.error("VMware Tools not available - use hard power off instead")
        self.backend.shutdown_guest()
        return Response.success(
            "Graceful shutdown initiated - VM will shut down when guest OS completes the process")

    def graceful_restart(self, command: Command) -> Response:
        if self.backend.power_state() != POWERED_ON:
            return Response.error("Cannot restart a powered off VM - power it on first")
        if not self.backend.guest_tools_running():
            return Response.error("VMware Tools not available - use hard restart instead")
        self.backend.reboot_guest()
        return Response.success(
            "Graceful restart initiated - VM will restart when guest OS completes the process")

    def get_details(self, command: Command) -> Response:
        lines = [f"VM Details for {self.vm_name}:", ""]
        for title, items in self.backend.details():
            lines.append(f"{title}:")
            for label, value in items:
                lines.append(f"  {label}: {_one_line(value)}")
            lines.append("")

        lines.append("Snapshots:")
        try:
            lines.extend(self._snapshot_summary(self.backend.list_snapshots()))
        except Exception as e:
            logger.debug(f"Snapshot summary failed: {e}")
            lines.append("  Unable to retrieve snapshot information")
        return Response.block_of(DETAILS_BLOCK, lines)

    def _snapshot_summary(self, snapshots: List[Snapshot]) -> List[str]:
        if not snapshots:
            return ["  No snapshots found"]
        lines = [f"  Total snapshots: {len(snapshots)}"]
        total_size = 0.0
        for snapshot in snapshots:
            lines.append(f"  - {_one_line(snapshot.name)}")
            if snapshot.created is not None:
                lines.append(f"    Created: {_format_time(snapshot.created)}")
                lines.append(f"    Age: {self._age_days(snapshot.created)} days")
            else:
                lines.append("    Age: Unknown")
            if snapshot.size_gb is not None:
                total_size += snapshot.size_gb
                lines.append(f"    Size: {round(snapshot.size_gb, 2)} GB")
            else:
                lines.append("    Size: Unknown")
            if snapshot.description:
                lines.append(f"    Description: {_one_line(snapshot.description)}")
        if total_size > 0:
            lines.append(f"  Total Snapshot Size: {round(total_size, 2)} GB")
        return lines

    def end_session(self, command: Command) -> Response:
        self._disconnect()
        self.running = False
        return Response.ended()

    def _disconnect(self) -> None:
        try:
            self.backend.disconnect()
        except Exception as e:
            logger.debug(f"Disconnect failed: {e}")

    def _send_quietly(self, response: Response) -> bool:
        try:
            self.channel.send(response.encode())
        except (ChannelClosed, ProtocolError, OSError) as e:
            logger.error(f"❌ Could not deliver response: {e}")
            return False
        return True


BackendFactory = Callable[[str, Optional[Path]], VMBackend]


def vsphere_backend(server: str, state_dir: Optional[Path]) -> VMBackend:
    """Build the pyVmomi backend with the stored credentials for server."""
    from vmmanage.vsphere import VSphereBackend

    settings = Settings(state_dir)
    credentials = CredentialStore(settings.credentials_file).get(server)
    if credentials is None:
        raise BackendError(f"No credentials found for {server}")
    username, password = credentials
    return VSphereBackend(server, username, password)


def build_app(backend_factory: BackendFactory) -> typer.Typer:
    """Worker CLI bound to a backend factory."""
    app = typer.Typer(
        name="vmmanage-worker",
        help="Persistent session worker for one VM (started by vmmanage)",
        add_completion=False,
    )

    @app.command()
    def serve(
        vm: str = typer.Option(..., "--vm", help="Name of the VM to manage"),
        server: str = typer.Option(..., "--server", help="vCenter server the VM lives on"),
        channel_fd: int = typer.Option(..., "--channel-fd", help="Inherited command channel descriptor"),
        session_id: str = typer.Option("", "--session-id", help="Session identity for logging"),
        state_dir: Optional[str] = typer.Option(None, "--state-dir", help="Override default state directory"),
        poll_interval: float = typer.Option(0.1, "--poll-interval", help="Command poll interval in seconds"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    ) -> None:
        """Serve one session over the inherited channel."""
        setup_logging(verbose=verbose)
        logger.info(f"🚀 Starting session {session_id} for {vm} on {server}")

        channel = CommandChannel.from_fd(channel_fd, session_id)
        try:
            try:
                backend = backend_factory(server, Path(state_dir) if state_dir else None)
            except Exception as e:
                logger.error(f"❌ {e}")
                channel.send(Response.error(_one_line(e)).encode())
                raise typer.Exit(1)

            code = WorkerSession(channel, backend, vm, poll_interval=poll_interval).run()
        finally:
            channel.close()
        logger.info(f"Session {session_id} finished with exit code {code}")
        raise typer.Exit(code)

    return app


app = build_app(vsphere_backend)


def main() -> None:
    """Main entry point for vmmanage-worker."""
    app()


if __name__ == "__main__":
    main()
