"""
Main entry point for vmmanage command-line interface.

This module contains all the CLI command definitions and the main entry point.
The session machinery is in session.py, the per-VM worker in worker.py.
"""

import logging
import re
from typing import List, Optional

import typer

from vmmanage.config import Settings
from vmmanage.credentials import CredentialStore
from vmmanage.errors import OperationError, SessionError
from vmmanage.inventory import Record, RecordStore
from vmmanage.protocol import Opcode, Response, ResponseKind
from vmmanage.session import Session, SessionSupervisor, Target
from vmmanage.utils import setup_logging

logger = logging.getLogger(__name__)

# Global state for options
_global_state = {
    "state_dir": None,
    "verbose": False,
    "debug": False,
}

# Initialize typer app
app = typer.Typer(
    name="vmmanage",
    help="Search cached VMs and manage them through persistent vCenter sessions",
    epilog="""
Examples:
  vmmanage add-credentials vcenter01.example.com
  vmmanage refresh
  vmmanage search web
  vmmanage run web-01 list-snapshots
  vmmanage run web-01 delete-snapshot --snapshot Manual-Snapshot-2025-01-01-10-00-00
  vmmanage manage web
    """
)

# Interactive action menu: key, label, opcode, needs confirmation
MENU = [
    ("1", "List snapshots", Opcode.LIST_SNAPSHOTS, False),
    ("2", "Create snapshot", Opcode.CREATE_SNAPSHOT, False),
    ("3", "Delete snapshot", Opcode.DELETE_SNAPSHOT, True),
    ("4", "Restart VM (hard reset)", Opcode.RESTART_VM, True),
    ("5", "Power off VM (hard)", Opcode.POWEROFF_VM, True),
    ("6", "Power on VM", Opcode.POWERON_VM, False),
    ("7", "Graceful shutdown", Opcode.GRACEFUL_SHUTDOWN, True),
    ("8", "Graceful restart", Opcode.GRACEFUL_RESTART, True),
    ("9", "Show VM details", Opcode.GET_DETAILS, False),
]

_SNAPSHOT_LINE = re.compile(r"^\d+\. (.+)$")


def _setup_global_options(
    state_dir: Optional[str] = typer.Option(None, help="Override default state directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging and keep session logs"),
) -> None:
    """Set up global options that apply to all commands."""
    _global_state["state_dir"] = state_dir
    _global_state["verbose"] = verbose
    _global_state["debug"] = debug

    # Debug takes precedence over verbose
    if debug:
        setup_logging(verbose=True)
        logger.debug("Debug mode enabled - session worker logs are kept")
    elif verbose:
        setup_logging(verbose=True)
        logger.debug("Verbose mode enabled for all commands")
    else:
        setup_logging(verbose=False)


@app.callback()
def main_callback(
    state_dir: Optional[str] = typer.Option(None, help="Override default state directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging and keep session logs"),
) -> None:
    """Main callback to handle global options."""
    _setup_global_options(state_dir, verbose, debug)


def _settings() -> Settings:
    return Settings.load(_global_state["state_dir"])


def _fetch_inventory(server: str, username: str, password: str) -> List[Record]:
    from vmmanage.vsphere import fetch_inventory
    return fetch_inventory(server, username, password)


def _open_store(settings: Settings) -> RecordStore:
    """Record store for settings, building the cache first if there is none."""
    store = RecordStore(settings.cache_file)
    if not store.exists():
        logger.info("VM cache not found. Building cache first...")
        try:
            store.rebuild(CredentialStore(settings.credentials_file), _fetch_inventory)
        except (ValueError, RuntimeError) as e:
            logger.error(f"❌ {e} - run 'vmmanage add-credentials' and 'vmmanage refresh'")
            raise typer.Exit(1)
    age = store.age_days()
    if age > settings.cache_max_age_days:
        logger.warning(f"⚠️ VM cache is {age} days old - consider running 'vmmanage refresh'")
    return store


def _print_records(records: List[Record]) -> None:
    typer.echo(f"{'#':>3}  {'NAME':<40} {'STATUS':<12} {'HOST':<30} SERVER")
    for index, record in enumerate(records, 1):
        typer.echo(f"{index:>3}. {record.name:<40} {record.status:<12} {record.location:<30} {record.group}")


def _print_response(response: Response) -> None:
    if response.kind is ResponseKind.BLOCK:
        for line in response.lines:
            typer.echo(line)
    elif response.kind is ResponseKind.NO_SNAPSHOTS:
        typer.echo("No snapshots found")
    elif response.ok:
        logger.info(f"✅ {response.message}")
    else:
        logger.error(f"❌ {response.message}")


def _resolve_target(store: RecordStore, vm: str, server: Optional[str]) -> Target:
    if server:
        return Target(vm, server)
    records = store.find(vm)
    if not records:
        logger.error(f"❌ VM {vm} not found in cache - check the name or pass --server")
        raise typer.Exit(1)
    servers = sorted({record.group for record in records})
    if len(servers) > 1:
        logger.error(f"❌ VM {vm} exists on several servers ({', '.join(servers)}) - pass --server")
        raise typer.Exit(1)
    return records[0].target


@app.command()
def search(
    pattern: str = typer.Argument(..., help="Case-insensitive substring of the VM name")
) -> None:
    """Search the VM cache."""
    try:
        store = _open_store(_settings())
        matches = store.search(pattern)
        if not matches:
            logger.info(f"No VMs found matching '{pattern}'")
            raise typer.Exit(1)
        _print_records(matches)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        raise typer.Exit(130)


@app.command("cache-info")
def cache_info() -> None:
    """Show VM cache status."""
    settings = _settings()
    info = RecordStore(settings.cache_file).info()
    if not info["exists"]:
        typer.echo(f"Cache file: {settings.cache_file} (missing)")
        typer.echo("Run 'vmmanage refresh' to build it")
        return
    typer.echo(f"Cache file: {settings.cache_file}")
    typer.echo(f"Age: {info['age_days']} days")
    typer.echo(f"VMs: {info['count']}")
    typer.echo(f"Servers: {', '.join(info['groups']) or '-'}")
    if info["age_days"] > settings.cache_max_age_days:
        logger.warning("⚠️ Cache is stale - consider running 'vmmanage refresh'")


@app.command()
def refresh(
    server: Optional[List[str]] = typer.Option(None, "--server", help="Only enumerate these servers")
) -> None:
    """Rebuild the VM cache from every configured vCenter server."""
    settings = _settings()
    credentials = CredentialStore(settings.credentials_file)
    store = RecordStore(settings.cache_file)

    try:
        store.rebuild(credentials, _fetch_inventory, servers=server or None)
    except (ValueError, RuntimeError) as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        raise typer.Exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        raise typer.Exit(1)


@app.command("add-credentials")
def add_credentials(
    server: str = typer.Argument(..., help="vCenter server name"),
    username: str = typer.Option(..., prompt=True, help="vCenter username"),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="vCenter password"),
) -> None:
    """Store credentials for a vCenter server."""
    settings = _settings()
    try:
        CredentialStore(settings.credentials_file).add(server, username, password)
    except OSError as e:
        logger.error(f"❌ Could not store credentials: {e}")
        raise typer.Exit(1)


@app.command()
def run(
    vm: str = typer.Argument(..., help="VM name as it appears in the cache"),
    operation: str = typer.Argument(..., help="list-snapshots, create-snapshot, delete-snapshot, restart, "
                                              "power-off, power-on, graceful-shutdown, graceful-restart, "
                                              "get-details"),
    server: Optional[str] = typer.Option(None, help="vCenter server (default: looked up in the cache)"),
    snapshot: Optional[str] = typer.Option(None, help="Snapshot name for delete-snapshot"),
    timeout: Optional[float] = typer.Option(None, help="Response timeout in seconds (default: per operation)"),
) -> None:
    """Run one operation against a VM in a short-lived session."""
    settings = _settings()

    try:
        opcode = Opcode.from_cli_name(operation)
        if opcode is Opcode.END_SESSION:
            logger.error("❌ end-session is not an operation")
            raise typer.Exit(1)
        if opcode.takes_payload and not snapshot:
            logger.error(f"❌ {operation} needs --snapshot NAME")
            raise typer.Exit(1)

        if server:
            target = Target(vm, server)
        else:
            target = _resolve_target(_open_store(settings), vm, None)

        supervisor = SessionSupervisor(settings, debug=_global_state["debug"])
        with supervisor.session(target) as session:
            response = supervisor.execute(session, opcode, snapshot if opcode.takes_payload else None, timeout)
        _print_response(response)
    except SessionError as e:
        logger.error(f"❌ {e.message}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        raise typer.Exit(130)


def _pick_snapshot(supervisor: SessionSupervisor, session: Session) -> Optional[str]:
    response = supervisor.execute(session, Opcode.LIST_SNAPSHOTS)
    if response.kind is ResponseKind.NO_SNAPSHOTS:
        typer.echo("No snapshots found")
        return None

    names = [m.group(1) for m in map(_SNAPSHOT_LINE.match, response.lines) if m]
    _print_response(response)
    choice = typer.prompt("Snapshot number to delete (blank to cancel)", default="", show_default=False)
    if not choice.strip():
        return None
    if not choice.isdigit() or not 1 <= int(choice) <= len(names):
        logger.error(f"❌ Invalid selection: {choice}")
        return None
    return names[int(choice) - 1]


def _action_menu(supervisor: SessionSupervisor, session: Session) -> bool:
    """
    Drive one open session from the action menu.

    Returns True when the user asked to quit, False to go back to search.
    """
    actions = {key: (label, opcode, confirm) for key, label, opcode, confirm in MENU}
    while True:
        typer.echo("")
        typer.echo(f"Session: {session.target} ({session.commands_sent} commands sent)")
        for key, label, _, _ in MENU:
            typer.echo(f"  {key}) {label}")
        typer.echo("  b) Back to search (ends session)")
        typer.echo("  q) Quit")
        choice = typer.prompt("Select action").strip().lower()

        if choice == "q":
            return True
        if choice == "b":
            return False
        if choice not in actions:
            logger.error(f"❌ Invalid choice: {choice}")
            continue

        label, opcode, confirm = actions[choice]
        try:
            payload = None
            if opcode is Opcode.DELETE_SNAPSHOT:
                payload = _pick_snapshot(supervisor, session)
                if payload is None:
                    continue
            if confirm and not typer.confirm(f"{label} on {session.target.name}?"):
                continue
            _print_response(supervisor.execute(session, opcode, payload))
        except OperationError as e:
            logger.error(f"❌ {e.message}")
        except SessionError as e:
            logger.error(f"❌ {e.message}")
            logger.info("Session is no longer usable - returning to search")
            return False


@app.command()
def manage(
    pattern: Optional[str] = typer.Argument(None, help="Initial search pattern")
) -> None:
    """Interactively search VMs and manage one through a persistent session."""
    settings = _settings()
    supervisor = SessionSupervisor(settings, debug=_global_state["debug"])

    try:
        store = _open_store(settings)
        while True:
            if not pattern:
                pattern = typer.prompt("Search VMs (q to quit)").strip()
            if pattern.lower() == "q":
                return

            matches = store.search(pattern)
            pattern = None
            if not matches:
                logger.info("No VMs found")
                continue
            _print_records(matches)

            choice = typer.prompt("Select VM number (blank to search again)", default="",
                                  show_default=False).strip()
            if not choice:
                continue
            if not choice.isdigit() or not 1 <= int(choice) <= len(matches):
                logger.error(f"❌ Invalid selection: {choice}")
                continue

            record = matches[int(choice) - 1]
            try:
                session = supervisor.open(record.target)
            except SessionError as e:
                logger.error(f"❌ {e.message}")
                continue
            try:
                quit_requested = _action_menu(supervisor, session)
            finally:
                supervisor.close(session)
            if quit_requested:
                return
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        raise typer.Exit(130)
    except typer.Exit:
        raise
    except typer.Abort:
        raise typer.Exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        raise typer.Exit(1)


def main() -> None:
    """Main entry point for vmmanage."""
    app()


if __name__ == "__main__":
    main()
