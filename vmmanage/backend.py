"""
Remote management endpoint seen by the worker.

The worker talks to one VM through a VMBackend. VSphereBackend (vsphere.py)
is the production implementation; tests drive the worker with an in-memory one.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, NamedTuple, Optional, Tuple

POWERED_ON = "poweredOn"
POWERED_OFF = "poweredOff"
SUSPENDED = "suspended"


class BackendError(Exception):
    """A remote call or remote task failed."""


class Snapshot(NamedTuple):
    name: str
    created: Optional[datetime]
    description: str = ""
    size_gb: Optional[float] = None
    handle: Any = None


# (section title, [(label, value), ...])
DetailSection = Tuple[str, List[Tuple[str, str]]]


class VMBackend(ABC):
    """Operations on one resolved VM behind one authenticated connection."""

    @abstractmethod
    def connect(self) -> None:
        """Authenticate to the endpoint. Raises BackendError."""

    @abstractmethod
    def disconnect(self) -> None:
        """Release the authenticated connection."""

    @abstractmethod
    def resolve(self, vm_name: str) -> None:
        """Look up the VM once. Raises BackendError if it does not exist."""

    @abstractmethod
    def power_state(self) -> str:
        """Fresh power state: POWERED_ON, POWERED_OFF or SUSPENDED."""

    @abstractmethod
    def guest_tools_running(self) -> bool:
        """True if the guest agent can take shutdown/restart requests."""

    @abstractmethod
    def list_snapshots(self) -> List[Snapshot]:
        pass

    def find_snapshot(self, name: str) -> Optional[Snapshot]:
        for snapshot in self.list_snapshots():
            if snapshot.name == name:
                return snapshot
        return None

    @abstractmethod
    def create_snapshot(self, name: str, description: str) -> Snapshot:
        """Create a snapshot and wait for the remote task."""

    @abstractmethod
    def remove_snapshot(self, snapshot: Snapshot) -> None:
        """Remove a snapshot and wait for the remote task to finish."""

    @abstractmethod
    def reset(self) -> None:
        """Hard restart."""

    @abstractmethod
    def power_off(self) -> None:
        pass

    @abstractmethod
    def power_on(self) -> None:
        pass

    @abstractmethod
    def shutdown_guest(self) -> None:
        pass

    @abstractmethod
    def reboot_guest(self) -> None:
        pass

    @abstractmethod
    def details(self) -> List[DetailSection]:
        """Descriptive attributes grouped in sections (snapshots excluded)."""
