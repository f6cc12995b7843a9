"""
In-memory VM backend for worker and supervisor tests.

The scenario dict controls how the fake behaves; fake_worker.py reads it from
the VMMANAGE_FAKE_SCENARIO environment variable.
"""

import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from vmmanage.backend import POWERED_OFF, POWERED_ON, BackendError, Snapshot, VMBackend

SNAPSHOT_TIME = datetime(2025, 1, 1, 10, 0, 0)


def make_snapshot(name: str, description: str = "", size_gb: Optional[float] = 1.5) -> Snapshot:
    return Snapshot(name, SNAPSHOT_TIME, description, size_gb)


class FakeBackend(VMBackend):
    """
    Scenario keys:
      vms            names that resolve (default: any name)
      connect_error  message raised from connect()
      ready_delay    seconds connect() takes
      never_ready    connect() never returns
      power_state    initial power state
      tools_running  guest tools state
      snapshots      list of snapshot names
      fail_on        {method: message} raising BackendError
      crash_on       method name that kills the process
      slow_ops       {method: seconds}
    """

    def __init__(self, server: str = "vc01", scenario: Optional[Dict[str, Any]] = None):
        scenario = scenario or {}
        self.server = server
        self.vms = scenario.get("vms")
        self.connect_error = scenario.get("connect_error")
        self.ready_delay = scenario.get("ready_delay", 0)
        self.never_ready = scenario.get("never_ready", False)
        self.state = scenario.get("power_state", POWERED_ON)
        self.tools = scenario.get("tools_running", True)
        self.snapshots: List[Snapshot] = [make_snapshot(name, f"{name} description")
                                          for name in scenario.get("snapshots", [])]
        self.fail_on: Dict[str, str] = scenario.get("fail_on", {})
        self.crash_on = scenario.get("crash_on")
        self.slow_ops: Dict[str, float] = scenario.get("slow_ops", {})
        self.calls: List[str] = []
        self.connected = False
        self.vm_name: Optional[str] = None

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self.crash_on == method:
            os._exit(3)
        if method in self.slow_ops:
            time.sleep(self.slow_ops[method])
        if method in self.fail_on:
            raise BackendError(self.fail_on[method])

    def connect(self) -> None:
        self._enter("connect")
        if self.ready_delay:
            time.sleep(self.ready_delay)
        while self.never_ready:
            time.sleep(1)
        if self.connect_error:
            raise BackendError(self.connect_error)
        self.connected = True

    def disconnect(self) -> None:
        self._enter("disconnect")
        self.connected = False

    def resolve(self, vm_name: str) -> None:
        self._enter("resolve")
        if self.vms is not None and vm_name not in self.vms:
            raise BackendError(f"VM {vm_name} not found")
        self.vm_name = vm_name

    def power_state(self) -> str:
        self._enter("power_state")
        return self.state

    def guest_tools_running(self) -> bool:
        self._enter("guest_tools_running")
        return self.tools and self.state == POWERED_ON

    def list_snapshots(self) -> List[Snapshot]:
        self._enter("list_snapshots")
        return list(self.snapshots)

    def create_snapshot(self, name: str, description: str) -> Snapshot:
        self._enter("create_snapshot")
        snapshot = make_snapshot(name, description, size_gb=None)
        self.snapshots.append(snapshot)
        return snapshot

    def remove_snapshot(self, snapshot: Snapshot) -> None:
        self._enter("remove_snapshot")
        self.snapshots = [s for s in self.snapshots if s.name != snapshot.name]

    def reset(self) -> None:
        self._enter("reset")
        self.state = POWERED_ON

    def power_off(self) -> None:
        self._enter("power_off")
        self.state = POWERED_OFF

    def power_on(self) -> None:
        self._enter("power_on")
        self.state = POWERED_ON

    def shutdown_guest(self) -> None:
        self._enter("shutdown_guest")
        self.state = POWERED_OFF

    def reboot_guest(self) -> None:
        self._enter("reboot_guest")

    def details(self):
        self._enter("details")
        return [
            ("Basic Information", [
                ("Name", self.vm_name),
                ("Power State", self.state),
                ("Guest OS", "Ubuntu Linux (64-bit)"),
                ("CPU Count", "2"),
                ("Memory", "4 GB"),
            ]),
            ("Infrastructure", [
                ("vCenter Server", self.server),
                ("ESXi Host", "esx01.example.com"),
            ]),
        ]
