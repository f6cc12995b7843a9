"""
vSphere implementation of the worker backend, built on pyVmomi.
"""

import logging
from typing import Any, Dict, List, Optional, Set

from pyVim.connect import Disconnect, SmartConnect
from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl

from vmmanage.backend import BackendError, DetailSection, Snapshot, VMBackend
from vmmanage.inventory import Record

logger = logging.getLogger(__name__)


def _attr(obj: Any, path: str) -> Any:
    """Follow a dotted attribute path, returning None if any hop is missing."""
    for part in path.split("."):
        if obj is None:
            return None
        try:
            obj = getattr(obj, part)
        except (AttributeError, vmodl.MethodFault):
            return None
    return obj


def _connect(server: str, username: str, password: str, port: int = 443):
    try:
        return SmartConnect(host=server, user=username, pwd=password, port=port,
                            disableSslCertValidation=True)
    except vim.fault.InvalidLogin as e:
        raise BackendError(f"Invalid login for {server}: {e.msg}") from e
    except (vmodl.MethodFault, OSError) as e:
        raise BackendError(f"Failed to connect to {server}: {e}") from e


def _all_vms(si) -> List[Any]:
    content = si.RetrieveContent()
    view = content.viewManager.CreateContainerView(content.rootFolder, [vim.VirtualMachine], True)
    try:
        return list(view.view)
    finally:
        view.Destroy()


def _walk_snapshots(tree) -> List[Any]:
    nodes = []
    for node in tree or []:
        nodes.append(node)
        nodes.extend(_walk_snapshots(node.childSnapshotList))
    return nodes


def _chain_files(disks) -> Set[int]:
    return {key for disk in disks or [] for unit in disk.chain or [] for key in unit.fileKey or []}


def _snapshot_sizes(vm, nodes) -> Dict[str, float]:
    """
    Disk usage in GB per snapshot, keyed by the snapshot's managed object id.

    A snapshot owns its state and memory files plus the delta disks written on
    top of it, that is the files its children (or the running VM, for the
    current snapshot) reference that the snapshot itself does not.
    """
    layout = _attr(vm, "layoutEx")
    if layout is None or not layout.snapshot:
        return {}
    file_sizes = {f.key: f.size or 0 for f in layout.file or []}
    layouts = {_attr(s, "key._moId"): s for s in layout.snapshot}
    current = _attr(vm, "snapshot.currentSnapshot._moId")

    sizes = {}
    for node in nodes:
        moid = _attr(node, "snapshot._moId")
        own = layouts.get(moid)
        if own is None:
            continue
        later = set()
        for child in node.childSnapshotList or []:
            child_layout = layouts.get(_attr(child, "snapshot._moId"))
            if child_layout is not None:
                later |= _chain_files(child_layout.disk)
        if moid == current:
            later |= _chain_files(layout.disk)
        files = (later - _chain_files(own.disk)) | {own.dataKey, own.memoryKey}
        sizes[moid] = sum(file_sizes.get(key, 0) for key in files) / 1024 ** 3
    return sizes


def fetch_inventory(server: str, username: str, password: str) -> List[Record]:
    """Enumerate every VM of one vCenter as cache records."""
    si = _connect(server, username, password)
    try:
        records = []
        for vm in _all_vms(si):
            host_name = _attr(vm, "runtime.host.name") or "unknown"
            state = _attr(vm, "runtime.powerState") or "unknown"
            records.append(Record(vm.name, str(state), host_name, server))
        logger.info(f"✅ Fetched {len(records)} VMs from {server}")
        return records
    finally:
        Disconnect(si)


class VSphereBackend(VMBackend):
    """One VM on one vCenter, reached through a pyVmomi service instance."""

    def __init__(self, server: str, username: str, password: str, port: int = 443):
        self.server = server
        self.username = username
        self.password = password
        self.port = port
        self._si = None
        self._vm = None
        self._vm_name: Optional[str] = None

    def connect(self) -> None:
        logger.info(f"🔌 Connecting to {self.server} as {self.username}")
        self._si = _connect(self.server, self.username, self.password, self.port)

    def disconnect(self) -> None:
        if self._si is not None:
            Disconnect(self._si)
            self._si = None

    def resolve(self, vm_name: str) -> None:
        matches = [vm for vm in _all_vms(self._si) if vm.name == vm_name]
        if not matches:
            raise BackendError(f"VM {vm_name} not found")
        if len(matches) > 1:
            logger.warning(f"⚠️ {len(matches)} VMs named {vm_name} on {self.server}, using the first")
        self._vm = matches[0]
        self._vm_name = vm_name

    def _wait(self, task) -> None:
        try:
            WaitForTask(task)
        except vmodl.MethodFault as e:
            raise BackendError(e.msg or str(e)) from e

    def _call(self, method, *args, **kwargs):
        try:
            return method(*args, **kwargs)
        except vmodl.MethodFault as e:
            raise BackendError(e.msg or str(e)) from e

    def power_state(self) -> str:
        return str(self._call(lambda: self._vm.runtime.powerState))

    def guest_tools_running(self) -> bool:
        status = self._call(lambda: self._vm.guest.toolsStatus)
        return status not in (None, "toolsNotInstalled", "toolsNotRunning")

    def list_snapshots(self) -> List[Snapshot]:
        tree = self._call(lambda: _attr(self._vm, "snapshot.rootSnapshotList"))
        nodes = _walk_snapshots(tree)
        sizes = self._call(_snapshot_sizes, self._vm, nodes) if nodes else {}
        return [
            Snapshot(node.name, node.createTime, node.description or "",
                     sizes.get(_attr(node, "snapshot._moId")), node.snapshot)
            for node in nodes
        ]

    def create_snapshot(self, name: str, description: str) -> Snapshot:
        task = self._call(self._vm.CreateSnapshot_Task, name=name, description=description,
                          memory=False, quiesce=False)
        self._wait(task)
        created = self.find_snapshot(name)
        return created or Snapshot(name, None, description)

    def remove_snapshot(self, snapshot: Snapshot) -> None:
        task = self._call(snapshot.handle.RemoveSnapshot_Task, removeChildren=False)
        self._wait(task)

    def reset(self) -> None:
        self._wait(self._call(self._vm.ResetVM_Task))

    def power_off(self) -> None:
        self._wait(self._call(self._vm.PowerOffVM_Task))

    def power_on(self) -> None:
        self._wait(self._call(self._vm.PowerOnVM_Task))

    def shutdown_guest(self) -> None:
        self._call(self._vm.ShutdownGuest)

    def reboot_guest(self) -> None:
        self._call(self._vm.RebootGuest)

    def details(self) -> List[DetailSection]:
        vm = self._vm
        memory_mb = _attr(vm, "config.hardware.memoryMB")
        basic = [
            ("Name", vm.name),
            ("Power State", _attr(vm, "runtime.powerState")),
            ("Overall Status", _attr(vm, "overallStatus")),
            ("vCPUs", _attr(vm, "config.hardware.numCPU")),
            ("Memory", f"{memory_mb / 1024:g} GB" if memory_mb else None),
            ("VM Version", _attr(vm, "config.version")),
            ("Guest OS", _attr(vm, "guest.guestFullName") or "Not available (VM may be powered off)"),
            ("VMware Tools", _attr(vm, "guest.toolsStatus") or "Not available"),
            ("Tools Version", _attr(vm, "guest.toolsVersion")),
            ("VM ID", _attr(vm, "_moId")),
        ]

        host = _attr(vm, "runtime.host")
        compute = _attr(host, "parent")
        datacenter = compute
        while datacenter is not None and not isinstance(datacenter, vim.Datacenter):
            datacenter = _attr(datacenter, "parent")
        infrastructure = [
            ("ESXi Host", _attr(host, "name")),
            ("Host Version", _attr(host, "config.product.version")),
            ("Cluster", _attr(compute, "name") if isinstance(compute, vim.ClusterComputeResource) else None),
            ("Datacenter", _attr(datacenter, "name")),
            ("Host Power State", _attr(host, "runtime.powerState")),
            ("VM Folder", _attr(vm, "parent.name")),
            ("Resource Pool", _attr(vm, "resourcePool.name")),
        ]

        return [
            ("Basic Information", [(k, str(v)) for k, v in basic if v is not None]),
            ("Infrastructure", [(k, str(v)) for k, v in infrastructure if v is not None]),
        ]
