"""
Unit tests for the pyVmomi backend with the vSphere API mocked out.
"""

from datetime import datetime
from unittest.mock import Mock, patch

import pytest

from vmmanage.backend import BackendError
from vmmanage.inventory import Record
from vmmanage.vsphere import VSphereBackend, fetch_inventory


def make_vm(name, power_state="poweredOn", host="esx01"):
    vm = Mock()
    vm.name = name
    vm.runtime.powerState = power_state
    vm.runtime.host.name = host
    vm.layoutEx = None
    return vm


def make_node(name, children=()):
    node = Mock()
    node.name = name
    node.snapshot._moId = f"snapshot-{name}"
    node.createTime = datetime(2025, 1, 1, 10, 0, 0)
    node.description = f"{name} description"
    node.childSnapshotList = list(children)
    return node


@pytest.fixture
def backend():
    with patch("vmmanage.vsphere.SmartConnect") as mock_connect, \
         patch("vmmanage.vsphere.Disconnect") as mock_disconnect, \
         patch("vmmanage.vsphere.WaitForTask") as mock_wait, \
         patch("vmmanage.vsphere._all_vms") as mock_vms:
        mock_vms.return_value = [make_vm("web-01"), make_vm("db-01", "poweredOff")]
        vsphere = VSphereBackend("vc01", "admin", "secret")
        vsphere.mocks = {
            "connect": mock_connect,
            "disconnect": mock_disconnect,
            "wait": mock_wait,
            "vms": mock_vms,
        }
        yield vsphere


@pytest.mark.unit
class TestVSphereBackend:

    def test_connect_and_resolve(self, backend):
        backend.connect()
        backend.resolve("db-01")

        backend.mocks["connect"].assert_called_once_with(
            host="vc01", user="admin", pwd="secret", port=443, disableSslCertValidation=True)
        assert backend.power_state() == "poweredOff"

    def test_connect_failure(self, backend):
        backend.mocks["connect"].side_effect = OSError("connection refused")
        with pytest.raises(BackendError) as exc_info:
            backend.connect()
        assert "Failed to connect to vc01" in str(exc_info.value)

    def test_resolve_unknown_vm(self, backend):
        backend.connect()
        with pytest.raises(BackendError) as exc_info:
            backend.resolve("mail-01")
        assert str(exc_info.value) == "VM mail-01 not found"

    def test_disconnect_is_idempotent(self, backend):
        backend.connect()
        backend.disconnect()
        backend.disconnect()
        backend.mocks["disconnect"].assert_called_once()

    def test_list_snapshots_walks_tree(self, backend):
        backend.connect()
        backend.resolve("web-01")
        tree = [make_node("base", [make_node("child", [make_node("grandchild")])]), make_node("other")]
        backend._vm.snapshot.rootSnapshotList = tree

        names = [snapshot.name for snapshot in backend.list_snapshots()]
        assert names == ["base", "child", "grandchild", "other"]
        assert backend.find_snapshot("grandchild").description == "grandchild description"
        assert backend.find_snapshot("missing") is None

    def test_snapshot_sizes_from_file_layout(self, backend):
        backend.connect()
        backend.resolve("web-01")
        gb = 1024 ** 3
        child = make_node("child")
        base = make_node("base", [child])
        backend._vm.snapshot.rootSnapshotList = [base]
        backend._vm.snapshot.currentSnapshot = child.snapshot

        def chain(*units):
            return [Mock(chain=[Mock(fileKey=list(unit)) for unit in units])]

        backend._vm.layoutEx = Mock(
            file=[Mock(key=key, size=size) for key, size in [
                (1, gb), (2, gb // 2), (3, 2 * gb),
                (10, 40 * gb), (11, 0), (20, 2 * gb), (21, 0), (30, gb), (31, 0),
            ]],
            snapshot=[
                Mock(key=base.snapshot, dataKey=1, memoryKey=-1, disk=chain([10, 11])),
                Mock(key=child.snapshot, dataKey=2, memoryKey=3, disk=chain([10, 11], [20, 21])),
            ],
            disk=chain([10, 11], [20, 21], [30, 31]),
        )

        sizes = {snapshot.name: snapshot.size_gb for snapshot in backend.list_snapshots()}
        assert sizes == {"base": 3.0, "child": 3.5}
        assert backend.create_snapshot("child", "").size_gb == 3.5

    def test_no_snapshots(self, backend):
        backend.connect()
        backend.resolve("web-01")
        backend._vm.snapshot = None
        assert backend.list_snapshots() == []

    def test_power_off_waits_for_task(self, backend):
        backend.connect()
        backend.resolve("web-01")
        backend.power_off()

        backend._vm.PowerOffVM_Task.assert_called_once_with()
        backend.mocks["wait"].assert_called_once_with(backend._vm.PowerOffVM_Task.return_value)

    def test_guest_tools(self, backend):
        backend.connect()
        backend.resolve("web-01")
        backend._vm.guest.toolsStatus = "toolsOk"
        assert backend.guest_tools_running()
        backend._vm.guest.toolsStatus = "toolsNotRunning"
        assert not backend.guest_tools_running()


@pytest.mark.unit
class TestFetchInventory:

    def test_records(self):
        with patch("vmmanage.vsphere.SmartConnect"), \
             patch("vmmanage.vsphere.Disconnect") as mock_disconnect, \
             patch("vmmanage.vsphere._all_vms", return_value=[make_vm("web-01", host="esx07")]):
            records = fetch_inventory("vc01", "admin", "secret")

        assert records == [Record("web-01", "poweredOn", "esx07", "vc01")]
        mock_disconnect.assert_called_once()
