import pytest

from machine_controller import conditions
from machine_controller.clients.proxmox import ProxmoxVM
from machine_controller.schemas import (
    IPConfig,
    Machine,
    ProxmoxCluster,
    ProxmoxClusterSpec,
    ProxmoxMachine,
)
from machine_controller.scope import ClusterScope, MachineScope
from machine_controller.services.errors import ReconcileError
from machine_controller.services.power import reconcile_power_state


class FakeProxmoxClient:
    def __init__(self, error: Exception | None = None):
        self.started = []
        self.error = error

    def start_vm(self, vm) -> str:
        if self.error is not None:
            raise self.error
        self.started.append(vm.vmid)
        return "UPID:pve1:00000003:00000000:00000000:qmstart:101:root@pam:"


def make_scope(client, status: str) -> MachineScope:
    cluster = ProxmoxCluster(
        name="c1",
        spec=ProxmoxClusterSpec(ipv4_config=IPConfig(addresses=["10.0.0.0/24"], prefix=24)),
    )
    scope = MachineScope(
        Machine(name="m1", cluster_name="c1"),
        ProxmoxMachine(name="m1", cluster_name="c1"),
        ClusterScope(cluster, client),
    )
    scope.set_virtual_machine(ProxmoxVM(node="pve1", vmid=101, name="m1", status=status))
    return scope


def test_running_vm_needs_nothing():
    client = FakeProxmoxClient()
    scope = make_scope(client, "running")

    assert reconcile_power_state(scope) is False
    assert client.started == []


def test_stopped_vm_is_started():
    client = FakeProxmoxClient()
    scope = make_scope(client, "stopped")

    assert reconcile_power_state(scope) is True

    machine = scope.proxmox_machine
    assert client.started == [101]
    assert machine.status.task_ref.endswith(":qmstart:101:root@pam:")
    condition = conditions.get(machine, conditions.VM_PROVISIONED_CONDITION)
    assert condition.reason == conditions.POWERING_ON_REASON


def test_start_failure_is_wrapped():
    client = FakeProxmoxClient(error=RuntimeError("no quorum"))
    scope = make_scope(client, "stopped")

    with pytest.raises(ReconcileError, match="failed to start vm m1"):
        reconcile_power_state(scope)
    assert scope.proxmox_machine.status.task_ref is None
