import pytest

from machine_controller import conditions
from machine_controller.clients.http import RequestFailure
from machine_controller.clients.proxmox import TaskStatus
from machine_controller.schemas import (
    ConditionSeverity,
    IPConfig,
    Machine,
    ProxmoxCluster,
    ProxmoxClusterSpec,
    ProxmoxMachine,
    ProxmoxMachineSpec,
)
from machine_controller.scope import ClusterScope, MachineScope
from machine_controller.services.taskservice import reconcile_in_flight_task


UPID = "UPID:pve1:00001234:00000000:00000000:qmclone:101:root@pam:"


class FakeProxmoxClient:
    def __init__(self, task: TaskStatus | None = None, error: Exception | None = None):
        self.task = task
        self.error = error
        self.lookups = []

    def get_task(self, upid: str) -> TaskStatus:
        self.lookups.append(upid)
        if self.error is not None:
            raise self.error
        return self.task


def make_scope(client, task_ref=UPID, provider_id=None):
    machine = ProxmoxMachine(
        name="m1",
        cluster_name="c1",
        spec=ProxmoxMachineSpec(virtual_machine_id=101, provider_id=provider_id),
    )
    machine.status.task_ref = task_ref
    machine.status.proxmox_node = "pve1"
    cluster = ProxmoxCluster(
        name="c1",
        spec=ProxmoxClusterSpec(ipv4_config=IPConfig(addresses=["10.0.0.0/24"], prefix=24)),
    )
    return MachineScope(
        Machine(name="m1", cluster_name="c1"), machine, ClusterScope(cluster, client)
    )


def failure(status_code: int | None) -> RequestFailure:
    return RequestFailure(
        method="GET",
        url="/nodes/pve1/tasks/x/status",
        attempts=1,
        error_type="HTTPStatusError",
        detail=f"HTTP {status_code}",
        status_code=status_code,
    )


def test_no_task_means_no_lookup():
    client = FakeProxmoxClient()
    scope = make_scope(client, task_ref=None)

    assert reconcile_in_flight_task(scope) is False
    assert client.lookups == []


def test_running_task_requeues():
    client = FakeProxmoxClient(TaskStatus(upid=UPID, status="running", exit_status=None))
    scope = make_scope(client)

    assert reconcile_in_flight_task(scope) is True
    assert scope.proxmox_machine.status.task_ref == UPID


def test_finished_task_is_cleared():
    client = FakeProxmoxClient(TaskStatus(upid=UPID, status="stopped", exit_status="OK"))
    scope = make_scope(client)

    assert reconcile_in_flight_task(scope) is False
    assert scope.proxmox_machine.status.task_ref is None
    assert scope.proxmox_machine.status.conditions == []


def test_failed_clone_releases_vmid():
    client = FakeProxmoxClient(
        TaskStatus(upid=UPID, status="stopped", exit_status="unable to create VM 101")
    )
    scope = make_scope(client)

    assert reconcile_in_flight_task(scope) is False

    machine = scope.proxmox_machine
    assert machine.status.task_ref is None
    assert machine.spec.virtual_machine_id is None
    assert machine.status.proxmox_node is None
    condition = conditions.get(machine, conditions.VM_PROVISIONED_CONDITION)
    assert condition.reason == conditions.TASK_FAILURE_REASON
    assert condition.severity == ConditionSeverity.INFO
    assert condition.message == "unable to create VM 101"


def test_failed_task_on_known_vm_keeps_identity():
    client = FakeProxmoxClient(
        TaskStatus(upid=UPID, status="stopped", exit_status="start failed")
    )
    scope = make_scope(client, provider_id="proxmox://abc")

    assert reconcile_in_flight_task(scope) is False

    machine = scope.proxmox_machine
    assert machine.spec.virtual_machine_id == 101
    assert machine.status.proxmox_node == "pve1"


def test_failed_configure_task_keeps_identity_without_provider_id():
    upid = "UPID:pve1:00001235:00000000:00000000:qmconfig:101:root@pam:"
    client = FakeProxmoxClient(
        TaskStatus(upid=upid, status="stopped", exit_status="invalid option")
    )
    scope = make_scope(client, task_ref=upid)

    assert reconcile_in_flight_task(scope) is False

    machine = scope.proxmox_machine
    assert machine.status.task_ref is None
    assert machine.spec.virtual_machine_id == 101
    assert machine.status.proxmox_node == "pve1"
    condition = conditions.get(machine, conditions.VM_PROVISIONED_CONDITION)
    assert condition.message == "invalid option"


def test_vanished_task_is_cleared():
    client = FakeProxmoxClient(error=failure(404))
    scope = make_scope(client)

    assert reconcile_in_flight_task(scope) is False
    assert scope.proxmox_machine.status.task_ref is None


def test_server_errors_propagate():
    client = FakeProxmoxClient(error=failure(500))
    scope = make_scope(client)

    with pytest.raises(RequestFailure):
        reconcile_in_flight_task(scope)
    assert scope.proxmox_machine.status.task_ref == UPID
