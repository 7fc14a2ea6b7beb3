"""Per-call reconciliation context.

A ``MachineScope`` is built by the machine controller for exactly one
``reconcile_vm`` call and discarded afterwards. Stages read the owner
``machine`` and the cluster spec, and mutate only:

* ``proxmox_machine.spec``: ``virtual_machine_id``, ``provider_id``;
* ``proxmox_machine.status``: task ref, node, addresses, failure fields,
  conditions, bootstrap flag;
* ``virtual_machine``: the remote view attached by the existence check;
* ``infra_cluster.cluster.status``: node locations (persisted through
  ``ClusterScope.patch_object``).
"""

from machine_controller.clients.proxmox import ProxmoxClient, ProxmoxVM
from machine_controller.db import session_scope
from machine_controller.repositories import (
    list_proxmox_machines,
    save_cluster_status,
    save_proxmox_machine,
)
from machine_controller.schemas import (
    Machine,
    MachineAddress,
    ProxmoxCluster,
    ProxmoxMachine,
)


class ClusterScope:
    def __init__(self, cluster: ProxmoxCluster, client: ProxmoxClient):
        self.cluster = cluster
        self.client = client

    def list_proxmox_machines_for_cluster(self) -> list[ProxmoxMachine]:
        with session_scope() as session:
            return list_proxmox_machines(session, self.cluster.name)

    def patch_object(self) -> None:
        with session_scope() as session:
            save_cluster_status(session, self.cluster)


class MachineScope:
    def __init__(
        self,
        machine: Machine,
        proxmox_machine: ProxmoxMachine,
        infra_cluster: ClusterScope,
    ):
        self.machine = machine
        self.proxmox_machine = proxmox_machine
        self.infra_cluster = infra_cluster
        self.virtual_machine: ProxmoxVM | None = None

    @property
    def client(self) -> ProxmoxClient:
        return self.infra_cluster.client

    def name(self) -> str:
        return self.proxmox_machine.name

    def is_control_plane(self) -> bool:
        return self.machine.control_plane

    def get_virtual_machine_id(self) -> int:
        return self.proxmox_machine.get_virtual_machine_id()

    def set_virtual_machine_id(self, vmid: int) -> None:
        self.proxmox_machine.spec.virtual_machine_id = vmid

    def set_provider_id(self, bios_uuid: str) -> None:
        if not bios_uuid:
            return
        self.proxmox_machine.spec.provider_id = f"proxmox://{bios_uuid}"

    def set_virtual_machine(self, vm: ProxmoxVM) -> None:
        self.virtual_machine = vm

    def set_addresses(self, addresses: list[MachineAddress]) -> None:
        self.proxmox_machine.status.addresses = addresses

    def set_failure_message(self, err: Exception) -> None:
        self.proxmox_machine.status.failure_message = str(err)

    def set_failure_reason(self, reason: str) -> None:
        self.proxmox_machine.status.failure_reason = reason

    def skip_cloud_init_check(self) -> bool:
        checks = self.proxmox_machine.spec.checks
        return checks is not None and checks.skip_cloud_init_status

    def skip_qemu_guest_check(self) -> bool:
        checks = self.proxmox_machine.spec.checks
        return checks is not None and checks.skip_qemu_guest_agent

    def vm_is_running(self) -> bool:
        return self.virtual_machine is not None and self.virtual_machine.is_running()

    def patch_object(self, last_error: str | None = None) -> None:
        with session_scope() as session:
            save_proxmox_machine(session, self.proxmox_machine, last_error=last_error)
