import logging

from machine_controller.clients.http import RequestFailure
from machine_controller.clients.proxmox import ProxmoxVM, VMResourceNotFoundError
from machine_controller.conditions import UPDATE_FAILURE
from machine_controller.scope import MachineScope
from machine_controller.services.errors import (
    ReconcileError,
    VMNotCreatedError,
    VMNotFoundError,
    VMNotInitializedError,
)


logger = logging.getLogger(__name__)


def find_vm(scope: MachineScope) -> ProxmoxVM:
    vmid = scope.get_virtual_machine_id()
    if vmid == -1:
        raise VMNotCreatedError(f"vm {scope.name()} has not been created yet")

    node = scope.proxmox_machine.get_node()
    if not node:
        raise VMNotFoundError(f"no proxmox node recorded for vm {vmid}")

    try:
        vm = scope.client.get_vm(node, vmid)
    except RequestFailure as exc:
        logger.warning(
            "vm lookup failed machine=%s vmid=%s node=%s error=%s",
            scope.name(),
            vmid,
            node,
            exc,
        )
        raise VMNotFoundError(f"vm {vmid} not found on node {node}") from exc

    # A freshly cloned vm reports its final name only once the clone settles.
    if vm.name != scope.name():
        raise VMNotInitializedError(
            f"vm {vmid} on node {node} is named {vm.name!r}, expected {scope.name()!r}"
        )
    return vm


def update_vm_location(scope: MachineScope) -> None:
    """Look the recorded vmid up cluster-wide and record the node holding it."""
    vmid = scope.get_virtual_machine_id()
    try:
        resource = scope.client.find_vm_resource(vmid)
    except VMResourceNotFoundError as exc:
        scope.set_failure_message(exc)
        scope.set_failure_reason(UPDATE_FAILURE)
        raise

    if resource.name != scope.name():
        err = ReconcileError(
            f"vm {vmid} is named {resource.name!r}, expected {scope.name()!r}"
        )
        scope.set_failure_message(err)
        scope.set_failure_reason(UPDATE_FAILURE)
        raise err

    if scope.proxmox_machine.status.proxmox_node != resource.node:
        logger.info(
            "vm relocated machine=%s vmid=%s node=%s",
            scope.name(),
            vmid,
            resource.node,
        )
    scope.proxmox_machine.status.proxmox_node = resource.node
