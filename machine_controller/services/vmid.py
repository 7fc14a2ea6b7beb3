import logging

from machine_controller.scope import MachineScope
from machine_controller.services.errors import NoVMIDInRangeFreeError


logger = logging.getLogger(__name__)

# Lets Proxmox hand out the next free id itself.
AUTO_VMID = 0


def get_vmid(scope: MachineScope) -> int:
    vmid_range = scope.proxmox_machine.spec.vmid_range
    if vmid_range is not None and vmid_range.start != 0 and vmid_range.end != 0:
        return next_free_vmid_from_range(scope, vmid_range.start, vmid_range.end)
    return AUTO_VMID


def next_free_vmid_from_range(scope: MachineScope, start: int, end: int) -> int:
    used = get_used_vmids(scope)
    for candidate in range(start, end + 1):
        if candidate in used:
            continue
        # A check failure aborts the scan; the next tick starts over.
        if scope.client.check_id(candidate):
            logger.debug(
                "allocated vmid machine=%s vmid=%s", scope.name(), candidate
            )
            return candidate
    raise NoVMIDInRangeFreeError(start, end)


def get_used_vmids(scope: MachineScope) -> set[int]:
    used: set[int] = set()
    for machine in scope.infra_cluster.list_proxmox_machines_for_cluster():
        vmid = machine.get_virtual_machine_id()
        if vmid != -1:
            used.add(vmid)
    return used
