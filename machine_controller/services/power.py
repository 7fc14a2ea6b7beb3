import logging

from machine_controller import conditions
from machine_controller.metrics import metrics
from machine_controller.schemas import ConditionSeverity
from machine_controller.scope import MachineScope
from machine_controller.services.errors import ReconcileError


logger = logging.getLogger(__name__)


def reconcile_power_state(scope: MachineScope) -> bool:
    if scope.vm_is_running():
        return False

    conditions.mark_false(
        scope.proxmox_machine,
        conditions.VM_PROVISIONED_CONDITION,
        conditions.POWERING_ON_REASON,
        ConditionSeverity.INFO,
    )
    try:
        task = scope.client.start_vm(scope.virtual_machine)
    except Exception as exc:
        raise ReconcileError(f"failed to start vm {scope.name()}") from exc

    scope.proxmox_machine.status.task_ref = task
    metrics.inc("vm_start_total")
    logger.info("vm starting machine=%s task=%s", scope.name(), task)
    return True
