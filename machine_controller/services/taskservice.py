import logging

from machine_controller import conditions
from machine_controller.clients.http import RequestFailure
from machine_controller.clients.proxmox import parse_upid_type
from machine_controller.metrics import metrics
from machine_controller.schemas import ConditionSeverity
from machine_controller.scope import MachineScope


logger = logging.getLogger(__name__)

CLONE_TASK_TYPE = "qmclone"


def reconcile_in_flight_task(scope: MachineScope) -> bool:
    """Return True while the machine's recorded task is still running.

    Finished tasks are cleared from the status so the pipeline can move on.
    """
    machine = scope.proxmox_machine
    upid = machine.status.task_ref
    if upid is None:
        return False

    try:
        task = scope.client.get_task(upid)
    except RequestFailure as exc:
        if not exc.is_client_error:
            raise
        # Proxmox forgets tasks after a while; nothing left to wait for.
        logger.warning(
            "task vanished machine=%s task=%s error=%s", scope.name(), upid, exc
        )
        machine.status.task_ref = None
        return False

    if task.is_running:
        logger.debug("task still pending machine=%s task=%s", scope.name(), upid)
        return True

    machine.status.task_ref = None
    if task.is_successful:
        logger.info("task finished machine=%s task=%s", scope.name(), upid)
        return False

    logger.warning(
        "task failed machine=%s task=%s exit_status=%s",
        scope.name(),
        upid,
        task.exit_status,
    )
    metrics.inc("vm_task_failed_total")
    conditions.mark_false(
        machine,
        conditions.VM_PROVISIONED_CONDITION,
        conditions.TASK_FAILURE_REASON,
        ConditionSeverity.INFO,
        task.exit_status or "",
    )
    if parse_upid_type(upid) == CLONE_TASK_TYPE and machine.spec.provider_id is None:
        # The clone never produced a vm: give the id back and let the next
        # pass allocate again.
        machine.spec.virtual_machine_id = None
        machine.status.proxmox_node = None
    return False
