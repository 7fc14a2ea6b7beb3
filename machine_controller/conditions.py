from datetime import UTC, datetime

from machine_controller.schemas import Condition, ConditionSeverity, ProxmoxMachine


VM_PROVISIONED_CONDITION = "VirtualMachineProvisioned"

# Reasons for VM_PROVISIONED_CONDITION.
CLONING_REASON = "Cloning"
CLONING_FAILED_REASON = "CloningFailed"
TASK_FAILURE_REASON = "TaskFailure"
VM_PROVISION_FAILED_REASON = "VMProvisionFailed"
WAITING_FOR_BOOTSTRAP_DATA_REASON = "WaitingForBootstrapData"
POWERING_ON_REASON = "PoweringOn"

# Values for ProxmoxMachineStatus.failure_reason.
INSUFFICIENT_RESOURCES_FAILURE = "InsufficientResources"
TEMPLATE_NOT_FOUND_FAILURE = "VMTemplateNotFound"
BOOTSTRAP_FAILED_FAILURE = "BootstrapFailed"
UPDATE_FAILURE = "UpdateError"


def get(machine: ProxmoxMachine, condition_type: str) -> Condition | None:
    for condition in machine.status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def has(machine: ProxmoxMachine, condition_type: str) -> bool:
    return get(machine, condition_type) is not None


def is_true(machine: ProxmoxMachine, condition_type: str) -> bool:
    condition = get(machine, condition_type)
    return condition is not None and condition.status == "True"


def _set(machine: ProxmoxMachine, new: Condition) -> None:
    existing = get(machine, new.type)
    if existing is None:
        machine.status.conditions.append(new)
        return
    if existing.status == new.status:
        new.last_transition_time = existing.last_transition_time
    existing.status = new.status
    existing.severity = new.severity
    existing.reason = new.reason
    existing.message = new.message
    existing.last_transition_time = new.last_transition_time


def mark_true(machine: ProxmoxMachine, condition_type: str) -> None:
    _set(
        machine,
        Condition(
            type=condition_type,
            status="True",
            last_transition_time=datetime.now(UTC),
        ),
    )


def mark_false(
    machine: ProxmoxMachine,
    condition_type: str,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
) -> None:
    _set(
        machine,
        Condition(
            type=condition_type,
            status="False",
            severity=severity,
            reason=reason,
            message=message,
            last_transition_time=datetime.now(UTC),
        ),
    )
