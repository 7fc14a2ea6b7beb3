import logging
from collections.abc import Callable

from machine_controller import conditions
from machine_controller.clients.proxmox import ProxmoxClient
from machine_controller.db import session_scope
from machine_controller.metrics import metrics
from machine_controller.repositories import (
    ConflictError,
    get_cluster,
    get_machine,
    list_machines,
    save_proxmox_machine,
    write_event,
)
from machine_controller.schemas import (
    ProxmoxMachine,
    VirtualMachine,
    VirtualMachineState,
)
from machine_controller.scope import ClusterScope, MachineScope
from machine_controller.services.errors import VMNotFoundError
from machine_controller.services.vmservice import reconcile_vm


logger = logging.getLogger(__name__)


def reconcile_machine(name: str, client: ProxmoxClient) -> VirtualMachine | None:
    """Run one pass of ``reconcile_vm`` for a stored machine and persist the outcome.

    Returns None when the machine was skipped.
    """
    with session_scope() as session:
        loaded = get_machine(session, name)
        if loaded is None:
            raise LookupError(f"unknown machine {name}")
        owner, proxmox_machine = loaded
        cluster = get_cluster(session, proxmox_machine.cluster_name)

    if cluster is None:
        logger.warning(
            "cluster missing machine=%s cluster=%s", name, proxmox_machine.cluster_name
        )
        return None
    if proxmox_machine.status.failure_reason:
        logger.debug(
            "skipping failed machine machine=%s reason=%s",
            name,
            proxmox_machine.status.failure_reason,
        )
        return None

    scope = MachineScope(owner, proxmox_machine, ClusterScope(cluster, client))
    status = proxmox_machine.status
    was_ready = status.ready

    vm: VirtualMachine | None = None
    error: str | None = None
    try:
        vm = reconcile_vm(scope)
    except VMNotFoundError as exc:
        # Location was re-resolved; the next pass looks again.
        logger.info("vm not found machine=%s detail=%s", name, exc)
        error = str(exc)
    except Exception as exc:  # noqa: BLE001
        logger.exception("reconcile failed machine=%s", name)
        error = str(exc)
        metrics.inc("reconcile_errors_total")

    if vm is not None:
        status.vm_status = vm.state
        if vm.state == VirtualMachineState.READY:
            status.ready = True
            conditions.mark_true(proxmox_machine, conditions.VM_PROVISIONED_CONDITION)

    # Partial progress such as a recorded task or vmid is kept even on error.
    try:
        _save_outcome(proxmox_machine, error, was_ready)
    except ConflictError as exc:
        # Stored spec wins; ids and status recorded by this pass are kept.
        logger.warning("machine changed during reconcile machine=%s error=%s", name, exc)
        metrics.inc("reconcile_conflicts_total")
        with session_scope() as session:
            loaded = get_machine(session, name)
        if loaded is None:
            return vm
        stored = loaded[1]
        _carry_reconciler_fields(proxmox_machine, stored)
        try:
            _save_outcome(stored, error, was_ready)
        except ConflictError as retry_exc:
            logger.warning(
                "machine changed again, dropping pass machine=%s error=%s",
                name,
                retry_exc,
            )
            return vm

    metrics.inc("reconcile_total")
    return vm


def _carry_reconciler_fields(source: ProxmoxMachine, target: ProxmoxMachine) -> None:
    target.spec.virtual_machine_id = source.spec.virtual_machine_id
    target.spec.provider_id = source.spec.provider_id
    target.status = source.status.model_copy(deep=True)


def _save_outcome(
    proxmox_machine: ProxmoxMachine, error: str | None, was_ready: bool
) -> None:
    name = proxmox_machine.name
    status = proxmox_machine.status
    with session_scope() as session:
        save_proxmox_machine(session, proxmox_machine, last_error=error)
        if status.ready and not was_ready:
            write_event(
                session,
                "machine.ready",
                {"vmid": proxmox_machine.get_virtual_machine_id()},
                name,
            )
            metrics.inc("machines_ready_total")
        if status.failure_reason:
            write_event(
                session,
                "machine.failed",
                {
                    "reason": status.failure_reason,
                    "message": status.failure_message,
                },
                name,
            )
            metrics.inc("machines_failed_total")
        elif error is not None:
            write_event(session, "machine.reconcile_error", {"error": error}, name)


def _publish_machine_gauges(machines: list[ProxmoxMachine]) -> None:
    failed = sum(1 for machine in machines if machine.status.failure_reason)
    ready = sum(
        1
        for machine in machines
        if machine.status.ready and not machine.status.failure_reason
    )
    metrics.set_gauge("machines_total", len(machines))
    metrics.set_gauge("machines_ready", ready)
    metrics.set_gauge("machines_failed", failed)
    metrics.set_gauge("machines_pending", len(machines) - ready - failed)


def reconcile_once(client_factory: Callable[[], ProxmoxClient]) -> None:
    with session_scope() as session:
        machines = [proxmox_machine for _, proxmox_machine in list_machines(session)]
    _publish_machine_gauges(machines)

    names = [machine.name for machine in machines if not machine.status.failure_reason]
    if not names:
        return

    client = client_factory()
    try:
        for name in names:
            try:
                reconcile_machine(name, client)
            except Exception:  # noqa: BLE001
                logger.exception("reconcile tick failed machine=%s", name)
    finally:
        client.close()
