"""Drive a Proxmox VM towards the state its ProxmoxMachine declares.

Every stage takes the ``MachineScope`` and either returns ``False`` (made
progress, continue), returns ``True`` (requeue: stop this pass without an
error, the controller loop will call again) or raises. Stages that can only
succeed or fail return ``None``.
"""

import logging

from machine_controller import conditions
from machine_controller.clients.proxmox import (
    CloudInitFailedError,
    TemplateNotFoundError,
    VirtualMachineOption,
    VMCloneRequest,
    VMCloneResponse,
)
from machine_controller.config import get_settings
from machine_controller.metrics import metrics
from machine_controller.schemas import (
    DEFAULT_NETWORK_DEVICE,
    ConditionSeverity,
    MachineAddress,
    MachineAddressType,
    NetworkDevice,
    NodeLocation,
    VirtualMachine,
    VirtualMachineState,
)
from machine_controller.scope import MachineScope
from machine_controller.services import bootstrap, ipam, power, scheduler, taskservice
from machine_controller.services.errors import (
    NoVMIDInRangeFreeError,
    ReconcileError,
    VMNotCreatedError,
    VMNotFoundError,
    VMNotInitializedError,
)
from machine_controller.services.find import find_vm, update_vm_location
from machine_controller.services.scheduler import InsufficientMemoryError
from machine_controller.services.vmid import get_vmid


logger = logging.getLogger(__name__)

# https://pve.proxmox.com/pve-docs/api-viewer/index.html#/nodes/{node}/qemu/{vmid}/config
OPTION_SOCKETS = "sockets"
OPTION_CORES = "cores"
OPTION_MEMORY = "memory"
OPTION_TAGS = "tags"
OPTION_DESCRIPTION = "description"


def reconcile_vm(scope: MachineScope) -> VirtualMachine:
    vm = VirtualMachine(name=scope.name(), state=VirtualMachineState.PENDING)

    # Nothing else may touch the vm while a remote task is still running.
    if taskservice.reconcile_in_flight_task(scope):
        return vm

    if ensure_virtual_machine(scope):
        return vm

    if reconcile_virtual_machine_config(scope):
        return vm

    reconcile_disks(scope)

    if ipam.reconcile_ip_addresses(scope):
        return vm

    if bootstrap.reconcile_bootstrap_data(scope):
        return vm

    if power.reconcile_power_state(scope):
        return vm

    reconcile_machine_addresses(scope)

    if check_cloud_init_status(scope):
        return vm

    # The owner joined the workload cluster; the bootstrap medium is no
    # longer needed.
    if scope.machine.bootstrap_ready and scope.machine.node_ref:
        try:
            unmount_cloud_init_iso(scope)
        except Exception as exc:
            raise ReconcileError(
                f"failed to unmount cloud-init iso for vm {scope.name()}"
            ) from exc

    vm.state = VirtualMachineState.READY
    return vm


def ensure_virtual_machine(scope: MachineScope) -> bool:
    """Create the vm if it does not exist and attach it to the scope."""
    if scope.proxmox_machine.status.task_ref is not None:
        return True

    try:
        vm_ref = find_vm(scope)
    except VMNotFoundError:
        try:
            update_vm_location(scope)
        except Exception as exc:
            raise ReconcileError(
                f"error trying to locate vm {scope.get_virtual_machine_id()}"
            ) from exc
        # Always go through another pass with the corrected location.
        raise
    except VMNotInitializedError as exc:
        logger.info("vm not initialized yet machine=%s detail=%s", scope.name(), exc)
        return True
    except VMNotCreatedError:
        return _create_virtual_machine(scope)

    scope.set_provider_id(extract_uuid(vm_ref.config.smbios1))
    scope.set_virtual_machine(vm_ref)
    return False


def _create_virtual_machine(scope: MachineScope) -> bool:
    machine = scope.proxmox_machine
    # Only set when absent so retries of the clone do not reset the
    # transition time.
    if not conditions.has(machine, conditions.VM_PROVISIONED_CONDITION):
        conditions.mark_false(
            machine,
            conditions.VM_PROVISIONED_CONDITION,
            conditions.CLONING_REASON,
            ConditionSeverity.INFO,
        )

    try:
        response = create_vm(scope)
    except TemplateNotFoundError:
        metrics.inc("vm_clone_failed_total")
        raise
    except Exception as exc:
        # A clone that went through but could not be fully recorded is not
        # a cloning failure.
        if machine.status.task_ref is None:
            conditions.mark_false(
                machine,
                conditions.VM_PROVISIONED_CONDITION,
                conditions.CLONING_FAILED_REASON,
                ConditionSeverity.WARNING,
                str(exc),
            )
        metrics.inc("vm_clone_failed_total")
        raise

    logger.info(
        "clone task created machine=%s vmid=%s task=%s",
        scope.name(),
        response.new_id,
        response.task,
    )
    metrics.inc("vm_clone_total")
    return True


def create_vm(scope: MachineScope) -> VMCloneResponse:
    machine = scope.proxmox_machine
    spec = machine.spec
    cluster = scope.infra_cluster.cluster

    try:
        vmid = get_vmid(scope)
    except NoVMIDInRangeFreeError as exc:
        scope.set_failure_message(exc)
        scope.set_failure_reason(conditions.INSUFFICIENT_RESOURCES_FAILURE)
        raise

    request = VMCloneRequest(
        node=machine.get_node() or "",
        new_id=vmid,
        name=machine.name,
        description=spec.description or "",
        format=spec.format or "",
        pool=spec.pool or "",
        snap_name=spec.snap_name or "",
        storage=spec.storage or "",
        target=spec.target or "",
    )
    if spec.full is not None:
        request.full = 1 if spec.full else 0

    # Spread machines over the allowed nodes when no target is pinned.
    if spec.target is None and (cluster.spec.allowed_nodes or spec.allowed_nodes):
        try:
            request.target = scheduler.schedule_vm(scope)
        except InsufficientMemoryError as exc:
            scope.set_failure_message(exc)
            scope.set_failure_reason(conditions.INSUFFICIENT_RESOURCES_FAILURE)
            raise

    template_id = machine.get_template_id()
    if template_id == -1:
        try:
            request.node, template_id = scope.client.find_vm_template_by_tags(
                machine.get_template_selector_tags()
            )
        except TemplateNotFoundError as exc:
            scope.set_failure_message(exc)
            scope.set_failure_reason(conditions.TEMPLATE_NOT_FOUND_FAILURE)
            conditions.mark_false(
                machine,
                conditions.VM_PROVISIONED_CONDITION,
                conditions.VM_PROVISION_FAILED_REASON,
                ConditionSeverity.ERROR,
                str(exc),
            )
            raise

    if not request.node:
        raise ReconcileError(
            f"no source node known for template {template_id} of machine {machine.name}"
        )

    response = scope.client.clone_vm(template_id, request)

    # Recorded first: whatever fails below, the clone must not be issued again.
    machine.status.task_ref = response.task
    scope.set_virtual_machine_id(response.new_id)

    node = request.target or request.node
    machine.status.proxmox_node = node
    cluster.add_node_location(
        NodeLocation(machine=machine.name, node=node), scope.is_control_plane()
    )
    try:
        scope.infra_cluster.patch_object()
    except Exception as exc:
        raise ReconcileError(
            f"failed to record node location of machine {machine.name}"
        ) from exc
    return response


def reconcile_virtual_machine_config(scope: MachineScope) -> bool:
    vm = scope.virtual_machine
    machine = scope.proxmox_machine
    if vm is None or vm.is_running() or machine.status.ready:
        # Hardware is only converged before the first boot.
        return False

    spec = machine.spec
    vm_config = vm.config
    options: list[VirtualMachineOption] = []

    if spec.num_sockets > 0 and vm_config.sockets != spec.num_sockets:
        options.append(VirtualMachineOption(OPTION_SOCKETS, spec.num_sockets))
    if spec.num_cores > 0 and vm_config.cores != spec.num_cores:
        options.append(VirtualMachineOption(OPTION_CORES, spec.num_cores))
    if spec.memory_mib > 0 and vm_config.memory != spec.memory_mib:
        options.append(VirtualMachineOption(OPTION_MEMORY, spec.memory_mib))

    if spec.description is not None and vm_config.description != spec.description:
        options.append(VirtualMachineOption(OPTION_DESCRIPTION, spec.description))

    if spec.network is not None and should_update_network_devices(scope):
        if spec.network.default is not None:
            options.append(
                VirtualMachineOption(
                    DEFAULT_NETWORK_DEVICE, format_network_device(spec.network.default)
                )
            )
        for device in spec.network.additional_devices:
            options.append(
                VirtualMachineOption(device.name, format_network_device(device))
            )

    if spec.tags is not None:
        vm.split_tags()
        length = len(vm_config.tags_slice)
        for tag in spec.tags:
            if not vm.has_tag(tag):
                vm_config.tags_slice.append(tag)
        if len(vm_config.tags_slice) > length:
            options.append(
                VirtualMachineOption(OPTION_TAGS, ";".join(vm_config.tags_slice))
            )

    if not options:
        return False

    logger.info(
        "reconciling vm config machine=%s options=%s",
        scope.name(),
        ",".join(option.name for option in options),
    )
    try:
        task = scope.client.configure_vm(vm, *options)
    except Exception as exc:
        raise ReconcileError(f"failed to configure vm {scope.name()}") from exc

    machine.status.task_ref = task
    metrics.inc("vm_configure_total")
    return True


def format_network_device(device: NetworkDevice) -> str:
    components = [f"{device.model},bridge={device.bridge}"]
    if device.mtu is not None:
        components.append(f"mtu={device.mtu}")
    if device.vlan is not None:
        components.append(f"tag={device.vlan}")
    return ",".join(components)


def parse_network_device(value: str) -> dict[str, str]:
    """Split a Proxmox netX value into its fields.

    ``virtio=BC:24:11:00:00:01,bridge=vmbr0,tag=10`` carries the model as the
    key of the first field and the generated MAC address as its value.
    """
    fields: dict[str, str] = {}
    for index, part in enumerate(value.split(",")):
        key, _, raw = part.partition("=")
        if index == 0:
            fields["model"] = key
            continue
        fields[key] = raw
    return fields


def _device_matches(device: NetworkDevice, current: str | None) -> bool:
    if current is None:
        return False
    fields = parse_network_device(current)
    return (
        fields.get("model") == device.model
        and fields.get("bridge") == device.bridge
        and fields.get("mtu") == (None if device.mtu is None else str(device.mtu))
        and fields.get("tag") == (None if device.vlan is None else str(device.vlan))
    )


def should_update_network_devices(scope: MachineScope) -> bool:
    network = scope.proxmox_machine.spec.network
    vm = scope.virtual_machine
    if network is None or vm is None:
        return False
    nets = vm.config.nets
    if network.default is not None and not _device_matches(
        network.default, nets.get(DEFAULT_NETWORK_DEVICE)
    ):
        return True
    return any(
        not _device_matches(device, nets.get(device.name))
        for device in network.additional_devices
    )


def reconcile_disks(scope: MachineScope) -> None:
    disks = scope.proxmox_machine.spec.disks
    if disks is None:
        return

    vm = scope.virtual_machine
    if vm is None or vm.is_running() or scope.proxmox_machine.status.ready:
        # Volumes are only grown before the guest has mounted them.
        return

    boot_volume = disks.boot_volume
    if boot_volume is None:
        return
    try:
        scope.client.resize_disk(vm, boot_volume.disk, boot_volume.format_size())
    except Exception:
        logger.exception(
            "unable to set disk size machine=%s vmid=%s disk=%s",
            scope.name(),
            vm.vmid,
            boot_volume.disk,
        )
        raise


def reconcile_machine_addresses(scope: MachineScope) -> None:
    try:
        addresses = get_machine_addresses(scope)
    except ReconcileError as exc:
        logger.info(
            "machine addresses not available machine=%s reason=%s", scope.name(), exc
        )
        raise
    scope.set_addresses(addresses)


def machine_has_ip_address(scope: MachineScope) -> bool:
    addresses = scope.proxmox_machine.status.ip_addresses.get(DEFAULT_NETWORK_DEVICE)
    return addresses is not None and bool(addresses.ipv4 or addresses.ipv6)


def get_machine_addresses(scope: MachineScope) -> list[MachineAddress]:
    if not machine_has_ip_address(scope):
        raise ReconcileError("machine does not yet have an ip address")

    if not scope.vm_is_running():
        raise ReconcileError(
            "unable to apply configuration as long as the virtual machine is not running"
        )

    addresses = [
        MachineAddress(type=MachineAddressType.HOSTNAME, address=scope.name())
    ]
    assigned = scope.proxmox_machine.status.ip_addresses[DEFAULT_NETWORK_DEVICE]
    cluster_spec = scope.infra_cluster.cluster.spec
    if cluster_spec.ipv4_config is not None and assigned.ipv4:
        addresses.append(
            MachineAddress(type=MachineAddressType.INTERNAL_IP, address=assigned.ipv4)
        )
    if cluster_spec.ipv6_config is not None and assigned.ipv6:
        addresses.append(
            MachineAddress(type=MachineAddressType.INTERNAL_IP, address=assigned.ipv6)
        )
    return addresses


def check_cloud_init_status(scope: MachineScope) -> bool:
    if not scope.vm_is_running():
        return True

    vm = scope.virtual_machine
    if not scope.skip_qemu_guest_check():
        try:
            scope.client.qemu_agent_status(vm)
        except Exception as exc:
            raise ReconcileError(f"error waiting for agent on vm {scope.name()}") from exc

    if not scope.skip_cloud_init_check():
        try:
            running = scope.client.cloud_init_status(vm)
        except CloudInitFailedError as exc:
            conditions.mark_false(
                scope.proxmox_machine,
                conditions.VM_PROVISIONED_CONDITION,
                conditions.VM_PROVISION_FAILED_REASON,
                ConditionSeverity.ERROR,
                str(exc),
            )
            scope.set_failure_message(exc)
            scope.set_failure_reason(conditions.BOOTSTRAP_FAILED_FAILURE)
            metrics.inc("vm_bootstrap_failed_total")
            raise
        if running:
            return True

    return False


def unmount_cloud_init_iso(scope: MachineScope) -> None:
    settings = get_settings()
    scope.client.unmount_cloud_init_iso(
        scope.virtual_machine, settings.cloud_init_iso_device
    )


def extract_uuid(smbios1: str) -> str:
    # smbios1 looks like "uuid=7dd9b137-6a3c-4661-a4fa-375075e1776b,manufacturer=..."
    for field in smbios1.split(","):
        key, _, value = field.partition("=")
        if key.strip() == "uuid":
            return value.strip()
    return ""
