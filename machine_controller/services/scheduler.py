import logging

from machine_controller.scope import MachineScope
from machine_controller.services.errors import ResourceExhaustedError


logger = logging.getLogger(__name__)

MIB = 1024 * 1024


class InsufficientMemoryError(ResourceExhaustedError):
    def __init__(self, requested_mib: int, available_mib: dict[str, int]):
        self.requested_mib = requested_mib
        self.available_mib = available_mib
        super().__init__(
            f"cannot reserve {requested_mib}MiB of memory on any allowed node: {available_mib}"
        )


def _reservable_memory_mib(scope: MachineScope, nodes: list[str]) -> dict[str, int]:
    hints = scope.infra_cluster.cluster.spec.scheduler_hints
    adjustment = hints.memory_adjustment if hints is not None else 100

    assigned: dict[str, int] = {node: 0 for node in nodes}
    for resource in scope.client.list_vm_resources():
        if resource.node in assigned and not resource.template:
            assigned[resource.node] += resource.maxmem

    available: dict[str, int] = {}
    for node in nodes:
        total = scope.client.node_memory(node)
        available[node] = (total * adjustment // 100 - assigned[node]) // MIB
    return available


def schedule_vm(scope: MachineScope) -> str:
    """Pick the allowed node that holds the fewest machines of the same role."""
    nodes = list(scope.proxmox_machine.spec.allowed_nodes) or list(
        scope.infra_cluster.cluster.spec.allowed_nodes
    )
    requested = scope.proxmox_machine.spec.memory_mib
    available = _reservable_memory_mib(scope, nodes)

    cluster = scope.infra_cluster.cluster
    control_plane = scope.is_control_plane()
    candidates = [node for node in nodes if available[node] >= requested]
    if not candidates:
        raise InsufficientMemoryError(requested, available)

    candidates.sort(
        key=lambda node: (
            cluster.count_node_locations(node, control_plane),
            -available[node],
            node,
        )
    )
    logger.info(
        "scheduled vm machine=%s node=%s available_mib=%s",
        scope.name(),
        candidates[0],
        available,
    )
    return candidates[0]
