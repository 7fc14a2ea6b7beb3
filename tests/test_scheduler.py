import pytest

from machine_controller.clients.proxmox import ClusterResource
from machine_controller.schemas import (
    IPConfig,
    Machine,
    NodeLocation,
    ProxmoxCluster,
    ProxmoxClusterSpec,
    ProxmoxMachine,
    ProxmoxMachineSpec,
    SchedulerHints,
)
from machine_controller.scope import ClusterScope, MachineScope
from machine_controller.services.scheduler import InsufficientMemoryError, schedule_vm


GIB = 1024 * 1024 * 1024


class FakeProxmoxClient:
    def __init__(self, totals: dict[str, int], resources: list[ClusterResource] = ()):
        self.totals = totals
        self.resources = list(resources)

    def list_vm_resources(self) -> list[ClusterResource]:
        return list(self.resources)

    def node_memory(self, node: str) -> int:
        return self.totals[node]


def vm_on(node: str, maxmem_gib: int, template: bool = False) -> ClusterResource:
    return ClusterResource(
        vmid=1000,
        node=node,
        name="other",
        template=template,
        tags=[],
        maxmem=maxmem_gib * GIB,
        status="running",
    )


def make_scope(client, memory_mib=4096, control_plane=False, allowed=None, **cluster_spec):
    cluster_spec.setdefault("allowed_nodes", ["pve1", "pve2", "pve3"])
    cluster = ProxmoxCluster(
        name="c1",
        spec=ProxmoxClusterSpec(
            ipv4_config=IPConfig(addresses=["10.0.0.0/24"], prefix=24), **cluster_spec
        ),
    )
    machine = ProxmoxMachine(
        name="m1",
        cluster_name="c1",
        spec=ProxmoxMachineSpec(memory_mib=memory_mib, allowed_nodes=allowed or []),
    )
    owner = Machine(name="m1", cluster_name="c1", control_plane=control_plane)
    return MachineScope(owner, machine, ClusterScope(cluster, client))


def test_prefers_node_with_fewest_machines_of_same_role():
    client = FakeProxmoxClient({"pve1": 64 * GIB, "pve2": 32 * GIB, "pve3": 32 * GIB})
    scope = make_scope(client, control_plane=True)
    cluster = scope.infra_cluster.cluster
    cluster.add_node_location(NodeLocation(machine="cp0", node="pve1"), True)
    cluster.add_node_location(NodeLocation(machine="cp1", node="pve2"), True)
    # Workers do not count against control plane placement.
    cluster.add_node_location(NodeLocation(machine="w0", node="pve3"), False)

    assert schedule_vm(scope) == "pve3"


def test_ties_break_on_free_memory_then_name():
    client = FakeProxmoxClient(
        {"pve1": 32 * GIB, "pve2": 32 * GIB, "pve3": 32 * GIB},
        [vm_on("pve1", 8), vm_on("pve3", 8)],
    )
    scope = make_scope(client)
    assert schedule_vm(scope) == "pve2"

    client.resources = []
    assert schedule_vm(scope) == "pve1"


def test_templates_do_not_reserve_memory():
    client = FakeProxmoxClient(
        {"pve1": 8 * GIB, "pve2": 8 * GIB},
        [vm_on("pve1", 6, template=True), vm_on("pve2", 6)],
    )
    scope = make_scope(client, memory_mib=4096, allowed_nodes=["pve1", "pve2"])

    assert schedule_vm(scope) == "pve1"


def test_memory_adjustment_scales_capacity():
    client = FakeProxmoxClient({"pve1": 8 * GIB})
    scope = make_scope(
        client,
        memory_mib=6144,
        allowed_nodes=["pve1"],
        scheduler_hints=SchedulerHints(memory_adjustment=50),
    )

    with pytest.raises(InsufficientMemoryError) as excinfo:
        schedule_vm(scope)
    assert excinfo.value.available_mib == {"pve1": 4096}


def test_machine_allowed_nodes_override_cluster():
    client = FakeProxmoxClient({"pve1": 64 * GIB, "pve2": 8 * GIB, "pve3": 64 * GIB})
    scope = make_scope(client, allowed=["pve2"])

    assert schedule_vm(scope) == "pve2"


def test_no_room_anywhere():
    client = FakeProxmoxClient(
        {"pve1": 4 * GIB, "pve2": 4 * GIB}, [vm_on("pve1", 2), vm_on("pve2", 2)]
    )
    scope = make_scope(client, memory_mib=4096, allowed_nodes=["pve1", "pve2"])

    with pytest.raises(InsufficientMemoryError, match="cannot reserve 4096MiB"):
        schedule_vm(scope)
