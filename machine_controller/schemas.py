from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator


DEFAULT_NETWORK_DEVICE = "net0"


class VirtualMachineState(str, Enum):
    PENDING = "Pending"
    READY = "Ready"


class VirtualMachine(BaseModel):
    """Observed state handed back to the machine controller after one pass."""

    name: str
    state: VirtualMachineState = VirtualMachineState.PENDING


class ConditionSeverity(str, Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    NONE = ""


class Condition(BaseModel):
    type: str
    status: Literal["True", "False", "Unknown"]
    severity: ConditionSeverity = ConditionSeverity.NONE
    reason: str | None = None
    message: str | None = None
    last_transition_time: datetime


class VMIDRange(BaseModel):
    start: int = Field(ge=100)
    end: int = Field(ge=100)

    @model_validator(mode="after")
    def _check_bounds(self) -> "VMIDRange":
        if self.end < self.start:
            raise ValueError(f"vmid range end {self.end} is below start {self.start}")
        return self


class BootVolume(BaseModel):
    disk: str
    size_gb: int = Field(ge=5)

    def format_size(self) -> str:
        return f"{self.size_gb}G"


class Disks(BaseModel):
    boot_volume: BootVolume | None = None


class NetworkDevice(BaseModel):
    bridge: str
    model: str = "virtio"
    mtu: int | None = Field(default=None, ge=1, le=65520)
    vlan: int | None = Field(default=None, ge=1, le=4094)


class AdditionalNetworkDevice(NetworkDevice):
    name: str = Field(pattern=r"^net[1-9][0-9]*$")


class NetworkSpec(BaseModel):
    default: NetworkDevice | None = None
    additional_devices: list[AdditionalNetworkDevice] = Field(default_factory=list)


class TemplateSelector(BaseModel):
    match_tags: list[str] = Field(min_length=1)


class Checks(BaseModel):
    skip_cloud_init_status: bool = False
    skip_qemu_guest_agent: bool = False


class ProxmoxMachineSpec(BaseModel):
    provider_id: str | None = None
    virtual_machine_id: int | None = None

    source_node: str | None = None
    template_id: int | None = None
    template_selector: TemplateSelector | None = None
    snap_name: str | None = None
    storage: str | None = None
    format: Literal["raw", "qcow2", "vmdk"] | None = None
    full: bool | None = True
    pool: str | None = None
    target: str | None = None
    description: str | None = None
    tags: list[str] | None = None

    num_sockets: int = Field(default=0, ge=0)
    num_cores: int = Field(default=0, ge=0)
    memory_mib: int = Field(default=0, ge=0)

    disks: Disks | None = None
    network: NetworkSpec | None = None
    vmid_range: VMIDRange | None = None
    allowed_nodes: list[str] = Field(default_factory=list)
    checks: Checks | None = None


class IPAddresses(BaseModel):
    ipv4: str | None = None
    ipv6: str | None = None


class MachineAddressType(str, Enum):
    HOSTNAME = "Hostname"
    INTERNAL_IP = "InternalIP"


class MachineAddress(BaseModel):
    type: MachineAddressType
    address: str


class ProxmoxMachineStatus(BaseModel):
    ready: bool = False
    vm_status: VirtualMachineState | None = None
    task_ref: str | None = None
    proxmox_node: str | None = None
    bootstrap_data_provided: bool = False
    bootstrap_iso: str | None = None
    ip_addresses: dict[str, IPAddresses] = Field(default_factory=dict)
    addresses: list[MachineAddress] = Field(default_factory=list)
    failure_reason: str | None = None
    failure_message: str | None = None
    conditions: list[Condition] = Field(default_factory=list)


class ProxmoxMachine(BaseModel):
    name: str
    cluster_name: str
    resource_version: int = 0
    spec: ProxmoxMachineSpec = Field(default_factory=ProxmoxMachineSpec)
    status: ProxmoxMachineStatus = Field(default_factory=ProxmoxMachineStatus)

    def get_node(self) -> str | None:
        return self.status.proxmox_node or self.spec.source_node

    def get_template_id(self) -> int:
        if self.spec.template_id is None:
            return -1
        return self.spec.template_id

    def get_template_selector_tags(self) -> list[str]:
        if self.spec.template_selector is None:
            return []
        return list(self.spec.template_selector.match_tags)

    def get_virtual_machine_id(self) -> int:
        if self.spec.virtual_machine_id is None:
            return -1
        return self.spec.virtual_machine_id


class Machine(BaseModel):
    """Owner of a ProxmoxMachine at the workload-orchestrator level."""

    name: str
    cluster_name: str
    control_plane: bool = False
    bootstrap_ready: bool = False
    node_ref: str | None = None
    bootstrap_data: str | None = None


class IPConfig(BaseModel):
    addresses: list[str] = Field(min_length=1)
    prefix: int = Field(ge=0, le=128)
    gateway: str | None = None


class SchedulerHints(BaseModel):
    memory_adjustment: int = Field(default=100, ge=0)


class ProxmoxClusterSpec(BaseModel):
    allowed_nodes: list[str] = Field(default_factory=list)
    ipv4_config: IPConfig | None = None
    ipv6_config: IPConfig | None = None
    dns_servers: list[str] = Field(default_factory=list)
    scheduler_hints: SchedulerHints | None = None

    @model_validator(mode="after")
    def _check_ip_configs(self) -> "ProxmoxClusterSpec":
        if self.ipv4_config is None and self.ipv6_config is None:
            raise ValueError("at least one of ipv4_config or ipv6_config is required")
        return self


class NodeLocation(BaseModel):
    machine: str
    node: str


class NodeLocations(BaseModel):
    control_plane: list[NodeLocation] = Field(default_factory=list)
    workers: list[NodeLocation] = Field(default_factory=list)


class ProxmoxClusterStatus(BaseModel):
    node_locations: NodeLocations | None = None


class ProxmoxCluster(BaseModel):
    name: str
    resource_version: int = 0
    spec: ProxmoxClusterSpec
    status: ProxmoxClusterStatus = Field(default_factory=ProxmoxClusterStatus)

    def _locations(self, is_control_plane: bool) -> list[NodeLocation]:
        if self.status.node_locations is None:
            self.status.node_locations = NodeLocations()
        if is_control_plane:
            return self.status.node_locations.control_plane
        return self.status.node_locations.workers

    def add_node_location(self, location: NodeLocation, is_control_plane: bool) -> None:
        locations = self._locations(is_control_plane)
        if any(loc.machine == location.machine for loc in locations):
            return
        locations.append(location)

    def count_node_locations(self, node: str, is_control_plane: bool) -> int:
        if self.status.node_locations is None:
            return 0
        locations = (
            self.status.node_locations.control_plane
            if is_control_plane
            else self.status.node_locations.workers
        )
        return sum(1 for loc in locations if loc.node == node)


class ClusterUpsertRequest(BaseModel):
    spec: ProxmoxClusterSpec


class MachineUpsertRequest(BaseModel):
    cluster_name: str
    control_plane: bool = False
    spec: ProxmoxMachineSpec


class OwnerUpdateRequest(BaseModel):
    bootstrap_ready: bool | None = None
    node_ref: str | None = None
    bootstrap_data: str | None = None


class OwnerRead(BaseModel):
    """Owner view for API reads; bootstrap data is reported only as present or not."""

    name: str
    cluster_name: str
    control_plane: bool
    bootstrap_ready: bool
    node_ref: str | None
    bootstrap_data_set: bool

    @classmethod
    def from_machine(cls, machine: Machine) -> "OwnerRead":
        return cls(
            name=machine.name,
            cluster_name=machine.cluster_name,
            control_plane=machine.control_plane,
            bootstrap_ready=machine.bootstrap_ready,
            node_ref=machine.node_ref,
            bootstrap_data_set=bool(machine.bootstrap_data),
        )


class MachineRead(BaseModel):
    machine: OwnerRead
    proxmox_machine: ProxmoxMachine
    last_error: str | None


class EventRead(BaseModel):
    id: int
    timestamp: datetime
    machine_name: str | None
    event_type: str
    payload: dict
