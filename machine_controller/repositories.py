import json
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from machine_controller.models import ClusterRecord, Event, MachineRecord
from machine_controller.schemas import (
    Machine,
    ProxmoxCluster,
    ProxmoxClusterSpec,
    ProxmoxClusterStatus,
    ProxmoxMachine,
    ProxmoxMachineSpec,
    ProxmoxMachineStatus,
)


class ConflictError(RuntimeError):
    def __init__(self, kind: str, name: str, expected: int, actual: int):
        self.kind = kind
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} {name} was modified concurrently: expected version {expected}, found {actual}"
        )


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session, event_type: str, payload: dict, machine_name: str | None = None
) -> None:
    session.add(
        Event(
            machine_name=machine_name,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True),
        )
    )


def _to_cluster(record: ClusterRecord) -> ProxmoxCluster:
    return ProxmoxCluster(
        name=record.name,
        resource_version=record.resource_version,
        spec=ProxmoxClusterSpec.model_validate_json(record.spec_json),
        status=ProxmoxClusterStatus.model_validate_json(record.status_json),
    )


def _to_machines(record: MachineRecord) -> tuple[Machine, ProxmoxMachine]:
    owner = Machine(
        name=record.name,
        cluster_name=record.cluster_name,
        control_plane=record.control_plane,
        bootstrap_ready=record.bootstrap_ready,
        node_ref=record.node_ref,
        bootstrap_data=record.bootstrap_data,
    )
    proxmox_machine = ProxmoxMachine(
        name=record.name,
        cluster_name=record.cluster_name,
        resource_version=record.resource_version,
        spec=ProxmoxMachineSpec.model_validate_json(record.spec_json),
        status=ProxmoxMachineStatus.model_validate_json(record.status_json),
    )
    return owner, proxmox_machine


def get_cluster(session: Session, name: str) -> ProxmoxCluster | None:
    record = session.get(ClusterRecord, name)
    return _to_cluster(record) if record else None


def upsert_cluster_spec(
    session: Session, name: str, spec: ProxmoxClusterSpec
) -> ProxmoxCluster:
    record = session.get(ClusterRecord, name)
    if record is None:
        record = ClusterRecord(
            name=name,
            spec_json=spec.model_dump_json(),
            status_json=ProxmoxClusterStatus().model_dump_json(),
            resource_version=1,
        )
        session.add(record)
    else:
        record.spec_json = spec.model_dump_json()
        record.resource_version += 1
        record.updated_at = now_utc()
    session.flush()
    return _to_cluster(record)


def save_cluster_status(session: Session, cluster: ProxmoxCluster) -> None:
    record = session.get(ClusterRecord, cluster.name)
    if record is None:
        raise LookupError(f"unknown cluster {cluster.name}")
    if record.resource_version != cluster.resource_version:
        raise ConflictError(
            "cluster", cluster.name, cluster.resource_version, record.resource_version
        )
    record.status_json = cluster.status.model_dump_json()
    record.resource_version += 1
    record.updated_at = now_utc()
    cluster.resource_version = record.resource_version


def get_machine(session: Session, name: str) -> tuple[Machine, ProxmoxMachine] | None:
    record = session.get(MachineRecord, name)
    return _to_machines(record) if record else None


def list_machines(session: Session) -> list[tuple[Machine, ProxmoxMachine]]:
    records = session.scalars(select(MachineRecord).order_by(MachineRecord.name))
    return [_to_machines(record) for record in records]


def list_machine_reads(
    session: Session, cluster_name: str | None = None
) -> list[tuple[Machine, ProxmoxMachine, str | None]]:
    query = select(MachineRecord).order_by(MachineRecord.name)
    if cluster_name is not None:
        query = query.where(MachineRecord.cluster_name == cluster_name)
    return [
        (*_to_machines(record), record.last_error) for record in session.scalars(query)
    ]


def list_proxmox_machines(session: Session, cluster_name: str) -> list[ProxmoxMachine]:
    records = session.scalars(
        select(MachineRecord)
        .where(MachineRecord.cluster_name == cluster_name)
        .order_by(MachineRecord.name)
    )
    return [_to_machines(record)[1] for record in records]


def upsert_machine_spec(
    session: Session,
    name: str,
    cluster_name: str,
    spec: ProxmoxMachineSpec,
    control_plane: bool = False,
) -> ProxmoxMachine:
    record = session.get(MachineRecord, name)
    if record is None:
        record = MachineRecord(
            name=name,
            cluster_name=cluster_name,
            control_plane=control_plane,
            bootstrap_ready=False,
            spec_json=spec.model_dump_json(),
            status_json=ProxmoxMachineStatus().model_dump_json(),
            resource_version=1,
        )
        session.add(record)
    else:
        if record.cluster_name != cluster_name:
            raise ValueError(
                f"machine {name} belongs to cluster {record.cluster_name}, not {cluster_name}"
            )
        # Identity fields are owned by the reconciler once recorded.
        current = ProxmoxMachineSpec.model_validate_json(record.spec_json)
        if current.virtual_machine_id is not None:
            spec.virtual_machine_id = current.virtual_machine_id
        if current.provider_id is not None:
            spec.provider_id = current.provider_id
        record.spec_json = spec.model_dump_json()
        record.control_plane = control_plane
        record.resource_version += 1
        record.updated_at = now_utc()
    session.flush()
    return _to_machines(record)[1]


def update_owner(
    session: Session,
    name: str,
    *,
    bootstrap_ready: bool | None = None,
    node_ref: str | None = None,
    bootstrap_data: str | None = None,
) -> Machine:
    record = session.get(MachineRecord, name)
    if record is None:
        raise LookupError(f"unknown machine {name}")
    if bootstrap_ready is not None:
        record.bootstrap_ready = bootstrap_ready
    if node_ref is not None:
        record.node_ref = node_ref
    if bootstrap_data is not None:
        record.bootstrap_data = bootstrap_data
    record.updated_at = now_utc()
    return _to_machines(record)[0]


def save_proxmox_machine(
    session: Session, machine: ProxmoxMachine, last_error: str | None = None
) -> None:
    record = session.get(MachineRecord, machine.name)
    if record is None:
        raise LookupError(f"unknown machine {machine.name}")
    if record.resource_version != machine.resource_version:
        raise ConflictError(
            "machine", machine.name, machine.resource_version, record.resource_version
        )
    record.spec_json = machine.spec.model_dump_json()
    record.status_json = machine.status.model_dump_json()
    record.last_error = last_error
    record.resource_version += 1
    record.updated_at = now_utc()
    machine.resource_version = record.resource_version


def clear_failure(session: Session, name: str) -> ProxmoxMachine:
    record = session.get(MachineRecord, name)
    if record is None:
        raise LookupError(f"unknown machine {name}")
    status = ProxmoxMachineStatus.model_validate_json(record.status_json)
    status.failure_reason = None
    status.failure_message = None
    record.status_json = status.model_dump_json()
    record.last_error = None
    record.resource_version += 1
    record.updated_at = now_utc()
    return _to_machines(record)[1]


def list_events(
    session: Session, machine_name: str | None = None, limit: int = 100
) -> list[Event]:
    query = select(Event)
    if machine_name:
        query = query.where(Event.machine_name == machine_name)
    return list(session.scalars(query.order_by(Event.id.desc()).limit(limit)))
