import json

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from machine_controller.auth import require_api_token
from machine_controller.db import SessionLocal
from machine_controller.metrics import metrics
from machine_controller.models import MachineRecord
from machine_controller.repositories import (
    clear_failure,
    get_cluster,
    get_machine,
    list_events,
    list_machine_reads,
    update_owner,
    upsert_cluster_spec,
    upsert_machine_spec,
    write_event,
)
from machine_controller.schemas import (
    ClusterUpsertRequest,
    EventRead,
    MachineRead,
    MachineUpsertRequest,
    OwnerRead,
    OwnerUpdateRequest,
    ProxmoxCluster,
    ProxmoxMachine,
)


router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _machine_read(db: Session, name: str) -> MachineRead:
    loaded = get_machine(db, name)
    if loaded is None:
        raise HTTPException(status_code=404, detail="unknown machine")
    owner, proxmox_machine = loaded
    record = db.get(MachineRecord, name)
    return MachineRead(
        machine=OwnerRead.from_machine(owner),
        proxmox_machine=proxmox_machine,
        last_error=record.last_error if record else None,
    )


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.put(
    "/v1/clusters/{name}",
    response_model=ProxmoxCluster,
    dependencies=[Depends(require_api_token)],
)
def put_cluster(
    name: str, req: ClusterUpsertRequest, db: Session = Depends(get_db)
) -> ProxmoxCluster:
    cluster = upsert_cluster_spec(db, name, req.spec)
    write_event(db, "cluster.upserted", {"cluster": name})
    db.commit()
    return cluster


@router.get("/v1/clusters/{name}", response_model=ProxmoxCluster)
def read_cluster(name: str, db: Session = Depends(get_db)) -> ProxmoxCluster:
    cluster = get_cluster(db, name)
    if cluster is None:
        raise HTTPException(status_code=404, detail="unknown cluster")
    return cluster


@router.put(
    "/v1/machines/{name}",
    response_model=ProxmoxMachine,
    dependencies=[Depends(require_api_token)],
)
def put_machine(
    name: str, req: MachineUpsertRequest, db: Session = Depends(get_db)
) -> ProxmoxMachine:
    if get_cluster(db, req.cluster_name) is None:
        raise HTTPException(status_code=404, detail="unknown cluster")
    try:
        machine = upsert_machine_spec(
            db, name, req.cluster_name, req.spec, control_plane=req.control_plane
        )
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    write_event(db, "machine.upserted", {"cluster": req.cluster_name}, name)
    db.commit()
    return machine


@router.get("/v1/machines", response_model=list[MachineRead])
def get_machines(
    cluster: str | None = Query(default=None), db: Session = Depends(get_db)
) -> list[MachineRead]:
    return [
        MachineRead(
            machine=OwnerRead.from_machine(owner),
            proxmox_machine=proxmox_machine,
            last_error=last_error,
        )
        for owner, proxmox_machine, last_error in list_machine_reads(db, cluster)
    ]


@router.get("/v1/machines/{name}", response_model=MachineRead)
def read_machine(name: str, db: Session = Depends(get_db)) -> MachineRead:
    return _machine_read(db, name)


@router.post(
    "/v1/machines/{name}/owner",
    response_model=MachineRead,
    dependencies=[Depends(require_api_token)],
)
def post_owner(
    name: str, req: OwnerUpdateRequest, db: Session = Depends(get_db)
) -> MachineRead:
    try:
        update_owner(
            db,
            name,
            bootstrap_ready=req.bootstrap_ready,
            node_ref=req.node_ref,
            bootstrap_data=req.bootstrap_data,
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="unknown machine") from exc
    write_event(
        db,
        "machine.owner_updated",
        {
            "bootstrap_ready": req.bootstrap_ready,
            "node_ref": req.node_ref,
            "bootstrap_data": req.bootstrap_data is not None,
        },
        name,
    )
    db.commit()
    return _machine_read(db, name)


@router.post(
    "/v1/machines/{name}/clear-failure",
    response_model=ProxmoxMachine,
    dependencies=[Depends(require_api_token)],
)
def post_clear_failure(name: str, db: Session = Depends(get_db)) -> ProxmoxMachine:
    try:
        machine = clear_failure(db, name)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="unknown machine") from exc
    write_event(db, "machine.failure_cleared", {}, name)
    db.commit()
    return machine


@router.get("/v1/events", response_model=list[EventRead])
def get_events(
    machine: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[EventRead]:
    return [
        EventRead(
            id=e.id,
            timestamp=e.timestamp,
            machine_name=e.machine_name,
            event_type=e.event_type,
            payload=json.loads(e.payload_json),
        )
        for e in list_events(db, machine_name=machine, limit=limit)
    ]
