from __future__ import annotations

from dataclasses import asdict
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tokenmesh.api.dependencies import Identity, get_identity, open_dispatcher
from tokenmesh.storage.sqlite_store import WorkerQuery
from tokenmesh.workers.registry import WorkerDescriptor


router = APIRouter()


class RegisterWorkerRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    worker_type: str = Field(min_length=1)
    capacity: int = Field(default=1, ge=0)
    current_load: int = Field(default=0, ge=0)
    region: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class HealthRequest(BaseModel):
    health_score: int = Field(ge=0, le=100)


class LoadRequest(BaseModel):
    current_load: int = Field(ge=0)


class StatusRequest(BaseModel):
    status: Literal["active", "inactive", "maintenance", "error"]


class WorkerEventRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    severity: Literal["info", "warning", "error"] = "info"


def _worker_out(worker: Any, *, stale: bool | None = None) -> dict[str, Any]:
    out = asdict(worker)
    out["load_percent"] = (worker.current_load / worker.capacity * 100) if worker.capacity > 0 else None
    if stale is not None:
        out["stale"] = stale
    return out


@router.post("/workers/register")
def register_worker(body: RegisterWorkerRequest, identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    with open_dispatcher() as d:
        worker = d.registry.register_worker(
            identity.tenant_id,
            WorkerDescriptor(
                worker_id=body.worker_id,
                worker_type=body.worker_type,
                capacity=body.capacity,
                current_load=body.current_load,
                region=body.region,
                tags=tuple(body.tags),
                metadata=body.metadata,
            ),
        )
        return {"worker": _worker_out(worker)}


@router.get("/workers")
def list_workers(
    status: str | None = Query(default=None),
    worker_type: str | None = Query(default=None),
    region: str | None = Query(default=None),
    min_health_score: int | None = Query(default=None, ge=0, le=100),
    tag: list[str] | None = Query(default=None),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    query = WorkerQuery(
        status=status,
        worker_type=worker_type,
        region=region,
        min_health_score=min_health_score,
        tags=tuple(tag or ()),
    )
    with open_dispatcher() as d:
        workers = d.registry.list_workers(identity.tenant_id, query)
        return {"items": [_worker_out(w, stale=d.registry.monitor.is_stale(w)) for w in workers]}


@router.get("/workers/available")
def available_workers(
    worker_type: str | None = Query(default=None),
    min_health_score: int | None = Query(default=None, ge=0, le=100),
    max_load_percent: float | None = Query(default=None, ge=0, le=100),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    with open_dispatcher() as d:
        workers = d.registry.get_available_workers(
            identity.tenant_id,
            worker_type=worker_type,
            min_health_score=min_health_score,
            max_load_percent=max_load_percent,
        )
        return {"items": [_worker_out(w) for w in workers]}


@router.get("/workers/stats/summary")
def worker_stats(identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    with open_dispatcher() as d:
        return {"stats": d.registry.get_worker_stats(identity.tenant_id)}


@router.post("/workers/events")
def log_worker_event(body: WorkerEventRequest, identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    with open_dispatcher() as d:
        d.registry.get_worker(body.worker_id)
        event_id = d.registry.log_event(
            identity.tenant_id, body.worker_id, body.event_type, body.data, severity=body.severity
        )
        return {"event_id": event_id}


@router.get("/workers/events")
def list_worker_events(
    worker_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    severity: Literal["info", "warning", "error"] | None = Query(default=None),
    since: float | None = Query(default=None),
    until: float | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    with open_dispatcher() as d:
        return {
            "items": d.registry.list_events(
                identity.tenant_id,
                worker_id=worker_id,
                event_type=event_type,
                severity=severity,
                since=since,
                until=until,
                limit=int(limit),
            )
        }


@router.get("/workers/{worker_id}")
def get_worker(worker_id: str) -> dict[str, Any]:
    with open_dispatcher() as d:
        worker = d.registry.get_worker(worker_id)
        return {"worker": _worker_out(worker, stale=d.registry.monitor.is_stale(worker))}


@router.post("/workers/{worker_id}/heartbeat")
def heartbeat(worker_id: str) -> dict[str, Any]:
    with open_dispatcher() as d:
        d.registry.heartbeat(worker_id)
        return {"worker_id": worker_id, "status": "ok"}


@router.put("/workers/{worker_id}/health")
def update_health(worker_id: str, body: HealthRequest) -> dict[str, Any]:
    with open_dispatcher() as d:
        return {"worker": _worker_out(d.registry.update_health_score(worker_id, body.health_score))}


@router.put("/workers/{worker_id}/load")
def update_load(worker_id: str, body: LoadRequest) -> dict[str, Any]:
    with open_dispatcher() as d:
        return {"worker": _worker_out(d.registry.update_load(worker_id, body.current_load))}


@router.put("/workers/{worker_id}/status")
def set_status(worker_id: str, body: StatusRequest, identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    identity.require_admin()
    with open_dispatcher() as d:
        return {"worker": _worker_out(d.registry.set_status(worker_id, body.status))}
