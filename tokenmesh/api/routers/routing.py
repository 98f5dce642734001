from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from tokenmesh.api.dependencies import Identity, get_identity, open_dispatcher


router = APIRouter()


@router.get("/routing/strategies")
def list_strategies() -> dict[str, Any]:
    with open_dispatcher() as d:
        return {"items": d.router.list_strategies(), "default": d.router.default_strategy}


@router.get("/routing/metrics")
def routing_metrics(
    worker_id: str | None = Query(default=None),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    with open_dispatcher() as d:
        return {"metrics": d.router.get_routing_metrics(identity.tenant_id, worker_id=worker_id)}
