from __future__ import annotations

from dataclasses import asdict
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tokenmesh.api.dependencies import Identity, get_identity, open_dispatcher


router = APIRouter()


class PolicyRequest(BaseModel):
    base_allocation: int = Field(default=0, ge=0)
    monthly_allocation: int = Field(default=0, ge=0)
    monthly_cap: int | None = Field(default=None, ge=0)
    rollover_percent: float = Field(default=0.0, ge=0, le=100)
    allocation_mode: Literal["monthly", "weekly", "daily", "yearly", "manual"] = "monthly"
    enforcement_mode: Literal["strict", "soft"] = "strict"
    priority_weight: int = 0
    min_reserve_tokens: int | None = Field(default=None, ge=0)
    allow_manual_override: bool = True
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SweepRequest(BaseModel):
    now: float | None = Field(default=None, description="Override the sweep clock (epoch seconds).")


@router.put("/policies/levels/{level_id}")
def put_level_policy(
    level_id: str, body: PolicyRequest, identity: Identity = Depends(get_identity)
) -> dict[str, Any]:
    identity.require_admin()
    with open_dispatcher() as d:
        policy = d.policies.set_level_policy(level_id, tenant_id=identity.tenant_id, **body.model_dump())
        return {"policy": asdict(policy)}


@router.put("/policies/users/{user_id}")
def put_user_policy(
    user_id: str, body: PolicyRequest, identity: Identity = Depends(get_identity)
) -> dict[str, Any]:
    identity.require_admin()
    with open_dispatcher() as d:
        policy = d.policies.set_user_policy(user_id, tenant_id=identity.tenant_id, **body.model_dump())
        return {"policy": asdict(policy)}


@router.get("/policies/effective")
def get_effective_policy(
    user_id: str | None = Query(default=None),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    target = (user_id or "").strip() or identity.require_user()
    if target != identity.user_id:
        identity.require_admin()
    with open_dispatcher() as d:
        return {"user_id": target, "policy": asdict(d.policies.effective_policy(target))}


@router.post("/policies/rollovers/sweep")
def sweep_rollovers(body: SweepRequest | None = None, identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    identity.require_admin()
    with open_dispatcher() as d:
        return d.policies.apply_due_rollovers(now=body.now if body is not None else None)


@router.get("/policies/{policy_id}")
def get_policy(policy_id: str, identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    identity.require_admin()
    with open_dispatcher() as d:
        return {"policy": asdict(d.policies.get_policy(policy_id))}
