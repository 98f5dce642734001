from __future__ import annotations

from dataclasses import asdict
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tokenmesh.api.dependencies import Identity, get_identity, open_dispatcher


router = APIRouter()


class AdjustTokensRequest(BaseModel):
    user_id: str | None = Field(default=None, description="Target user; defaults to the caller.")
    amount: int = Field(gt=0)
    direction: Literal["credit", "debit"]
    reason: str = Field(min_length=1)
    reference_type: str | None = None
    reference_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class WalletStatusRequest(BaseModel):
    status: Literal["active", "inactive"]


class WalletLevelRequest(BaseModel):
    level_id: str | None = None


@router.get("/wallet")
def get_wallet(identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    """Caller's wallet (created on first access) plus the policy that governs it."""
    user_id = identity.require_user()
    with open_dispatcher() as d:
        wallet = d.wallets.ensure_wallet(user_id, tenant_id=identity.tenant_id)
        return {
            "wallet": asdict(wallet),
            "policy": asdict(d.policies.effective_policy(user_id)),
        }


@router.get("/wallet/ledger")
def get_ledger(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    user_id = identity.require_user()
    with open_dispatcher() as d:
        d.wallets.ensure_wallet(user_id, tenant_id=identity.tenant_id)
        entries = d.wallets.get_ledger(user_id, limit=int(limit), offset=int(offset))
        return {"items": [asdict(e) for e in entries], "limit": int(limit), "offset": int(offset)}


@router.get("/wallet/audit")
def audit_wallet(
    user_id: str | None = Query(default=None),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    target = _target_user(identity, user_id)
    with open_dispatcher() as d:
        return {"audit": asdict(d.wallets.verify_ledger(target))}


@router.post("/wallet/adjust")
def adjust_tokens(body: AdjustTokensRequest, identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    identity.require_admin()
    target = _target_user(identity, body.user_id)
    with open_dispatcher() as d:
        d.wallets.ensure_wallet(target, tenant_id=identity.tenant_id)
        entry = d.wallets.adjust_tokens(
            target,
            body.amount,
            body.direction,
            body.reason,
            source="manual",
            reference_type=body.reference_type,
            reference_id=body.reference_id,
            metadata={**body.metadata, "actor": identity.user_id},
        )
        return {"entry": asdict(entry), "wallet": asdict(d.wallets.get_wallet(target))}


@router.put("/wallets/{user_id}/status")
def set_wallet_status(
    user_id: str, body: WalletStatusRequest, identity: Identity = Depends(get_identity)
) -> dict[str, Any]:
    identity.require_admin()
    with open_dispatcher() as d:
        return {"wallet": asdict(d.wallets.set_wallet_status(user_id, body.status))}


@router.put("/wallets/{user_id}/level")
def set_wallet_level(
    user_id: str, body: WalletLevelRequest, identity: Identity = Depends(get_identity)
) -> dict[str, Any]:
    identity.require_admin()
    with open_dispatcher() as d:
        return {"wallet": asdict(d.wallets.set_wallet_level(user_id, body.level_id))}


def _target_user(identity: Identity, requested: str | None) -> str:
    requested = (requested or "").strip() or None
    if requested is None or requested == identity.user_id:
        return identity.require_user()
    identity.require_admin()
    return requested
