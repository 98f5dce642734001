from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from tokenmesh.api.dependencies import Identity, get_identity, open_dispatcher
from tokenmesh.api.errors import APIError
from tokenmesh.api.pagination import CursorError, decode_cursor, encode_next_cursor
from tokenmesh.runtime.engine import ExecutionResult, build_engine
from tokenmesh.storage.sqlite_store import ExecutionRecord


router = APIRouter()

# Roles allowed to report completion on behalf of a worker.
COMPLETER_ROLES = {"admin", "superadmin", "worker"}


class CreateExecutionRequest(BaseModel):
    payload: dict[str, Any]
    strategy_id: str | None = None
    worker_type: str | None = None
    estimated_tokens: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    mode: Literal["async", "sync"] = Field(
        default="async",
        description="async: queue for the background runner (or an external worker). sync: execute inline.",
    )


class CompleteExecutionRequest(BaseModel):
    success: bool
    tokens_consumed: int = Field(ge=0)
    output_summary: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def _visible(execution: ExecutionRecord, identity: Identity) -> bool:
    if identity.is_admin:
        return execution.tenant_id == identity.tenant_id
    return execution.user_id == identity.user_id


@router.post("/executions")
def create_execution(
    body: CreateExecutionRequest,
    identity: Identity = Depends(get_identity),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    user_id = identity.require_user()

    # Idempotency: hash the raw request body, scoped to the caller.
    req_json = json.dumps(body.model_dump(mode="json"), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    request_hash = hashlib.sha256(req_json.encode("utf-8")).hexdigest()
    scoped_key = f"executions:{user_id}:{idempotency_key.strip()}" if idempotency_key else None

    with open_dispatcher() as d:
        store = d.wallets.store
        if scoped_key:
            existing = store.get_idempotency(scoped_key)
            if existing is not None:
                if str(existing["request_hash"]) != request_hash:
                    raise APIError(
                        status_code=409,
                        code="conflict",
                        message="Idempotency-Key was already used with a different request body.",
                    )
                return json.loads(str(existing["response_json"]))

        d.wallets.ensure_wallet(user_id, tenant_id=identity.tenant_id)
        kwargs: dict[str, Any] = {
            "strategy_id": body.strategy_id,
            "worker_type": body.worker_type,
            "estimated_tokens": body.estimated_tokens,
            "metadata": body.metadata,
        }
        if body.mode == "sync":
            execution = d.run(user_id, identity.tenant_id, body.payload, build_engine(d.config.dispatch), **kwargs)
        else:
            execution = d.dispatch(user_id, identity.tenant_id, body.payload, **kwargs)

        response: dict[str, Any] = {"execution": asdict(execution)}
        if scoped_key:
            store.put_idempotency(
                key=scoped_key,
                request_hash=request_hash,
                response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
            )
            # First writer wins if two identical requests raced past the lookup.
            stored = store.get_idempotency(scoped_key)
            if stored is not None:
                return json.loads(str(stored["response_json"]))
        return response


@router.get("/executions")
def list_executions(
    user_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    if identity.is_admin:
        target = (user_id or "").strip() or None
    else:
        target = identity.require_user()

    try:
        cursor_obj = decode_cursor(cursor)
    except CursorError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    with open_dispatcher() as d:
        page = d.wallets.store.list_executions_page(
            tenant_id=identity.tenant_id,
            user_id=target,
            limit=int(limit),
            cursor=cursor_obj.as_key() if cursor_obj is not None else None,
            statuses=status or None,
        )
        page["items"] = [asdict(e) for e in page["items"]]
        return encode_next_cursor(page)


@router.get("/executions/{execution_id}")
def get_execution(execution_id: str, identity: Identity = Depends(get_identity)) -> dict[str, Any]:
    with open_dispatcher() as d:
        execution = d.get_execution(execution_id)
        if not _visible(execution, identity):
            raise APIError(status_code=404, code="execution_not_found", message="Execution not found.")
        return {"execution": asdict(execution)}


@router.post("/executions/{execution_id}/complete")
def complete_execution(
    execution_id: str,
    body: CompleteExecutionRequest,
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    if (identity.role or "").strip().lower() not in COMPLETER_ROLES:
        raise APIError(
            status_code=403,
            code="forbidden",
            message="Only workers or admins can complete executions.",
            details={"role": identity.role},
        )
    with open_dispatcher() as d:
        execution = d.complete(
            execution_id,
            ExecutionResult(
                success=body.success,
                tokens_consumed=body.tokens_consumed,
                output_summary=body.output_summary,
                error=body.error,
                metadata=body.metadata,
            ),
        )
        return {"execution": asdict(execution)}
