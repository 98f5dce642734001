from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from tokenmesh.errors import (
    ConcurrentUpdateConflict,
    ExecutionNotFound,
    ExecutionStateError,
    InsufficientTokens,
    InvalidArgument,
    NoHealthyWorkers,
    PolicyNotFound,
    TokenMeshError,
    WalletInactive,
    WalletNotFound,
    WorkerNotFound,
    WorkerOwnershipConflict,
)


log = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


# Most specific first: WalletInactive must win over WalletNotFound.
_STATUS_BY_ERROR: tuple[tuple[type[TokenMeshError], int], ...] = (
    (WalletInactive, 409),
    (WalletNotFound, 404),
    (PolicyNotFound, 404),
    (WorkerNotFound, 404),
    (ExecutionNotFound, 404),
    (InsufficientTokens, 402),
    (InvalidArgument, 400),
    (NoHealthyWorkers, 503),
    (ConcurrentUpdateConflict, 409),
    (ExecutionStateError, 409),
    (WorkerOwnershipConflict, 409),
)


def status_for(exc: TokenMeshError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def domain_error_handler(_req: Request, exc: TokenMeshError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        log.error("unmapped domain error %s: %s", type(exc).__name__, exc.message)
    return error_response(
        status_code=status,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize Pydantic validation errors into our contract envelope.
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    # Keep errors safe by default; details are still traceable via server logs / sqlite events.
    log.exception("unhandled error", exc_info=exc)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
