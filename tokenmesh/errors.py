"""Typed errors for the token economy and worker routing core.

Every error carries a stable `code` so callers (HTTP layer, CLI) can surface it
as a typed outcome instead of a generic failure.
"""

from __future__ import annotations

from typing import Any


class TokenMeshError(RuntimeError):
    code = "internal"
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidArgument(TokenMeshError):
    code = "invalid_argument"


class InvalidAmount(InvalidArgument):
    code = "invalid_amount"


class WalletNotFound(TokenMeshError):
    code = "wallet_not_found"


class WalletInactive(WalletNotFound):
    code = "wallet_inactive"


class InsufficientTokens(TokenMeshError):
    code = "insufficient_tokens"

    def __init__(self, *, required: int, available: int, message: str | None = None) -> None:
        super().__init__(
            message or f"Insufficient tokens. Required: {required}, available: {available}.",
            details={"required": int(required), "available": int(available)},
        )
        self.required = int(required)
        self.available = int(available)


class PolicyNotFound(TokenMeshError):
    code = "policy_not_found"


class WorkerNotFound(TokenMeshError):
    code = "worker_not_found"


class NoHealthyWorkers(TokenMeshError):
    code = "no_healthy_workers"


class InvalidStrategy(InvalidArgument):
    code = "invalid_strategy"


class ConcurrentUpdateConflict(TokenMeshError):
    code = "concurrent_update_conflict"
    retryable = True


class ExecutionNotFound(TokenMeshError):
    code = "execution_not_found"


class ExecutionStateError(TokenMeshError):
    code = "execution_state_conflict"


class WorkerOwnershipConflict(TokenMeshError):
    code = "worker_ownership_conflict"
