from __future__ import annotations

import logging
import random
import time
import traceback
from typing import Any

from tokenmesh.config.load_config import AppConfig, load_app_config
from tokenmesh.errors import (
    ExecutionNotFound,
    ExecutionStateError,
    InsufficientTokens,
    InvalidArgument,
    WalletInactive,
    WalletNotFound,
)
from tokenmesh.runtime.engine import ExecutionEngine, ExecutionResult
from tokenmesh.storage.sqlite_store import ExecutionRecord, SQLiteStore
from tokenmesh.tokens.policy import AllocationPolicyEngine
from tokenmesh.tokens.wallet import ChargeResult, TokenWalletService
from tokenmesh.workers.registry import WorkerRegistry
from tokenmesh.workers.routing import RoutingSelector


log = logging.getLogger(__name__)


class ExecutionDispatcher:
    """Runs one unit of paid work: reserve check, routing, execution record, billing.

    Tokens are debited after the fact, sized to what the engine reports as
    consumed. Failed executions are billed too unless `refund_on_failure` is on.
    """

    def __init__(
        self,
        store: SQLiteStore,
        *,
        config: AppConfig,
        wallets: TokenWalletService,
        policies: AllocationPolicyEngine,
        registry: WorkerRegistry,
        router: RoutingSelector,
    ) -> None:
        self._store = store
        self._config = config
        self.wallets = wallets
        self.policies = policies
        self.registry = registry
        self.router = router

    @property
    def config(self) -> AppConfig:
        return self._config

    @classmethod
    def from_store(
        cls,
        store: SQLiteStore,
        *,
        config: AppConfig | None = None,
        rng: random.Random | None = None,
    ) -> "ExecutionDispatcher":
        cfg = config or load_app_config()
        wallets = TokenWalletService(store, config=cfg.wallet)
        registry = WorkerRegistry(store, config=cfg.registry)
        return cls(
            store,
            config=cfg,
            wallets=wallets,
            policies=AllocationPolicyEngine(wallets),
            registry=registry,
            router=RoutingSelector(store, registry, default_strategy=cfg.routing.default_strategy, rng=rng),
        )

    def dispatch(
        self,
        user_id: str,
        tenant_id: str | None,
        payload: dict[str, Any],
        *,
        strategy_id: str | None = None,
        worker_type: str | None = None,
        estimated_tokens: int | None = None,
        metadata: dict[str, Any] | None = None,
        claimed: bool = False,
    ) -> ExecutionRecord:
        if not isinstance(payload, dict):
            raise InvalidArgument("payload must be an object.")
        if estimated_tokens is not None and (isinstance(estimated_tokens, bool) or estimated_tokens < 0):
            raise InvalidArgument("estimated_tokens must be >= 0.", details={"estimated_tokens": estimated_tokens})

        wallet = self.wallets.get_wallet(user_id)
        if wallet.next_reset_at is not None and wallet.next_reset_at <= time.time():
            self.policies.apply_period_rollover(user_id)
            wallet = self.wallets.get_wallet(user_id)
        if wallet.status != "active":
            raise WalletInactive("Wallet is inactive.", details={"user_id": user_id})

        policy = self.policies.effective_policy(user_id)
        min_reserve = (
            policy.min_reserve_tokens
            if policy.min_reserve_tokens is not None
            else self._config.wallet.default_min_reserve_tokens
        )
        exe_meta = dict(metadata or {})
        if wallet.current_tokens < min_reserve:
            if policy.enforcement_mode != "soft":
                raise InsufficientTokens(
                    required=min_reserve,
                    available=wallet.current_tokens,
                    message=f"Insufficient tokens. Required: {min_reserve}, available: {wallet.current_tokens}.",
                )
            exe_meta["below_reserve"] = True
            exe_meta["min_reserve_tokens"] = min_reserve

        worker = self.router.route(tenant_id, strategy_id, worker_type=worker_type)
        sid = strategy_id or self.router.default_strategy

        with self._store.transaction(mode="IMMEDIATE"):
            execution = self._store.insert_execution(
                user_id=user_id,
                tenant_id=tenant_id,
                wallet_id=wallet.wallet_id,
                worker_id=worker.worker_id,
                strategy_id=sid,
                payload=payload,
                estimated_tokens=estimated_tokens,
                metadata=exe_meta,
                claimed=claimed,
                commit=False,
            )
            self._store.adjust_worker_load(worker_id=worker.worker_id, delta=1, commit=False)
            self._store.append_event(
                tenant_id=tenant_id,
                subject_type="execution",
                subject_id=execution.execution_id,
                event_type="execution_started",
                payload={
                    "user_id": user_id,
                    "worker_id": worker.worker_id,
                    "strategy_id": sid,
                    "below_reserve": bool(exe_meta.get("below_reserve")),
                },
                commit=False,
            )

        log.info(
            "execution %s dispatched user_id=%s worker_id=%s strategy=%s",
            execution.execution_id,
            user_id,
            worker.worker_id,
            sid,
        )
        return execution

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        execution = self._store.get_execution(execution_id=execution_id)
        if execution is None:
            raise ExecutionNotFound("Execution not found.", details={"execution_id": execution_id})
        return execution

    def complete(self, execution_id: str, result: ExecutionResult) -> ExecutionRecord:
        """Finish a running execution and bill its actual consumption in one transaction."""
        execution = self.get_execution(execution_id)
        if execution.status != "running":
            raise ExecutionStateError(
                "Execution already finished.",
                details={"execution_id": execution_id, "status": execution.status},
            )

        tokens = max(0, int(result.tokens_consumed or 0))
        status = "completed" if result.success else "failed"
        refund_enabled = bool(self._config.dispatch.refund_on_failure)

        def _finish() -> dict[str, Any]:
            if not self._store.finish_execution(
                execution_id=execution_id,
                status=status,
                tokens_consumed=tokens,
                output_summary=result.output_summary,
                error=result.error,
                commit=False,
            ):
                raise ExecutionStateError("Execution already finished.", details={"execution_id": execution_id})
            self._store.adjust_worker_load(worker_id=execution.worker_id, delta=-1, commit=False)

            meta = dict(execution.metadata)
            if result.metadata:
                meta["engine"] = dict(result.metadata)

            charge = ChargeResult(entry=None, requested=tokens, billed=0, unbilled=0, borrowed=0)
            if tokens > 0:
                try:
                    charge = self.wallets.charge_in_transaction(
                        execution.user_id,
                        tokens,
                        "execution",
                        source="execution",
                        reference_type="execution",
                        reference_id=execution_id,
                        execution_id=execution_id,
                        metadata={"worker_id": execution.worker_id, "status": status},
                    )
                except WalletNotFound as e:
                    # Also covers wallets deactivated while the work was in flight.
                    charge = ChargeResult(entry=None, requested=tokens, billed=0, unbilled=tokens, borrowed=0)
                    meta["billing_error"] = e.code
            if charge.unbilled:
                meta["unbilled_tokens"] = charge.unbilled
            if charge.borrowed:
                meta["borrowed_tokens"] = charge.borrowed

            billed = charge.billed
            if status == "failed" and refund_enabled and billed > 0:
                self.wallets.post_in_transaction(
                    execution.user_id,
                    billed,
                    "credit",
                    "execution-refund",
                    source="refund",
                    reference_type="execution",
                    reference_id=execution_id,
                    execution_id=execution_id,
                )
                meta["refunded_tokens"] = billed
                billed = 0

            self._store.update_execution_billing(
                execution_id=execution_id, tokens_billed=billed, metadata=meta, commit=False
            )
            self._store.append_event(
                tenant_id=execution.tenant_id,
                subject_type="execution",
                subject_id=execution_id,
                event_type="execution_completed" if status == "completed" else "execution_failed",
                payload={
                    "tokens_consumed": tokens,
                    "tokens_billed": billed,
                    "unbilled_tokens": charge.unbilled,
                    "error": result.error,
                },
                severity="info" if status == "completed" else "error",
                commit=False,
            )
            return meta

        meta = self.wallets.run_atomic(_finish)
        if meta.get("unbilled_tokens"):
            log.warning(
                "execution %s finished with %d unbilled tokens", execution_id, int(meta["unbilled_tokens"])
            )
        return self.get_execution(execution_id)

    def execute_dispatched(self, execution: ExecutionRecord, engine: ExecutionEngine) -> ExecutionRecord:
        """Call the engine for an already-dispatched execution and complete it."""
        worker = self.registry.get_worker(execution.worker_id)
        try:
            result = engine.execute(execution, worker)
        except Exception as e:
            # Engine bugs become a failed execution; nothing was reported as consumed.
            log.exception("engine %s raised for execution %s", getattr(engine, "name", "?"), execution.execution_id)
            result = ExecutionResult(
                success=False,
                tokens_consumed=0,
                error=f"engine_unhandled_exception: {e}",
                metadata={"traceback": traceback.format_exc()},
            )
        return self.complete(execution.execution_id, result)

    def run(
        self,
        user_id: str,
        tenant_id: str | None,
        payload: dict[str, Any],
        engine: ExecutionEngine,
        **dispatch_kwargs: Any,
    ) -> ExecutionRecord:
        """Dispatch, execute and complete synchronously."""
        execution = self.dispatch(user_id, tenant_id, payload, claimed=True, **dispatch_kwargs)
        return self.execute_dispatched(execution, engine)

    def reconcile_running_executions(self, *, reason: str = "server_restarted") -> int:
        """Fail executions left `running` by a previous process and release their worker load."""
        reconciled = 0
        for execution in self._store.list_running_executions():
            with self._store.transaction(mode="IMMEDIATE"):
                if not self._store.finish_execution(
                    execution_id=execution.execution_id,
                    status="failed",
                    tokens_consumed=0,
                    output_summary=None,
                    error=reason,
                    commit=False,
                ):
                    continue
                self._store.adjust_worker_load(worker_id=execution.worker_id, delta=-1, commit=False)
                self._store.update_execution_billing(
                    execution_id=execution.execution_id,
                    tokens_billed=0,
                    metadata=execution.metadata,
                    commit=False,
                )
                self._store.append_event(
                    tenant_id=execution.tenant_id,
                    subject_type="execution",
                    subject_id=execution.execution_id,
                    event_type="execution_failed",
                    payload={"error": reason},
                    severity="error",
                    commit=False,
                )
            reconciled += 1
        if reconciled:
            log.warning("reconciled %d running executions (%s)", reconciled, reason)
        return reconciled
