from __future__ import annotations

import random
import tempfile
import time
from dataclasses import replace

import pytest

from tokenmesh.config.load_config import load_app_config
from tokenmesh.errors import (
    ExecutionNotFound,
    ExecutionStateError,
    InsufficientTokens,
    NoHealthyWorkers,
    WalletInactive,
)
from tokenmesh.runtime.dispatcher import ExecutionDispatcher
from tokenmesh.runtime.engine import DryRunEngine, ExecutionResult
from tokenmesh.storage.sqlite_store import ExecutionRecord, SQLiteStore, WorkerRecord
from tokenmesh.workers.registry import WorkerDescriptor


def _setup(store: SQLiteStore, *, balance: int = 1000, **policy: object) -> ExecutionDispatcher:
    d = ExecutionDispatcher.from_store(store, rng=random.Random(0))
    d.policies.set_user_policy("u1", base_allocation=balance, allocation_mode="manual", **policy)
    d.wallets.ensure_wallet("u1", tenant_id="t1")
    d.registry.register_worker("t1", WorkerDescriptor("w1", "llm", capacity=4))
    return d


class _BoomEngine:
    name = "boom"

    def execute(self, execution: ExecutionRecord, worker: WorkerRecord) -> ExecutionResult:
        raise RuntimeError("engine exploded")


def test_dispatch_then_complete_bills_actual_consumption() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store)
            exe = d.dispatch("u1", "t1", {"prompt": "hello"}, estimated_tokens=50)
            assert exe.status == "running"
            assert exe.worker_id == "w1"
            assert exe.strategy_id == "least_loaded"
            assert exe.claimed_at is None
            assert d.registry.get_worker("w1").current_load == 1

            done = d.complete(exe.execution_id, ExecutionResult(success=True, tokens_consumed=120, output_summary="ok"))
            assert done.status == "completed"
            assert done.tokens_consumed == 120
            assert done.tokens_billed == 120
            assert done.ended_at is not None
            assert d.registry.get_worker("w1").current_load == 0
            assert d.wallets.get_wallet("u1").current_tokens == 880

            entry = d.wallets.get_ledger("u1", limit=1)[0]
            assert (entry.direction, entry.amount, entry.execution_id) == ("debit", 120, exe.execution_id)
            assert entry.reference_type == "execution"

            with pytest.raises(ExecutionStateError):
                d.complete(exe.execution_id, ExecutionResult(success=True, tokens_consumed=5))
            assert d.wallets.get_wallet("u1").current_tokens == 880

            events = store.list_events(tenant_id="t1", subject_type="execution", subject_id=exe.execution_id)
            assert sorted(e["event_type"] for e in events) == ["execution_completed", "execution_started"]
        finally:
            store.close()


def test_strict_reserve_blocks_dispatch_without_side_effects() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store, balance=50)
            with pytest.raises(InsufficientTokens) as e:
                d.dispatch("u1", "t1", {"prompt": "hi"})
            assert e.value.required == 100
            assert e.value.available == 50
            assert store.count_executions_by_status() == {}
            assert d.registry.get_worker("w1").current_load == 0
            assert d.router.get_routing_metrics("t1")["total_routed"] == 0
        finally:
            store.close()


def test_policy_reserve_overrides_default_and_soft_mode_flags_below_reserve() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store, balance=50, min_reserve_tokens=20)
            assert d.dispatch("u1", "t1", {"prompt": "hi"}).metadata == {}

            d.policies.set_user_policy(
                "u1", allocation_mode="manual", enforcement_mode="soft", min_reserve_tokens=500
            )
            exe = d.dispatch("u1", "t1", {"prompt": "hi"})
            assert exe.metadata["below_reserve"] is True
            assert exe.metadata["min_reserve_tokens"] == 500

            done = d.complete(exe.execution_id, ExecutionResult(success=True, tokens_consumed=80))
            assert done.tokens_billed == 80
            assert done.metadata["borrowed_tokens"] == 30
            wallet = d.wallets.get_wallet("u1")
            assert (wallet.current_tokens, wallet.borrowed_tokens) == (0, 30)
        finally:
            store.close()


def test_consumption_above_balance_is_capped_and_reported() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store, balance=150)
            exe = d.dispatch("u1", "t1", {"prompt": "long job"})
            done = d.complete(exe.execution_id, ExecutionResult(success=True, tokens_consumed=400))

            assert done.status == "completed"
            assert done.tokens_consumed == 400
            assert done.tokens_billed == 150
            assert done.metadata["unbilled_tokens"] == 250
            assert d.wallets.get_wallet("u1").current_tokens == 0
            assert d.wallets.verify_ledger("u1").consistent
        finally:
            store.close()


def test_failed_execution_is_billed_unless_refund_enabled() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store)
            exe = d.dispatch("u1", "t1", {"prompt": "x"})
            failed = d.complete(exe.execution_id, ExecutionResult(success=False, tokens_consumed=40, error="timeout"))
            assert failed.status == "failed"
            assert failed.error == "timeout"
            assert failed.tokens_billed == 40
            assert d.wallets.get_wallet("u1").current_tokens == 960

            cfg = load_app_config()
            refunding = ExecutionDispatcher.from_store(
                store, config=replace(cfg, dispatch=replace(cfg.dispatch, refund_on_failure=True))
            )
            exe2 = refunding.dispatch("u1", "t1", {"prompt": "x"})
            failed2 = refunding.complete(
                exe2.execution_id, ExecutionResult(success=False, tokens_consumed=40, error="timeout")
            )
            assert failed2.tokens_billed == 0
            assert failed2.metadata["refunded_tokens"] == 40
            assert refunding.wallets.get_wallet("u1").current_tokens == 960
            reasons = [e.reason for e in refunding.wallets.get_ledger("u1", limit=2)]
            assert reasons == ["execution-refund", "execution"]
        finally:
            store.close()


def test_dispatch_requires_healthy_worker_and_active_wallet() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store)
            d.registry.update_health_score("w1", 40)
            with pytest.raises(NoHealthyWorkers):
                d.dispatch("u1", "t1", {"prompt": "x"})
            with pytest.raises(NoHealthyWorkers):
                d.dispatch("u1", "t1", {"prompt": "x"}, worker_type="gpu")
            assert store.count_executions_by_status() == {}

            d.registry.update_health_score("w1", 90)
            d.wallets.set_wallet_status("u1", "inactive")
            with pytest.raises(WalletInactive):
                d.dispatch("u1", "t1", {"prompt": "x"})

            with pytest.raises(ExecutionNotFound):
                d.get_execution("exe_missing")
        finally:
            store.close()


def test_due_rollover_is_applied_before_reserve_check() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = ExecutionDispatcher.from_store(store)
            d.policies.set_user_policy("u1", monthly_allocation=300, allocation_mode="monthly")
            wallet = d.wallets.ensure_wallet("u1", tenant_id="t1")
            d.registry.register_worker("t1", WorkerDescriptor("w1", "llm"))
            store.update_wallet_schedule(
                wallet_id=wallet.wallet_id,
                monthly_allocation_tokens=300,
                last_reset_at=None,
                next_reset_at=time.time() - 10,
                commit=True,
            )

            d.dispatch("u1", "t1", {"prompt": "x"})
            wallet = d.wallets.get_wallet("u1")
            assert wallet.current_tokens == 300
            assert wallet.next_reset_at is not None and wallet.next_reset_at > time.time()
        finally:
            store.close()


def test_run_executes_synchronously_with_dry_run_engine() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store)
            engine = DryRunEngine(tokens_per_word=5, min_tokens=10)
            exe = d.run("u1", "t1", {"prompt": "one two three"}, engine)
            assert exe.status == "completed"
            assert exe.claimed_at is not None
            assert exe.tokens_billed == 15
            assert (exe.output_summary or "").startswith("[dry-run]")
            assert d.wallets.get_wallet("u1").current_tokens == 985

            failed = d.run("u1", "t1", {"prompt": "x", "simulate_error": "provider down"}, engine)
            assert failed.status == "failed"
            assert failed.error == "provider down"
            assert failed.tokens_billed == 10
        finally:
            store.close()


def test_engine_exception_becomes_failed_execution() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store)
            exe = d.run("u1", "t1", {"prompt": "x"}, _BoomEngine())
            assert exe.status == "failed"
            assert "engine exploded" in (exe.error or "")
            assert exe.tokens_billed == 0
            assert d.registry.get_worker("w1").current_load == 0
        finally:
            store.close()


def test_reconcile_fails_running_executions_and_releases_load() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            d = _setup(store)
            first = d.dispatch("u1", "t1", {"prompt": "a"})
            d.dispatch("u1", "t1", {"prompt": "b"})
            assert d.registry.get_worker("w1").current_load == 2

            assert d.reconcile_running_executions() == 2
            assert d.registry.get_worker("w1").current_load == 0
            exe = d.get_execution(first.execution_id)
            assert (exe.status, exe.error, exe.tokens_billed) == ("failed", "server_restarted", 0)
            assert d.wallets.get_wallet("u1").current_tokens == 1000
            assert d.reconcile_running_executions() == 0
        finally:
            store.close()
