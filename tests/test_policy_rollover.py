from __future__ import annotations

import tempfile
import time
from datetime import datetime, timezone

import pytest

from tokenmesh.errors import InvalidArgument, PolicyNotFound
from tokenmesh.storage.sqlite_store import SQLiteStore, WalletRecord
from tokenmesh.tokens.periods import next_period_start, period_start
from tokenmesh.tokens.policy import NO_POLICY, AllocationPolicyEngine, EffectivePolicy, plan_rollover
from tokenmesh.tokens.wallet import TokenWalletService


def _ts(*args: int) -> float:
    return datetime(*args, tzinfo=timezone.utc).timestamp()


def _wallet(*, current: int, next_reset_at: float | None) -> WalletRecord:
    return WalletRecord(
        wallet_id="wal_1",
        user_id="u1",
        tenant_id=None,
        level_id=None,
        current_tokens=current,
        reserved_tokens=0,
        lifetime_tokens=current,
        monthly_allocation_tokens=1000,
        borrowed_tokens=0,
        status="active",
        last_reset_at=None,
        next_reset_at=next_reset_at,
        metadata={},
        created_at=0.0,
        updated_at=0.0,
        version=0,
    )


def _policy(**overrides: object) -> EffectivePolicy:
    base = {
        "policy_id": "pol_1",
        "source": "level",
        "base_allocation": 0,
        "monthly_allocation": 1000,
        "monthly_cap": None,
        "rollover_percent": 20.0,
        "allocation_mode": "monthly",
        "enforcement_mode": "strict",
        "priority_weight": 0,
        "min_reserve_tokens": None,
        "allow_manual_override": True,
    }
    base.update(overrides)
    return EffectivePolicy(**base)  # type: ignore[arg-type]


def test_plan_forfeits_above_rollover_share_then_grants() -> None:
    now = _ts(2024, 3, 1, 0, 0, 5)
    plan = plan_rollover(_wallet(current=500, next_reset_at=_ts(2024, 3, 1)), _policy(), now)

    assert plan.due
    assert plan.carry_cap == 200
    assert plan.forfeit == 300
    assert plan.grant == 1000
    assert plan.balance_after == 1200
    assert plan.next_reset_at == _ts(2024, 4, 1)


def test_plan_is_noop_before_boundary_and_for_manual_mode() -> None:
    wallet = _wallet(current=500, next_reset_at=_ts(2024, 4, 1))
    assert not plan_rollover(wallet, _policy(), _ts(2024, 3, 15)).due

    due_wallet = _wallet(current=500, next_reset_at=_ts(2024, 3, 1))
    assert not plan_rollover(due_wallet, _policy(allocation_mode="manual"), _ts(2024, 3, 15)).due
    assert not plan_rollover(due_wallet, NO_POLICY, _ts(2024, 3, 15)).due


def test_plan_grant_respects_monthly_cap() -> None:
    plan = plan_rollover(
        _wallet(current=150, next_reset_at=_ts(2024, 3, 1)),
        _policy(monthly_cap=1100),
        _ts(2024, 3, 2),
    )
    assert plan.forfeit == 0
    assert plan.grant == 950
    assert plan.balance_after == 1100


def test_missed_periods_do_not_stack() -> None:
    # Three months late: still one grant, next boundary after `now`.
    plan = plan_rollover(_wallet(current=0, next_reset_at=_ts(2024, 1, 1)), _policy(), _ts(2024, 3, 20))
    assert plan.grant == 1000
    assert plan.next_reset_at == _ts(2024, 4, 1)


def test_period_boundaries_are_calendar_aligned_utc() -> None:
    assert next_period_start("monthly", _ts(2024, 12, 31, 23, 59)) == _ts(2025, 1, 1)
    assert next_period_start("yearly", _ts(2024, 6, 1)) == _ts(2025, 1, 1)
    assert next_period_start("daily", _ts(2024, 2, 28, 12)) == _ts(2024, 2, 29)
    # 2024-03-06 is a Wednesday; weeks start on Sunday.
    assert period_start("weekly", datetime(2024, 3, 6, 10, tzinfo=timezone.utc)) == datetime(
        2024, 3, 3, tzinfo=timezone.utc
    )
    assert next_period_start("weekly", _ts(2024, 3, 6, 10)) == _ts(2024, 3, 10)
    assert next_period_start("manual", _ts(2024, 3, 6)) is None


def test_user_policy_overrides_level_policy() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            wallets = TokenWalletService(store)
            policies = AllocationPolicyEngine(wallets)
            level = policies.set_level_policy("basic", monthly_allocation=100)
            wallets.ensure_wallet("u1", level_id="basic")
            assert policies.effective_policy("u1").policy_id == level.policy_id

            override = policies.set_user_policy("u1", monthly_allocation=5000, enforcement_mode="soft")
            effective = policies.effective_policy("u1")
            assert effective.policy_id == override.policy_id
            assert effective.source == "user"
            assert effective.enforcement_mode == "soft"

            assert policies.effective_policy("stranger") == NO_POLICY
        finally:
            store.close()


def test_policy_upsert_updates_in_place_and_validates() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            policies = AllocationPolicyEngine(TokenWalletService(store))
            p1 = policies.set_level_policy("pro", monthly_allocation=100)
            p2 = policies.set_level_policy("pro", monthly_allocation=200)
            assert p1.policy_id == p2.policy_id
            assert policies.get_policy(p1.policy_id).monthly_allocation == 200

            with pytest.raises(PolicyNotFound):
                policies.get_policy("pol_missing")
            with pytest.raises(InvalidArgument):
                policies.set_level_policy("pro", rollover_percent=150)
            with pytest.raises(InvalidArgument):
                policies.set_level_policy("pro", allocation_mode="hourly")
            with pytest.raises(InvalidArgument):
                policies.set_level_policy("pro", enforcement_mode="lenient")
        finally:
            store.close()


def test_apply_period_rollover_posts_forfeit_and_grant_once() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            wallets = TokenWalletService(store)
            policies = AllocationPolicyEngine(wallets)
            policies.set_level_policy("pro", base_allocation=500, monthly_allocation=1000, rollover_percent=20)
            wallet = wallets.ensure_wallet("u1", level_id="pro")
            assert wallet.current_tokens == 500
            assert wallet.next_reset_at is not None

            now = wallet.next_reset_at + 1
            plan = policies.apply_period_rollover("u1", now=now)
            assert plan.due
            assert (plan.forfeit, plan.grant) == (300, 1000)

            wallet = wallets.get_wallet("u1")
            assert wallet.current_tokens == 1200
            assert wallet.last_reset_at == pytest.approx(now)
            assert wallet.next_reset_at is not None and wallet.next_reset_at > now

            reasons = [e.reason for e in wallets.get_ledger("u1")]
            assert reasons == ["period-allocation", "rollover-forfeit", "initial-allocation"]

            # Same instant again: nothing is due any more.
            again = policies.apply_period_rollover("u1", now=now)
            assert not again.due
            assert wallets.get_wallet("u1").current_tokens == 1200
            assert wallets.verify_ledger("u1").consistent
        finally:
            store.close()


def test_apply_due_rollovers_sweeps_only_due_active_wallets() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            wallets = TokenWalletService(store)
            policies = AllocationPolicyEngine(wallets)
            policies.set_level_policy("pro", monthly_allocation=100, allocation_mode="daily")
            for uid in ("a", "b", "c"):
                wallets.ensure_wallet(uid, level_id="pro")
            wallets.set_wallet_status("c", "inactive")

            later = max(wallets.get_wallet(u).next_reset_at or 0.0 for u in ("a", "b")) + 10
            summary = policies.apply_due_rollovers(now=later)
            assert summary == {"checked": 2, "applied": 2, "failed": []}
            assert wallets.get_wallet("a").current_tokens == 100
            assert wallets.get_wallet("c").current_tokens == 0

            assert policies.apply_due_rollovers(now=later)["applied"] == 0
        finally:
            store.close()


def test_level_assigned_after_wallet_creation_receives_period_grant() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            wallets = TokenWalletService(store)
            policies = AllocationPolicyEngine(wallets)
            policies.set_level_policy("pro", monthly_allocation=1000)
            wallet = wallets.ensure_wallet("u1")
            assert wallet.next_reset_at is None

            before = time.time()
            wallet = wallets.set_wallet_level("u1", "pro")
            assert wallet.level_id == "pro"
            assert wallet.monthly_allocation_tokens == 1000
            assert wallet.next_reset_at is not None and before <= wallet.next_reset_at <= time.time()

            summary = policies.apply_due_rollovers(now=_ts(2100, 1, 1))
            assert summary["applied"] == 1
            wallet = wallets.get_wallet("u1")
            assert wallet.current_tokens == 1000
            assert wallet.next_reset_at == _ts(2100, 2, 1)
        finally:
            store.close()


def test_policy_set_after_wallet_creation_schedules_allocation() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            wallets = TokenWalletService(store)
            policies = AllocationPolicyEngine(wallets)
            wallets.ensure_wallet("u1")
            wallets.ensure_wallet("u2", level_id="gold")
            wallets.ensure_wallet("u3")

            policies.set_user_policy("u1", monthly_allocation=300, allocation_mode="weekly")
            policies.set_level_policy("gold", monthly_allocation=50, allocation_mode="daily")
            policies.set_user_policy("u3", base_allocation=10, allocation_mode="manual")
            assert wallets.get_wallet("u3").next_reset_at is None

            summary = policies.apply_due_rollovers(now=time.time() + 1)
            assert summary == {"checked": 2, "applied": 2, "failed": []}
            assert wallets.get_wallet("u1").current_tokens == 300
            assert wallets.get_wallet("u2").current_tokens == 50
            assert wallets.get_wallet("u3").current_tokens == 0
        finally:
            store.close()


def test_rollover_sweep_moves_past_wallets_that_keep_failing(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            wallets = TokenWalletService(store)
            policies = AllocationPolicyEngine(wallets)
            policies.set_level_policy("pro", monthly_allocation=100, allocation_mode="daily")
            for uid in ("a", "b", "c", "d"):
                wallets.ensure_wallet(uid, level_id="pro")

            original = policies.apply_period_rollover

            def flaky(user_id: str, *, now: float | None = None) -> object:
                if user_id != "d":
                    raise RuntimeError("ledger unavailable")
                return original(user_id, now=now)

            monkeypatch.setattr(policies, "apply_period_rollover", flaky)

            later = max(wallets.get_wallet(u).next_reset_at or 0.0 for u in ("a", "b", "c", "d")) + 10
            summary = policies.apply_due_rollovers(now=later, batch_size=2)
            assert summary["checked"] == 4
            assert summary["applied"] == 1
            assert sorted(summary["failed"]) == ["a", "b", "c"]
            assert wallets.get_wallet("d").current_tokens == 100
        finally:
            store.close()
