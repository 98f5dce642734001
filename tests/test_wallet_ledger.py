from __future__ import annotations

import random
import tempfile

import pytest

from tokenmesh.errors import InsufficientTokens, InvalidAmount, InvalidArgument, WalletInactive, WalletNotFound
from tokenmesh.storage.sqlite_store import SQLiteStore
from tokenmesh.tokens.policy import AllocationPolicyEngine
from tokenmesh.tokens.wallet import TokenWalletService


def _services(db_path: str) -> tuple[SQLiteStore, TokenWalletService, AllocationPolicyEngine]:
    store = SQLiteStore(db_path)
    wallets = TokenWalletService(store)
    return store, wallets, AllocationPolicyEngine(wallets)


def test_ensure_wallet_is_idempotent_and_grants_base_allocation_once() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, policies = _services(f"{td}/app.db")
        try:
            policies.set_level_policy("pro", base_allocation=500, monthly_allocation=1000)

            w1 = wallets.ensure_wallet("u1", tenant_id="t1", level_id="pro")
            w2 = wallets.ensure_wallet("u1", tenant_id="t1", level_id="pro")

            assert w1.wallet_id == w2.wallet_id
            assert w2.current_tokens == 500
            assert w2.lifetime_tokens == 500
            assert w2.monthly_allocation_tokens == 1000
            assert w2.next_reset_at is not None

            entries = wallets.get_ledger("u1")
            assert len(entries) == 1
            assert entries[0].reason == "initial-allocation"
            assert entries[0].source == "allocation"
        finally:
            store.close()


def test_wallet_without_policy_starts_empty() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallet = wallets.ensure_wallet("u1")
            assert wallet.current_tokens == 0
            assert wallet.next_reset_at is None
            assert wallets.get_ledger("u1") == []
        finally:
            store.close()


def test_get_wallet_unknown_user() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            with pytest.raises(WalletNotFound):
                wallets.get_wallet("nobody")
            with pytest.raises(WalletNotFound):
                wallets.adjust_tokens("nobody", 5, "credit", "gift")
        finally:
            store.close()


@pytest.mark.parametrize("amount", [0, -5, 2.5, True, "10"])
def test_adjust_rejects_non_positive_or_non_integer_amounts(amount: object) -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            with pytest.raises(InvalidAmount):
                wallets.adjust_tokens("u1", amount, "credit", "x")  # type: ignore[arg-type]
            assert wallets.get_ledger("u1") == []
        finally:
            store.close()


def test_adjust_rejects_unknown_direction() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            with pytest.raises(InvalidArgument):
                wallets.adjust_tokens("u1", 5, "sideways", "x")
        finally:
            store.close()


def test_strict_overdraft_fails_without_side_effects() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            wallets.adjust_tokens("u1", 40, "credit", "topup")
            before = wallets.get_wallet("u1")

            with pytest.raises(InsufficientTokens) as e:
                wallets.adjust_tokens("u1", 41, "debit", "too-much")
            assert e.value.required == 41
            assert e.value.available == 40

            after = wallets.get_wallet("u1")
            assert after.current_tokens == 40
            assert after.version == before.version
            assert len(wallets.get_ledger("u1")) == 1
        finally:
            store.close()


def test_ledger_entries_track_balance_after_and_sequence() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            e1 = wallets.adjust_tokens("u1", 100, "credit", "topup")
            e2 = wallets.adjust_tokens("u1", 30, "debit", "usage", source="execution", execution_id="exe_1")
            e3 = wallets.adjust_tokens("u1", 5, "credit", "bonus")

            assert [e.seq for e in (e1, e2, e3)] == [1, 2, 3]
            assert [e.balance_after for e in (e1, e2, e3)] == [100, 70, 75]
            assert e2.execution_id == "exe_1"
            assert e3.lifetime_after == 105

            newest_first = wallets.get_ledger("u1")
            assert [e.seq for e in newest_first] == [3, 2, 1]
            assert [e.seq for e in wallets.get_ledger("u1", limit=1, offset=1)] == [2]
        finally:
            store.close()


def test_get_ledger_limit_bounds() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            with pytest.raises(InvalidArgument):
                wallets.get_ledger("u1", limit=0)
            with pytest.raises(InvalidArgument):
                wallets.get_ledger("u1", limit=201)
            with pytest.raises(InvalidArgument):
                wallets.get_ledger("u1", offset=-1)
        finally:
            store.close()


def test_balance_is_reconstructable_from_ledger_after_random_history() -> None:
    rng = random.Random(7)
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            for _ in range(120):
                amount = rng.randint(1, 50)
                direction = rng.choice(["credit", "debit"])
                try:
                    wallets.adjust_tokens("u1", amount, direction, "random")
                except InsufficientTokens:
                    pass

            wallet = wallets.get_wallet("u1")
            entries = list(wallets.iter_ledger("u1", page_size=7))
            credits = sum(e.amount for e in entries if e.direction == "credit")
            debits = sum(e.amount for e in entries if e.direction == "debit")

            assert wallet.current_tokens == credits - debits
            assert wallet.lifetime_tokens == credits
            assert wallet.current_tokens >= 0
            assert [e.seq for e in entries] == list(range(1, len(entries) + 1))
            assert entries[-1].balance_after == wallet.current_tokens

            audit = wallets.verify_ledger("u1")
            assert audit.consistent
            assert audit.sequence_gaps == []
            assert audit.replayed_balance == wallet.current_tokens
        finally:
            store.close()


def test_iter_ledger_is_restartable() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            for i in range(10):
                wallets.adjust_tokens("u1", i + 1, "credit", "topup")

            first = list(wallets.iter_ledger("u1", page_size=3))
            resumed = list(wallets.iter_ledger("u1", page_size=3, after_seq=first[3].seq))
            assert [e.seq for e in resumed] == [e.seq for e in first[4:]]
        finally:
            store.close()


def test_verify_ledger_detects_tampered_projection() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            wallets.adjust_tokens("u1", 50, "credit", "topup")
            store._conn.execute("UPDATE wallets SET current_tokens = 999 WHERE user_id = 'u1';")
            store._conn.commit()

            audit = wallets.verify_ledger("u1")
            assert not audit.consistent
            assert audit.replayed_balance == 50
            assert audit.stored_balance == 999
        finally:
            store.close()


def test_inactive_wallet_rejects_debits_but_accepts_credits() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            wallets.adjust_tokens("u1", 20, "credit", "topup")
            wallets.set_wallet_status("u1", "inactive")

            with pytest.raises(WalletInactive):
                wallets.adjust_tokens("u1", 5, "debit", "usage")
            # WalletInactive is still a WalletNotFound for callers that only care about usability.
            with pytest.raises(WalletNotFound):
                wallets.adjust_tokens("u1", 5, "debit", "usage")

            entry = wallets.adjust_tokens("u1", 5, "credit", "refund")
            assert entry.balance_after == 25
        finally:
            store.close()


def test_soft_enforcement_borrows_and_credits_repay_first() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, policies = _services(f"{td}/app.db")
        try:
            policies.set_user_policy("u1", enforcement_mode="soft", allocation_mode="manual")
            wallets.ensure_wallet("u1")
            wallets.adjust_tokens("u1", 10, "credit", "topup")

            debit = wallets.adjust_tokens("u1", 25, "debit", "usage")
            assert debit.metadata["borrowed"] == 15
            assert debit.balance_after == 0
            assert debit.borrowed_after == 15

            credit = wallets.adjust_tokens("u1", 20, "credit", "topup")
            assert credit.metadata["repaid"] == 15
            assert credit.balance_after == 5
            assert credit.borrowed_after == 0

            wallet = wallets.get_wallet("u1")
            assert wallet.lifetime_tokens == 30
            audit = wallets.verify_ledger("u1")
            assert audit.consistent
            assert audit.replayed_balance == wallet.current_tokens - wallet.borrowed_tokens
        finally:
            store.close()


def test_charge_caps_strict_debit_and_reports_unbilled() -> None:
    with tempfile.TemporaryDirectory() as td:
        store, wallets, _ = _services(f"{td}/app.db")
        try:
            wallets.ensure_wallet("u1")
            wallets.adjust_tokens("u1", 30, "credit", "topup")

            result = wallets.charge("u1", 50, "execution", reference_type="execution", reference_id="exe_1")
            assert result.billed == 30
            assert result.unbilled == 20
            assert result.entry is not None
            assert result.entry.metadata["unbilled"] == 20
            assert wallets.get_wallet("u1").current_tokens == 0

            empty = wallets.charge("u1", 5, "execution")
            assert empty.entry is None
            assert empty.unbilled == 5
        finally:
            store.close()
