from __future__ import annotations

import tempfile
import threading

from tokenmesh.errors import InsufficientTokens
from tokenmesh.storage.sqlite_store import SQLiteStore
from tokenmesh.tokens.wallet import TokenWalletService


def test_concurrent_debits_never_double_spend() -> None:
    n_threads = 12
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        setup = SQLiteStore(db_path)
        try:
            wallets = TokenWalletService(setup)
            wallets.ensure_wallet("u1")
            wallets.adjust_tokens("u1", 50, "credit", "topup")
        finally:
            setup.close()

        barrier = threading.Barrier(n_threads)
        lock = threading.Lock()
        outcomes: list[str] = []

        def _debit() -> None:
            store = SQLiteStore(db_path)
            try:
                svc = TokenWalletService(store)
                barrier.wait()
                try:
                    svc.adjust_tokens("u1", 10, "debit", "usage")
                    result = "ok"
                except InsufficientTokens:
                    result = "insufficient"
                except Exception as e:  # surfaced through the assertion below
                    result = f"error:{type(e).__name__}"
                with lock:
                    outcomes.append(result)
            finally:
                store.close()

        threads = [threading.Thread(target=_debit) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert sorted(outcomes) == ["insufficient"] * (n_threads - 5) + ["ok"] * 5

        store = SQLiteStore(db_path)
        try:
            wallets = TokenWalletService(store)
            wallet = wallets.get_wallet("u1")
            assert wallet.current_tokens == 0
            debits = [e for e in wallets.iter_ledger("u1") if e.direction == "debit"]
            assert len(debits) == 5
            assert wallets.verify_ledger("u1").consistent
        finally:
            store.close()
