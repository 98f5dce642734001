from __future__ import annotations

import sqlite3
import tempfile

from tokenmesh.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore, WorkerQuery


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def test_fresh_database_is_migrated_to_current_schema() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            for table in (
                "wallets",
                "ledger_entries",
                "token_policies",
                "workers",
                "routing_metrics",
                "events",
                "executions",
                "idempotency_keys",
            ):
                assert _table_exists(store._conn, table), table
            assert store._get_schema_version() == SCHEMA_VERSION
        finally:
            store.close()


def test_reopening_is_idempotent() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        SQLiteStore(db_path).close()
        store = SQLiteStore(db_path)
        try:
            assert store._get_schema_version() == SCHEMA_VERSION
        finally:
            store.close()


def test_transaction_rolls_back_on_error() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            try:
                with store.transaction():
                    store.insert_wallet(user_id="u1", tenant_id=None, level_id=None, commit=False)
                    raise RuntimeError("boom")
            except RuntimeError:
                pass
            assert store.get_wallet(user_id="u1") is None
        finally:
            store.close()


def test_worker_query_builds_parameterised_predicates() -> None:
    clauses, params = WorkerQuery(status="active", region="eu", min_health_score=70).where()
    assert clauses == ["status = ?", "region = ?", "health_score >= ?"]
    assert params == ["active", "eu", 70]

    assert WorkerQuery().where() == ([], [])


def test_worker_query_filters_by_tag() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            store.upsert_worker(
                worker_id="w1", tenant_id="t1", worker_type="llm", capacity=4, current_load=0,
                region=None, tags=["gpu", "fast"], metadata={},
            )
            store.upsert_worker(
                worker_id="w2", tenant_id="t1", worker_type="llm", capacity=4, current_load=0,
                region=None, tags=["cpu"], metadata={},
            )
            found = store.list_workers(tenant_id="t1", query=WorkerQuery(tags=("gpu",)))
            assert [w.worker_id for w in found] == ["w1"]
        finally:
            store.close()
