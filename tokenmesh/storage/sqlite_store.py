from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator


SCHEMA_VERSION = 2


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(str(raw))
    except (TypeError, ValueError):
        return default


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def _opt_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def default_db_path() -> str:
    return os.getenv("TOKENMESH_SQLITE_PATH", "data/tokenmesh.db")


@dataclass(frozen=True)
class WalletRecord:
    wallet_id: str
    user_id: str
    tenant_id: str | None
    level_id: str | None
    current_tokens: int
    reserved_tokens: int
    lifetime_tokens: int
    monthly_allocation_tokens: int
    borrowed_tokens: int
    status: str
    last_reset_at: float | None
    next_reset_at: float | None
    metadata: dict[str, Any]
    created_at: float
    updated_at: float
    version: int


@dataclass(frozen=True)
class LedgerEntryRecord:
    entry_id: str
    wallet_id: str
    user_id: str
    tenant_id: str | None
    level_id: str | None
    seq: int
    direction: str
    amount: int
    balance_after: int
    reserved_after: int
    lifetime_after: int
    borrowed_after: int
    reason: str
    source: str
    reference_type: str | None
    reference_id: str | None
    execution_id: str | None
    metadata: dict[str, Any]
    created_at: float


@dataclass(frozen=True)
class PolicyRecord:
    policy_id: str
    tenant_id: str | None
    level_id: str | None
    user_id: str | None
    base_allocation: int
    monthly_allocation: int
    monthly_cap: int | None
    rollover_percent: float
    allocation_mode: str
    enforcement_mode: str
    priority_weight: int
    min_reserve_tokens: int | None
    allow_manual_override: bool
    notes: str | None
    metadata: dict[str, Any]
    created_at: float
    updated_at: float


@dataclass(frozen=True)
class WorkerRecord:
    worker_id: str
    tenant_id: str | None
    worker_type: str
    capacity: int
    current_load: int
    health_score: int
    status: str
    region: str | None
    tags: list[str]
    metadata: dict[str, Any]
    last_heartbeat: float | None
    created_at: float
    updated_at: float

    @property
    def load_ratio(self) -> float:
        if self.capacity <= 0:
            return float("inf")
        return self.current_load / self.capacity


@dataclass(frozen=True)
class ExecutionRecord:
    execution_id: str
    user_id: str
    tenant_id: str | None
    wallet_id: str
    worker_id: str
    strategy_id: str
    status: str
    payload: dict[str, Any]
    estimated_tokens: int | None
    tokens_consumed: int | None
    tokens_billed: int | None
    output_summary: str | None
    error: str | None
    metadata: dict[str, Any]
    created_at: float
    claimed_at: float | None
    ended_at: float | None


@dataclass(frozen=True)
class WorkerQuery:
    """Optional worker filters; every set field becomes an ANDed, parameterised predicate."""

    status: str | None = None
    worker_type: str | None = None
    region: str | None = None
    min_health_score: int | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    def where(self) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if self.status:
            clauses.append("status = ?")
            params.append(self.status)
        if self.worker_type:
            clauses.append("worker_type = ?")
            params.append(self.worker_type)
        if self.region:
            clauses.append("region = ?")
            params.append(self.region)
        if self.min_health_score is not None:
            clauses.append("health_score >= ?")
            params.append(int(self.min_health_score))
        for tag in self.tags:
            clauses.append("EXISTS (SELECT 1 FROM json_each(workers.tags_json) WHERE json_each.value = ?)")
            params.append(tag)
        return clauses, params


_WALLET_COLUMNS = """
  wallet_id, user_id, tenant_id, level_id, current_tokens, reserved_tokens, lifetime_tokens,
  monthly_allocation_tokens, borrowed_tokens, status, last_reset_at, next_reset_at,
  metadata_json, created_at, updated_at, version
"""

_LEDGER_COLUMNS = """
  entry_id, wallet_id, user_id, tenant_id, level_id, seq, direction, amount, balance_after,
  reserved_after, lifetime_after, borrowed_after, reason, source, reference_type, reference_id,
  execution_id, metadata_json, created_at
"""

_POLICY_COLUMNS = """
  policy_id, tenant_id, level_id, user_id, base_allocation, monthly_allocation, monthly_cap,
  rollover_percent, allocation_mode, enforcement_mode, priority_weight, min_reserve_tokens,
  allow_manual_override, notes, metadata_json, created_at, updated_at
"""

_WORKER_COLUMNS = """
  worker_id, tenant_id, worker_type, capacity, current_load, health_score, status, region,
  tags_json, metadata_json, last_heartbeat, created_at, updated_at
"""

_EXECUTION_COLUMNS = """
  execution_id, user_id, tenant_id, wallet_id, worker_id, strategy_id, status, payload_json,
  estimated_tokens, tokens_consumed, tokens_billed, output_summary, error, metadata_json,
  created_at, claimed_at, ended_at
"""


def _wallet_from_row(r: sqlite3.Row) -> WalletRecord:
    return WalletRecord(
        wallet_id=str(r["wallet_id"]),
        user_id=str(r["user_id"]),
        tenant_id=r["tenant_id"],
        level_id=r["level_id"],
        current_tokens=int(r["current_tokens"]),
        reserved_tokens=int(r["reserved_tokens"]),
        lifetime_tokens=int(r["lifetime_tokens"]),
        monthly_allocation_tokens=int(r["monthly_allocation_tokens"]),
        borrowed_tokens=int(r["borrowed_tokens"]),
        status=str(r["status"]),
        last_reset_at=_opt_float(r["last_reset_at"]),
        next_reset_at=_opt_float(r["next_reset_at"]),
        metadata=_json_loads(r["metadata_json"], {}),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
        version=int(r["version"]),
    )


def _ledger_from_row(r: sqlite3.Row) -> LedgerEntryRecord:
    return LedgerEntryRecord(
        entry_id=str(r["entry_id"]),
        wallet_id=str(r["wallet_id"]),
        user_id=str(r["user_id"]),
        tenant_id=r["tenant_id"],
        level_id=r["level_id"],
        seq=int(r["seq"]),
        direction=str(r["direction"]),
        amount=int(r["amount"]),
        balance_after=int(r["balance_after"]),
        reserved_after=int(r["reserved_after"]),
        lifetime_after=int(r["lifetime_after"]),
        borrowed_after=int(r["borrowed_after"]),
        reason=str(r["reason"]),
        source=str(r["source"]),
        reference_type=r["reference_type"],
        reference_id=r["reference_id"],
        execution_id=r["execution_id"],
        metadata=_json_loads(r["metadata_json"], {}),
        created_at=float(r["created_at"]),
    )


def _policy_from_row(r: sqlite3.Row) -> PolicyRecord:
    return PolicyRecord(
        policy_id=str(r["policy_id"]),
        tenant_id=r["tenant_id"],
        level_id=r["level_id"],
        user_id=r["user_id"],
        base_allocation=int(r["base_allocation"]),
        monthly_allocation=int(r["monthly_allocation"]),
        monthly_cap=_opt_int(r["monthly_cap"]),
        rollover_percent=float(r["rollover_percent"]),
        allocation_mode=str(r["allocation_mode"]),
        enforcement_mode=str(r["enforcement_mode"]),
        priority_weight=int(r["priority_weight"]),
        min_reserve_tokens=_opt_int(r["min_reserve_tokens"]),
        allow_manual_override=bool(r["allow_manual_override"]),
        notes=r["notes"],
        metadata=_json_loads(r["metadata_json"], {}),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


def _worker_from_row(r: sqlite3.Row) -> WorkerRecord:
    tags = _json_loads(r["tags_json"], [])
    return WorkerRecord(
        worker_id=str(r["worker_id"]),
        tenant_id=r["tenant_id"],
        worker_type=str(r["worker_type"]),
        capacity=int(r["capacity"]),
        current_load=int(r["current_load"]),
        health_score=int(r["health_score"]),
        status=str(r["status"]),
        region=r["region"],
        tags=[str(t) for t in tags] if isinstance(tags, list) else [],
        metadata=_json_loads(r["metadata_json"], {}),
        last_heartbeat=_opt_float(r["last_heartbeat"]),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


def _execution_from_row(r: sqlite3.Row) -> ExecutionRecord:
    return ExecutionRecord(
        execution_id=str(r["execution_id"]),
        user_id=str(r["user_id"]),
        tenant_id=r["tenant_id"],
        wallet_id=str(r["wallet_id"]),
        worker_id=str(r["worker_id"]),
        strategy_id=str(r["strategy_id"]),
        status=str(r["status"]),
        payload=_json_loads(r["payload_json"], {}),
        estimated_tokens=_opt_int(r["estimated_tokens"]),
        tokens_consumed=_opt_int(r["tokens_consumed"]),
        tokens_billed=_opt_int(r["tokens_billed"]),
        output_summary=r["output_summary"],
        error=r["error"],
        metadata=_json_loads(r["metadata_json"], {}),
        created_at=float(r["created_at"]),
        claimed_at=_opt_float(r["claimed_at"]),
        ended_at=_opt_float(r["ended_at"]),
    )


class SQLiteStore:
    """SQLite-backed store for wallets, the token ledger, policies, workers and executions.

    One store owns one connection; concurrent callers (request handlers, the
    execution runner, the allocation sweeper) each open their own store on the
    same database file. Writers that must read-modify-write go through
    `transaction()`, which takes SQLite's write lock up front.
    """

    def __init__(self, db_path: str | Path | None = None, *, timeout_s: float = 30.0) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=float(timeout_s))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @property
    def in_transaction(self) -> bool:
        return bool(self._conn.in_transaction)

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` acquires the write lock before the first read, so a
        read-modify-write inside the block can never interleave with another
        writer's read of the same rows.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): wallets/ledger/policies/workers/routing metrics/events.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS wallets (
              wallet_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL UNIQUE,
              tenant_id TEXT,
              level_id TEXT,
              current_tokens INTEGER NOT NULL DEFAULT 0,
              reserved_tokens INTEGER NOT NULL DEFAULT 0,
              lifetime_tokens INTEGER NOT NULL DEFAULT 0,
              monthly_allocation_tokens INTEGER NOT NULL DEFAULT 0,
              borrowed_tokens INTEGER NOT NULL DEFAULT 0,
              status TEXT NOT NULL DEFAULT 'active',
              last_reset_at REAL,
              next_reset_at REAL,
              metadata_json TEXT NOT NULL DEFAULT '{}',
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              version INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_entries (
              entry_id TEXT PRIMARY KEY,
              wallet_id TEXT NOT NULL,
              user_id TEXT NOT NULL,
              tenant_id TEXT,
              level_id TEXT,
              seq INTEGER NOT NULL,
              direction TEXT NOT NULL CHECK (direction IN ('credit', 'debit')),
              amount INTEGER NOT NULL CHECK (amount > 0),
              balance_after INTEGER NOT NULL,
              reserved_after INTEGER NOT NULL,
              lifetime_after INTEGER NOT NULL,
              borrowed_after INTEGER NOT NULL,
              reason TEXT NOT NULL,
              source TEXT NOT NULL,
              reference_type TEXT,
              reference_id TEXT,
              execution_id TEXT,
              metadata_json TEXT NOT NULL DEFAULT '{}',
              created_at REAL NOT NULL,
              UNIQUE (wallet_id, seq),
              FOREIGN KEY (wallet_id) REFERENCES wallets(wallet_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS token_policies (
              policy_id TEXT PRIMARY KEY,
              tenant_id TEXT,
              level_id TEXT UNIQUE,
              user_id TEXT UNIQUE,
              base_allocation INTEGER NOT NULL DEFAULT 0,
              monthly_allocation INTEGER NOT NULL DEFAULT 0,
              monthly_cap INTEGER,
              rollover_percent REAL NOT NULL DEFAULT 0,
              allocation_mode TEXT NOT NULL DEFAULT 'monthly',
              enforcement_mode TEXT NOT NULL DEFAULT 'strict',
              priority_weight INTEGER NOT NULL DEFAULT 0,
              min_reserve_tokens INTEGER,
              allow_manual_override INTEGER NOT NULL DEFAULT 1,
              notes TEXT,
              metadata_json TEXT NOT NULL DEFAULT '{}',
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              CHECK ((level_id IS NULL) <> (user_id IS NULL))
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workers (
              worker_id TEXT PRIMARY KEY,
              tenant_id TEXT,
              worker_type TEXT NOT NULL,
              capacity INTEGER NOT NULL DEFAULT 1,
              current_load INTEGER NOT NULL DEFAULT 0,
              health_score INTEGER NOT NULL DEFAULT 100,
              status TEXT NOT NULL DEFAULT 'active',
              region TEXT,
              tags_json TEXT NOT NULL DEFAULT '[]',
              metadata_json TEXT NOT NULL DEFAULT '{}',
              last_heartbeat REAL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS routing_metrics (
              worker_id TEXT NOT NULL,
              strategy_id TEXT NOT NULL,
              tenant_id TEXT,
              total_routed INTEGER NOT NULL DEFAULT 0,
              updated_at REAL NOT NULL,
              PRIMARY KEY (worker_id, strategy_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              tenant_id TEXT,
              subject_type TEXT NOT NULL,
              subject_id TEXT NOT NULL,
              event_type TEXT NOT NULL,
              severity TEXT NOT NULL DEFAULT 'info',
              payload_json TEXT NOT NULL,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ledger_wallet_seq ON ledger_entries(wallet_id, seq);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_wallets_next_reset ON wallets(status, next_reset_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_workers_tenant_status ON workers(tenant_id, status);")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_subject ON events(subject_type, subject_id, created_at);"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_tenant_ts ON events(tenant_id, created_at);")

        # Initialize new databases at schema_version=1 (base tables),
        # then run explicit migrations up to SCHEMA_VERSION.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        # Apply sequential migrations in a single transaction.
        cur = self._conn.cursor()
        cur.execute("BEGIN IMMEDIATE;")
        try:
            # Another connection may have migrated while we waited for the lock.
            current = self._get_schema_version()
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Dispatcher-owned execution records and API-level idempotency keys.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
              execution_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              tenant_id TEXT,
              wallet_id TEXT NOT NULL,
              worker_id TEXT NOT NULL,
              strategy_id TEXT NOT NULL,
              status TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              estimated_tokens INTEGER,
              tokens_consumed INTEGER,
              tokens_billed INTEGER,
              output_summary TEXT,
              error TEXT,
              metadata_json TEXT NOT NULL DEFAULT '{}',
              created_at REAL NOT NULL,
              claimed_at REAL,
              ended_at REAL,
              FOREIGN KEY (wallet_id) REFERENCES wallets(wallet_id)
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status_ts ON executions(status, created_at);"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_tenant_ts ON executions(tenant_id, created_at);"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              response_json TEXT NOT NULL
            );
            """
        )

    # --- Idempotency (API support)
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, response_json FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def put_idempotency(
        self, *, key: str, request_hash: str, response_json: str, commit: bool = True
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, response_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, _utc_ts(), request_hash, response_json),
        )
        if commit:
            self._conn.commit()

    # --- Wallets
    def get_wallet(self, *, user_id: str) -> WalletRecord | None:
        row = self._conn.execute(
            f"SELECT {_WALLET_COLUMNS} FROM wallets WHERE user_id = ? LIMIT 1;",
            (user_id,),
        ).fetchone()
        return _wallet_from_row(row) if row is not None else None

    def insert_wallet(
        self,
        *,
        user_id: str,
        tenant_id: str | None,
        level_id: str | None,
        commit: bool = True,
    ) -> WalletRecord:
        """Insert a zero-balance wallet; a no-op when the user already has one."""
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO wallets(wallet_id, user_id, tenant_id, level_id, created_at, updated_at)
            VALUES(?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO NOTHING;
            """,
            (_new_id("wal"), user_id, tenant_id, level_id, ts, ts),
        )
        if commit:
            self._conn.commit()
        wallet = self.get_wallet(user_id=user_id)
        if wallet is None:
            raise RuntimeError(f"Wallet for user_id={user_id} missing after insert.")
        return wallet

    def update_wallet_balances(
        self,
        *,
        wallet_id: str,
        expected_version: int,
        current_tokens: int,
        reserved_tokens: int,
        lifetime_tokens: int,
        borrowed_tokens: int,
        commit: bool = False,
    ) -> bool:
        """Version-checked projection update. Returns False when the row moved underneath us."""
        updated = self._conn.execute(
            """
            UPDATE wallets
            SET
              current_tokens = ?,
              reserved_tokens = ?,
              lifetime_tokens = ?,
              borrowed_tokens = ?,
              updated_at = ?,
              version = version + 1
            WHERE wallet_id = ? AND version = ?;
            """,
            (
                int(current_tokens),
                int(reserved_tokens),
                int(lifetime_tokens),
                int(borrowed_tokens),
                _utc_ts(),
                wallet_id,
                int(expected_version),
            ),
        )
        if commit:
            self._conn.commit()
        return updated.rowcount == 1

    def update_wallet_schedule(
        self,
        *,
        wallet_id: str,
        monthly_allocation_tokens: int,
        last_reset_at: float | None,
        next_reset_at: float | None,
        commit: bool = False,
    ) -> None:
        self._conn.execute(
            """
            UPDATE wallets
            SET
              monthly_allocation_tokens = ?,
              last_reset_at = ?,
              next_reset_at = ?,
              updated_at = ?
            WHERE wallet_id = ?;
            """,
            (int(monthly_allocation_tokens), last_reset_at, next_reset_at, _utc_ts(), wallet_id),
        )
        if commit:
            self._conn.commit()

    def update_wallet_status(self, *, user_id: str, status: str) -> WalletRecord | None:
        self._conn.execute(
            "UPDATE wallets SET status = ?, updated_at = ? WHERE user_id = ?;",
            (status, _utc_ts(), user_id),
        )
        self._conn.commit()
        return self.get_wallet(user_id=user_id)

    def update_wallet_level(self, *, user_id: str, level_id: str | None) -> WalletRecord | None:
        self._conn.execute(
            "UPDATE wallets SET level_id = ?, updated_at = ? WHERE user_id = ?;",
            (level_id, _utc_ts(), user_id),
        )
        self._conn.commit()
        return self.get_wallet(user_id=user_id)

    def list_wallets_due_for_reset(
        self,
        *,
        now: float,
        limit: int = 500,
        after: tuple[float, str] | None = None,
    ) -> list[tuple[float, str]]:
        """Due active wallets as `(next_reset_at, user_id)`, keyset-paginated by `after`."""
        where = ["status = 'active'", "next_reset_at IS NOT NULL", "next_reset_at <= ?"]
        params: list[Any] = [float(now)]
        if after is not None:
            where.append("(next_reset_at > ? OR (next_reset_at = ? AND user_id > ?))")
            params.extend([float(after[0]), float(after[0]), str(after[1])])
        params.append(int(limit))
        clause = " AND ".join(where)
        rows = self._conn.execute(
            f"""
            SELECT next_reset_at, user_id
            FROM wallets
            WHERE {clause}
            ORDER BY next_reset_at ASC, user_id ASC
            LIMIT ?;
            """,
            tuple(params),
        ).fetchall()
        return [(float(r["next_reset_at"]), str(r["user_id"])) for r in rows]

    def list_wallet_users_for_level(self, *, level_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT user_id FROM wallets WHERE level_id = ? ORDER BY user_id ASC;",
            (level_id,),
        ).fetchall()
        return [str(r["user_id"]) for r in rows]

    # --- Ledger (append-only)
    def next_ledger_seq(self, *, wallet_id: str) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM ledger_entries WHERE wallet_id = ?;",
            (wallet_id,),
        ).fetchone()
        return int(row["max_seq"]) + 1

    def insert_ledger_entry(
        self,
        *,
        wallet: WalletRecord,
        seq: int,
        direction: str,
        amount: int,
        balance_after: int,
        reserved_after: int,
        lifetime_after: int,
        borrowed_after: int,
        reason: str,
        source: str,
        reference_type: str | None,
        reference_id: str | None,
        execution_id: str | None,
        metadata: dict[str, Any],
        commit: bool = False,
    ) -> LedgerEntryRecord:
        entry = LedgerEntryRecord(
            entry_id=_new_id("led"),
            wallet_id=wallet.wallet_id,
            user_id=wallet.user_id,
            tenant_id=wallet.tenant_id,
            level_id=wallet.level_id,
            seq=int(seq),
            direction=direction,
            amount=int(amount),
            balance_after=int(balance_after),
            reserved_after=int(reserved_after),
            lifetime_after=int(lifetime_after),
            borrowed_after=int(borrowed_after),
            reason=reason,
            source=source,
            reference_type=reference_type,
            reference_id=reference_id,
            execution_id=execution_id,
            metadata=dict(metadata),
            created_at=_utc_ts(),
        )
        self._conn.execute(
            f"""
            INSERT INTO ledger_entries({_LEDGER_COLUMNS})
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                entry.entry_id,
                entry.wallet_id,
                entry.user_id,
                entry.tenant_id,
                entry.level_id,
                entry.seq,
                entry.direction,
                entry.amount,
                entry.balance_after,
                entry.reserved_after,
                entry.lifetime_after,
                entry.borrowed_after,
                entry.reason,
                entry.source,
                entry.reference_type,
                entry.reference_id,
                entry.execution_id,
                _json_dumps(entry.metadata),
                entry.created_at,
            ),
        )
        if commit:
            self._conn.commit()
        return entry

    def list_ledger_page(self, *, wallet_id: str, limit: int, offset: int) -> list[LedgerEntryRecord]:
        # Newest-first.
        rows = self._conn.execute(
            f"""
            SELECT {_LEDGER_COLUMNS}
            FROM ledger_entries
            WHERE wallet_id = ?
            ORDER BY seq DESC
            LIMIT ? OFFSET ?;
            """,
            (wallet_id, int(limit), int(offset)),
        ).fetchall()
        return [_ledger_from_row(r) for r in rows]

    def iter_ledger(
        self, *, wallet_id: str, after_seq: int = 0, page_size: int = 500
    ) -> Iterator[LedgerEntryRecord]:
        """Yield entries in sequence order, one keyset page at a time.

        Restart from any point by passing the last seen `seq` as `after_seq`.
        """
        last = int(after_seq)
        while True:
            rows = self._conn.execute(
                f"""
                SELECT {_LEDGER_COLUMNS}
                FROM ledger_entries
                WHERE wallet_id = ? AND seq > ?
                ORDER BY seq ASC
                LIMIT ?;
                """,
                (wallet_id, last, int(page_size)),
            ).fetchall()
            if not rows:
                return
            for r in rows:
                entry = _ledger_from_row(r)
                last = entry.seq
                yield entry
            if len(rows) < page_size:
                return

    # --- Policies
    def get_policy(self, *, policy_id: str) -> PolicyRecord | None:
        row = self._conn.execute(
            f"SELECT {_POLICY_COLUMNS} FROM token_policies WHERE policy_id = ? LIMIT 1;",
            (policy_id,),
        ).fetchone()
        return _policy_from_row(row) if row is not None else None

    def get_user_policy(self, *, user_id: str) -> PolicyRecord | None:
        row = self._conn.execute(
            f"SELECT {_POLICY_COLUMNS} FROM token_policies WHERE user_id = ? LIMIT 1;",
            (user_id,),
        ).fetchone()
        return _policy_from_row(row) if row is not None else None

    def get_level_policy(self, *, level_id: str) -> PolicyRecord | None:
        row = self._conn.execute(
            f"SELECT {_POLICY_COLUMNS} FROM token_policies WHERE level_id = ? LIMIT 1;",
            (level_id,),
        ).fetchone()
        return _policy_from_row(row) if row is not None else None

    def find_policy_for(self, *, user_id: str, level_id: str | None) -> PolicyRecord | None:
        # User override wins over the level policy.
        policy = self.get_user_policy(user_id=user_id)
        if policy is None and level_id:
            policy = self.get_level_policy(level_id=level_id)
        return policy

    def upsert_policy(
        self,
        *,
        tenant_id: str | None,
        level_id: str | None,
        user_id: str | None,
        base_allocation: int,
        monthly_allocation: int,
        monthly_cap: int | None,
        rollover_percent: float,
        allocation_mode: str,
        enforcement_mode: str,
        priority_weight: int,
        min_reserve_tokens: int | None,
        allow_manual_override: bool,
        notes: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> PolicyRecord:
        if (level_id is None) == (user_id is None):
            raise ValueError("Exactly one of level_id or user_id must be set.")
        conflict_col = "level_id" if level_id is not None else "user_id"
        ts = _utc_ts()
        self._conn.execute(
            f"""
            INSERT INTO token_policies({_POLICY_COLUMNS})
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT({conflict_col}) DO UPDATE SET
              tenant_id = excluded.tenant_id,
              base_allocation = excluded.base_allocation,
              monthly_allocation = excluded.monthly_allocation,
              monthly_cap = excluded.monthly_cap,
              rollover_percent = excluded.rollover_percent,
              allocation_mode = excluded.allocation_mode,
              enforcement_mode = excluded.enforcement_mode,
              priority_weight = excluded.priority_weight,
              min_reserve_tokens = excluded.min_reserve_tokens,
              allow_manual_override = excluded.allow_manual_override,
              notes = excluded.notes,
              metadata_json = excluded.metadata_json,
              updated_at = excluded.updated_at;
            """,
            (
                _new_id("pol"),
                tenant_id,
                level_id,
                user_id,
                int(base_allocation),
                int(monthly_allocation),
                _opt_int(monthly_cap),
                float(rollover_percent),
                allocation_mode,
                enforcement_mode,
                int(priority_weight),
                _opt_int(min_reserve_tokens),
                1 if allow_manual_override else 0,
                notes,
                _json_dumps(metadata or {}),
                ts,
                ts,
            ),
        )
        self._conn.commit()
        policy = (
            self.get_level_policy(level_id=level_id)
            if level_id is not None
            else self.get_user_policy(user_id=str(user_id))
        )
        if policy is None:
            raise RuntimeError("Policy row missing after upsert.")
        return policy

    # --- Workers
    def get_worker(self, *, worker_id: str) -> WorkerRecord | None:
        row = self._conn.execute(
            f"SELECT {_WORKER_COLUMNS} FROM workers WHERE worker_id = ? LIMIT 1;",
            (worker_id,),
        ).fetchone()
        return _worker_from_row(row) if row is not None else None

    def upsert_worker(
        self,
        *,
        worker_id: str,
        tenant_id: str | None,
        worker_type: str,
        capacity: int,
        current_load: int,
        region: str | None,
        tags: list[str],
        metadata: dict[str, Any],
        commit: bool = True,
    ) -> WorkerRecord:
        """Insert or refresh a worker descriptor. Health and status survive re-registration."""
        ts = _utc_ts()
        self._conn.execute(
            f"""
            INSERT INTO workers({_WORKER_COLUMNS})
            VALUES(?, ?, ?, ?, ?, 100, 'active', ?, ?, ?, ?, ?, ?)
            ON CONFLICT(worker_id) DO UPDATE SET
              worker_type = excluded.worker_type,
              capacity = excluded.capacity,
              current_load = excluded.current_load,
              region = excluded.region,
              tags_json = excluded.tags_json,
              metadata_json = excluded.metadata_json,
              last_heartbeat = excluded.last_heartbeat,
              updated_at = excluded.updated_at;
            """,
            (
                worker_id,
                tenant_id,
                worker_type,
                int(capacity),
                int(current_load),
                region,
                _json_dumps(list(tags)),
                _json_dumps(metadata),
                ts,
                ts,
                ts,
            ),
        )
        if commit:
            self._conn.commit()
        worker = self.get_worker(worker_id=worker_id)
        if worker is None:
            raise RuntimeError(f"Worker {worker_id} missing after upsert.")
        return worker

    def touch_heartbeat(self, *, worker_id: str, ts: float | None = None) -> bool:
        updated = self._conn.execute(
            "UPDATE workers SET last_heartbeat = ? WHERE worker_id = ?;",
            (float(ts if ts is not None else _utc_ts()), worker_id),
        )
        self._conn.commit()
        return updated.rowcount == 1

    def update_worker_health(self, *, worker_id: str, health_score: int, status: str) -> bool:
        updated = self._conn.execute(
            """
            UPDATE workers
            SET health_score = ?, status = ?, updated_at = ?
            WHERE worker_id = ?;
            """,
            (int(health_score), status, _utc_ts(), worker_id),
        )
        self._conn.commit()
        return updated.rowcount == 1

    def update_worker_load(self, *, worker_id: str, current_load: int) -> bool:
        updated = self._conn.execute(
            "UPDATE workers SET current_load = ?, updated_at = ? WHERE worker_id = ?;",
            (int(current_load), _utc_ts(), worker_id),
        )
        self._conn.commit()
        return updated.rowcount == 1

    def adjust_worker_load(self, *, worker_id: str, delta: int, commit: bool = True) -> bool:
        updated = self._conn.execute(
            """
            UPDATE workers
            SET current_load = MAX(0, current_load + ?), updated_at = ?
            WHERE worker_id = ?;
            """,
            (int(delta), _utc_ts(), worker_id),
        )
        if commit:
            self._conn.commit()
        return updated.rowcount == 1

    def update_worker_status(self, *, worker_id: str, status: str) -> bool:
        updated = self._conn.execute(
            "UPDATE workers SET status = ?, updated_at = ? WHERE worker_id = ?;",
            (status, _utc_ts(), worker_id),
        )
        self._conn.commit()
        return updated.rowcount == 1

    def list_workers(self, *, tenant_id: str | None, query: WorkerQuery | None = None) -> list[WorkerRecord]:
        where = ["tenant_id IS ?"]
        params: list[Any] = [tenant_id]
        extra_where, extra_params = (query or WorkerQuery()).where()
        where.extend(extra_where)
        params.extend(extra_params)
        rows = self._conn.execute(
            f"""
            SELECT {_WORKER_COLUMNS}
            FROM workers
            WHERE {" AND ".join(where)}
            ORDER BY last_heartbeat DESC, health_score DESC, worker_id ASC;
            """,
            params,
        ).fetchall()
        return [_worker_from_row(r) for r in rows]

    def list_available_workers(
        self,
        *,
        tenant_id: str | None,
        min_health_score: int,
        max_load_percent: float,
        worker_type: str | None = None,
    ) -> list[WorkerRecord]:
        where = [
            "tenant_id IS ?",
            "status = 'active'",
            "health_score >= ?",
            "(CAST(current_load AS REAL) / NULLIF(capacity, 0) * 100) <= ?",
        ]
        params: list[Any] = [tenant_id, int(min_health_score), float(max_load_percent)]
        if worker_type:
            where.append("worker_type = ?")
            params.append(worker_type)
        rows = self._conn.execute(
            f"""
            SELECT {_WORKER_COLUMNS}
            FROM workers
            WHERE {" AND ".join(where)}
            ORDER BY
              (CAST(current_load AS REAL) / NULLIF(capacity, 0)) ASC,
              health_score DESC,
              created_at ASC,
              worker_id ASC;
            """,
            params,
        ).fetchall()
        return [_worker_from_row(r) for r in rows]

    def worker_stats(self, *, tenant_id: str | None, stale_before: float) -> dict[str, Any]:
        row = self._conn.execute(
            """
            SELECT
              COUNT(*) AS total_workers,
              COUNT(CASE WHEN status = 'active' THEN 1 END) AS active_workers,
              COUNT(CASE WHEN status = 'inactive' THEN 1 END) AS inactive_workers,
              COUNT(CASE WHEN status = 'maintenance' THEN 1 END) AS maintenance_workers,
              COUNT(CASE WHEN status = 'error' THEN 1 END) AS error_workers,
              AVG(health_score) AS avg_health_score,
              COALESCE(SUM(capacity), 0) AS total_capacity,
              COALESCE(SUM(current_load), 0) AS total_load,
              COUNT(CASE WHEN last_heartbeat IS NULL OR last_heartbeat < ? THEN 1 END) AS stale_workers
            FROM workers
            WHERE tenant_id IS ?;
            """,
            (float(stale_before), tenant_id),
        ).fetchone()
        return {
            "total_workers": int(row["total_workers"]),
            "active_workers": int(row["active_workers"]),
            "inactive_workers": int(row["inactive_workers"]),
            "maintenance_workers": int(row["maintenance_workers"]),
            "error_workers": int(row["error_workers"]),
            "avg_health_score": float(row["avg_health_score"]) if row["avg_health_score"] is not None else None,
            "total_capacity": int(row["total_capacity"]),
            "total_load": int(row["total_load"]),
            "stale_workers": int(row["stale_workers"]),
        }

    # --- Routing metrics (advisory counters)
    def increment_routing_metric(self, *, tenant_id: str | None, worker_id: str, strategy_id: str) -> None:
        self._conn.execute(
            """
            INSERT INTO routing_metrics(worker_id, strategy_id, tenant_id, total_routed, updated_at)
            VALUES(?, ?, ?, 1, ?)
            ON CONFLICT(worker_id, strategy_id) DO UPDATE SET
              total_routed = routing_metrics.total_routed + 1,
              updated_at = excluded.updated_at;
            """,
            (worker_id, strategy_id, tenant_id, _utc_ts()),
        )
        self._conn.commit()

    def list_routing_metrics(self, *, tenant_id: str | None, worker_id: str | None = None) -> list[sqlite3.Row]:
        where = ["tenant_id IS ?"]
        params: list[Any] = [tenant_id]
        if worker_id:
            where.append("worker_id = ?")
            params.append(worker_id)
        return self._conn.execute(
            f"""
            SELECT worker_id, strategy_id, total_routed, updated_at
            FROM routing_metrics
            WHERE {" AND ".join(where)}
            ORDER BY worker_id ASC, strategy_id ASC;
            """,
            params,
        ).fetchall()

    # --- Events (trace)
    def append_event(
        self,
        *,
        tenant_id: str | None,
        subject_type: str,
        subject_id: str,
        event_type: str,
        payload: dict[str, Any],
        severity: str = "info",
        commit: bool = True,
    ) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO events(event_id, tenant_id, subject_type, subject_id, event_type, severity, payload_json, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (event_id, tenant_id, subject_type, subject_id, event_type, severity, _json_dumps(payload), _utc_ts()),
        )
        if commit:
            self._conn.commit()
        return event_id

    def list_events(
        self,
        *,
        tenant_id: str | None,
        subject_type: str | None = None,
        subject_id: str | None = None,
        event_type: str | None = None,
        severity: str | None = None,
        since: float | None = None,
        until: float | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        where = ["tenant_id IS ?"]
        params: list[Any] = [tenant_id]
        for column, value in (
            ("subject_type", subject_type),
            ("subject_id", subject_id),
            ("event_type", event_type),
            ("severity", severity),
        ):
            if value:
                where.append(f"{column} = ?")
                params.append(value)
        if since is not None:
            where.append("created_at >= ?")
            params.append(float(since))
        if until is not None:
            where.append("created_at <= ?")
            params.append(float(until))

        rows = self._conn.execute(
            f"""
            SELECT event_id, tenant_id, subject_type, subject_id, event_type, severity, payload_json, created_at
            FROM events
            WHERE {" AND ".join(where)}
            ORDER BY created_at DESC, event_id DESC
            LIMIT ?;
            """,
            (*params, int(limit)),
        ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "tenant_id": r["tenant_id"],
                "subject_type": r["subject_type"],
                "subject_id": r["subject_id"],
                "event_type": r["event_type"],
                "severity": r["severity"],
                "payload": _json_loads(r["payload_json"], {}),
                "created_at": float(r["created_at"]),
            }
            for r in rows
        ]

    # --- Executions
    def get_execution(self, *, execution_id: str) -> ExecutionRecord | None:
        row = self._conn.execute(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE execution_id = ? LIMIT 1;",
            (execution_id,),
        ).fetchone()
        return _execution_from_row(row) if row is not None else None

    def insert_execution(
        self,
        *,
        user_id: str,
        tenant_id: str | None,
        wallet_id: str,
        worker_id: str,
        strategy_id: str,
        payload: dict[str, Any],
        estimated_tokens: int | None,
        metadata: dict[str, Any],
        claimed: bool = False,
        commit: bool = True,
    ) -> ExecutionRecord:
        execution_id = _new_id("exe")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO executions(
              execution_id, user_id, tenant_id, wallet_id, worker_id, strategy_id, status,
              payload_json, estimated_tokens, metadata_json, created_at, claimed_at
            ) VALUES(?, ?, ?, ?, ?, ?, 'running', ?, ?, ?, ?, ?);
            """,
            (
                execution_id,
                user_id,
                tenant_id,
                wallet_id,
                worker_id,
                strategy_id,
                _json_dumps(payload),
                _opt_int(estimated_tokens),
                _json_dumps(metadata),
                ts,
                ts if claimed else None,
            ),
        )
        if commit:
            self._conn.commit()
        execution = self.get_execution(execution_id=execution_id)
        if execution is None:
            raise RuntimeError(f"Execution {execution_id} missing after insert.")
        return execution

    def finish_execution(
        self,
        *,
        execution_id: str,
        status: str,
        tokens_consumed: int,
        output_summary: str | None,
        error: str | None,
        commit: bool = True,
    ) -> bool:
        """Move a running execution to a terminal status. Returns False if it was not running."""
        updated = self._conn.execute(
            """
            UPDATE executions
            SET
              status = ?,
              tokens_consumed = ?,
              output_summary = ?,
              error = COALESCE(?, error),
              ended_at = COALESCE(ended_at, ?)
            WHERE execution_id = ? AND status = 'running';
            """,
            (status, int(tokens_consumed), output_summary, error, _utc_ts(), execution_id),
        )
        if commit:
            self._conn.commit()
        return updated.rowcount == 1

    def update_execution_billing(
        self,
        *,
        execution_id: str,
        tokens_billed: int,
        metadata: dict[str, Any],
        commit: bool = True,
    ) -> None:
        self._conn.execute(
            "UPDATE executions SET tokens_billed = ?, metadata_json = ? WHERE execution_id = ?;",
            (int(tokens_billed), _json_dumps(metadata), execution_id),
        )
        if commit:
            self._conn.commit()

    def claim_next_unclaimed_execution(self) -> ExecutionRecord | None:
        """Atomically claim the oldest running execution that no runner has picked up yet."""
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                """
                SELECT execution_id
                FROM executions
                WHERE status = 'running' AND claimed_at IS NULL
                ORDER BY created_at ASC, execution_id ASC
                LIMIT 1;
                """
            ).fetchone()
            if row is None:
                return None

            execution_id = str(row["execution_id"])
            updated = self._conn.execute(
                """
                UPDATE executions
                SET claimed_at = ?
                WHERE execution_id = ? AND status = 'running' AND claimed_at IS NULL;
                """,
                (_utc_ts(), execution_id),
            )
            if updated.rowcount != 1:
                return None
            return self.get_execution(execution_id=execution_id)

    def list_running_executions(self) -> list[ExecutionRecord]:
        rows = self._conn.execute(
            f"""
            SELECT {_EXECUTION_COLUMNS}
            FROM executions
            WHERE status = 'running'
            ORDER BY created_at ASC, execution_id ASC;
            """
        ).fetchall()
        return [_execution_from_row(r) for r in rows]

    def list_executions_page(
        self,
        *,
        tenant_id: str | None,
        user_id: str | None,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
    ) -> dict[str, Any]:
        where = ["tenant_id IS ?"]
        params: list[Any] = [tenant_id]

        if user_id:
            where.append("user_id = ?")
            params.append(user_id)

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, execution_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND execution_id < ?))")
            params.extend([float(created_at), float(created_at), str(execution_id)])

        fetch_n = int(limit) + 1
        rows = self._conn.execute(
            f"""
            SELECT {_EXECUTION_COLUMNS}
            FROM executions
            WHERE {" AND ".join(where)}
            ORDER BY created_at DESC, execution_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [_execution_from_row(r) for r in rows]
        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last.created_at), str(last.execution_id))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_executions_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM executions GROUP BY status;"
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}
