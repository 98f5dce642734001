from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, TypeVar

from tokenmesh.config.load_config import WalletConfig
from tokenmesh.errors import (
    ConcurrentUpdateConflict,
    InsufficientTokens,
    InvalidAmount,
    InvalidArgument,
    WalletInactive,
    WalletNotFound,
)
from tokenmesh.storage.sqlite_store import LedgerEntryRecord, SQLiteStore, WalletRecord
from tokenmesh.tokens.periods import next_period_start


log = logging.getLogger(__name__)

T = TypeVar("T")

DIRECTIONS = ("credit", "debit")
WALLET_STATUSES = ("active", "inactive")


class _StaleWallet(Exception):
    """Raised inside a transaction when the version-checked wallet UPDATE matched no row."""


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a consumption debit that may be capped at the available balance."""

    entry: LedgerEntryRecord | None
    requested: int
    billed: int
    unbilled: int
    borrowed: int


@dataclass(frozen=True)
class LedgerAudit:
    user_id: str
    wallet_id: str
    entries: int
    total_credits: int
    total_debits: int
    replayed_balance: int
    stored_balance: int
    stored_borrowed: int
    stored_lifetime: int
    last_balance_after: int | None
    sequence_gaps: list[int] = field(default_factory=list)
    consistent: bool = True


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Amount must be a positive integer.", details={"amount": amount})
    if amount <= 0:
        raise InvalidAmount("Amount must be a positive integer.", details={"amount": amount})
    return int(amount)


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class TokenWalletService:
    """Ledger-backed token wallets.

    Every balance change goes through exactly one path: a `BEGIN IMMEDIATE`
    transaction that re-reads the wallet, appends one ledger entry and writes
    the new projection with a version check. Ledger entries are never updated.
    """

    def __init__(self, store: SQLiteStore, *, config: WalletConfig | None = None) -> None:
        self._store = store
        self._config = config

    @property
    def store(self) -> SQLiteStore:
        return self._store

    # --- Transactions
    def run_atomic(self, fn: Callable[[], T]) -> T:
        """Run `fn` inside one IMMEDIATE transaction, retrying once on a lost race."""
        attempts = 0
        while True:
            attempts += 1
            try:
                with self._store.transaction(mode="IMMEDIATE"):
                    return fn()
            except _StaleWallet as e:
                cause: Exception = e
            except sqlite3.OperationalError as e:
                if not _is_lock_error(e):
                    raise
                cause = e
            if attempts >= 2:
                raise ConcurrentUpdateConflict(
                    "Wallet was modified concurrently; retry the operation.",
                    details={"cause": str(cause) or type(cause).__name__},
                ) from cause
            log.warning("wallet update lost a race (%s); retrying once", cause or "version mismatch")

    # --- Wallet lifecycle
    def ensure_wallet(
        self,
        user_id: str,
        *,
        tenant_id: str | None = None,
        level_id: str | None = None,
    ) -> WalletRecord:
        """Return the user's wallet, creating it (and its initial grant) exactly once."""
        user_id = (user_id or "").strip()
        if not user_id:
            raise InvalidArgument("user_id is required.")

        existing = self._store.get_wallet(user_id=user_id)
        if existing is not None:
            return existing

        def _create() -> WalletRecord:
            wallet = self._store.get_wallet(user_id=user_id)
            if wallet is not None:
                return wallet

            wallet = self._store.insert_wallet(
                user_id=user_id, tenant_id=tenant_id, level_id=level_id, commit=False
            )
            policy = self._store.find_policy_for(user_id=user_id, level_id=level_id)
            if policy is not None:
                now = time.time()
                if policy.base_allocation > 0:
                    self.post_in_transaction(
                        user_id,
                        policy.base_allocation,
                        "credit",
                        "initial-allocation",
                        source="allocation",
                        reference_type="policy",
                        reference_id=policy.policy_id,
                    )
                self._store.update_wallet_schedule(
                    wallet_id=wallet.wallet_id,
                    monthly_allocation_tokens=policy.monthly_allocation,
                    last_reset_at=now,
                    next_reset_at=next_period_start(policy.allocation_mode, now),
                )
            return self.get_wallet(user_id)

        wallet = self.run_atomic(_create)
        log.info("wallet ensured user_id=%s wallet_id=%s", user_id, wallet.wallet_id)
        return wallet

    def get_wallet(self, user_id: str) -> WalletRecord:
        wallet = self._store.get_wallet(user_id=user_id)
        if wallet is None:
            raise WalletNotFound("Wallet not found.", details={"user_id": user_id})
        return wallet

    def set_wallet_status(self, user_id: str, status: str) -> WalletRecord:
        if status not in WALLET_STATUSES:
            raise InvalidArgument(
                f"status must be one of {list(WALLET_STATUSES)}.", details={"status": status}
            )
        self.get_wallet(user_id)
        self._store.update_wallet_status(user_id=user_id, status=status)
        return self.get_wallet(user_id)

    def set_wallet_level(self, user_id: str, level_id: str | None) -> WalletRecord:
        self.get_wallet(user_id)
        self._store.update_wallet_level(user_id=user_id, level_id=level_id)
        return self.sync_allocation_schedule(user_id)

    def sync_allocation_schedule(self, user_id: str, *, now: float | None = None) -> WalletRecord:
        """Put a wallet on the cadence of its current policy.

        A wallet that gains a periodic policy after creation has no
        `next_reset_at`; it is made due at `now` so the next rollover sweep or
        dispatch credits its first period grant.
        """
        ts = time.time() if now is None else float(now)

        def _sync() -> WalletRecord:
            wallet = self.get_wallet(user_id)
            policy = self._store.find_policy_for(user_id=user_id, level_id=wallet.level_id)
            if policy is None or policy.allocation_mode == "manual":
                return wallet
            next_reset_at = wallet.next_reset_at if wallet.next_reset_at is not None else ts
            if (
                next_reset_at == wallet.next_reset_at
                and policy.monthly_allocation == wallet.monthly_allocation_tokens
            ):
                return wallet
            self._store.update_wallet_schedule(
                wallet_id=wallet.wallet_id,
                monthly_allocation_tokens=policy.monthly_allocation,
                last_reset_at=wallet.last_reset_at,
                next_reset_at=next_reset_at,
            )
            return self.get_wallet(user_id)

        wallet = self.run_atomic(_sync)
        log.info("allocation schedule synced user_id=%s next_reset_at=%s", user_id, wallet.next_reset_at)
        return wallet

    # --- Mutations
    def adjust_tokens(
        self,
        user_id: str,
        amount: int,
        direction: str,
        reason: str,
        *,
        source: str = "manual",
        reference_type: str | None = None,
        reference_id: str | None = None,
        execution_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntryRecord:
        """Append one ledger entry and update the wallet projection atomically.

        Strict wallets reject overdrafts with `InsufficientTokens`. Soft wallets
        borrow the shortfall and flag the entry with `{"borrowed": n}`.
        """
        amount = _validate_amount(amount)
        if direction not in DIRECTIONS:
            raise InvalidArgument(
                f"direction must be one of {list(DIRECTIONS)}.", details={"direction": direction}
            )

        return self.run_atomic(
            lambda: self.post_in_transaction(
                user_id,
                amount,
                direction,
                reason,
                source=source,
                reference_type=reference_type,
                reference_id=reference_id,
                execution_id=execution_id,
                metadata=metadata,
            )
        )

    def charge(
        self,
        user_id: str,
        amount: int,
        reason: str,
        *,
        source: str = "execution",
        reference_type: str | None = None,
        reference_id: str | None = None,
        execution_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """Debit actual consumption.

        Unlike `adjust_tokens`, a strict wallet that cannot cover the full amount
        is debited down to zero and the remainder is reported as unbilled.
        """
        amount = _validate_amount(amount)
        return self.run_atomic(
            lambda: self.charge_in_transaction(
                user_id,
                amount,
                reason,
                source=source,
                reference_type=reference_type,
                reference_id=reference_id,
                execution_id=execution_id,
                metadata=metadata,
            )
        )

    def charge_in_transaction(
        self,
        user_id: str,
        amount: int,
        reason: str,
        *,
        source: str = "execution",
        reference_type: str | None = None,
        reference_id: str | None = None,
        execution_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        amount = _validate_amount(amount)
        wallet = self._load_for_update(user_id, direction="debit")
        policy = self._store.find_policy_for(user_id=wallet.user_id, level_id=wallet.level_id)
        soft = policy is not None and policy.enforcement_mode == "soft"

        billed = amount if soft else min(amount, wallet.current_tokens)
        unbilled = amount - billed
        entry: LedgerEntryRecord | None = None
        if billed > 0:
            meta = dict(metadata or {})
            if unbilled:
                meta["requested"] = amount
                meta["unbilled"] = unbilled
            entry = self.post_in_transaction(
                user_id,
                billed,
                "debit",
                reason,
                source=source,
                reference_type=reference_type,
                reference_id=reference_id,
                execution_id=execution_id,
                metadata=meta,
            )
        if unbilled:
            log.warning(
                "consumption exceeded balance user_id=%s requested=%d billed=%d unbilled=%d",
                user_id,
                amount,
                billed,
                unbilled,
            )
        return ChargeResult(
            entry=entry,
            requested=amount,
            billed=billed,
            unbilled=unbilled,
            borrowed=int(entry.metadata.get("borrowed", 0)) if entry is not None else 0,
        )

    def post_in_transaction(
        self,
        user_id: str,
        amount: int,
        direction: str,
        reason: str,
        *,
        source: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        execution_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntryRecord:
        """Apply one adjustment. The caller must already hold a write transaction."""
        if not self._store.in_transaction:
            raise RuntimeError("post_in_transaction() requires an open transaction.")

        wallet = self._load_for_update(user_id, direction=direction)
        meta = dict(metadata or {})

        current = wallet.current_tokens
        borrowed = wallet.borrowed_tokens
        lifetime = wallet.lifetime_tokens

        if direction == "credit":
            repaid = min(borrowed, amount)
            borrowed -= repaid
            current += amount - repaid
            lifetime += amount
            if repaid:
                meta["repaid"] = repaid
        else:
            if amount <= current:
                current -= amount
            else:
                policy = self._store.find_policy_for(user_id=wallet.user_id, level_id=wallet.level_id)
                if policy is None or policy.enforcement_mode != "soft":
                    raise InsufficientTokens(required=amount, available=current)
                shortfall = amount - current
                borrowed += shortfall
                current = 0
                meta["borrowed"] = shortfall

        seq = self._store.next_ledger_seq(wallet_id=wallet.wallet_id)
        updated = self._store.update_wallet_balances(
            wallet_id=wallet.wallet_id,
            expected_version=wallet.version,
            current_tokens=current,
            reserved_tokens=wallet.reserved_tokens,
            lifetime_tokens=lifetime,
            borrowed_tokens=borrowed,
        )
        if not updated:
            raise _StaleWallet(wallet.wallet_id)

        return self._store.insert_ledger_entry(
            wallet=wallet,
            seq=seq,
            direction=direction,
            amount=amount,
            balance_after=current,
            reserved_after=wallet.reserved_tokens,
            lifetime_after=lifetime,
            borrowed_after=borrowed,
            reason=(reason or "").strip() or direction,
            source=source,
            reference_type=reference_type,
            reference_id=reference_id,
            execution_id=execution_id,
            metadata=meta,
        )

    def _load_for_update(self, user_id: str, *, direction: str) -> WalletRecord:
        wallet = self._store.get_wallet(user_id=user_id)
        if wallet is None:
            raise WalletNotFound("Wallet not found.", details={"user_id": user_id})
        if direction == "debit" and wallet.status != "active":
            raise WalletInactive("Wallet is inactive.", details={"user_id": user_id})
        return wallet

    # --- Reads
    def get_ledger(self, user_id: str, *, limit: int | None = None, offset: int = 0) -> list[LedgerEntryRecord]:
        """Newest-first page of ledger entries."""
        default_limit = self._config.ledger_default_limit if self._config else 50
        max_limit = self._config.ledger_max_limit if self._config else 200
        limit = default_limit if limit is None else int(limit)
        if limit < 1 or limit > max_limit:
            raise InvalidArgument(f"limit must be in [1..{max_limit}].", details={"limit": limit})
        if offset < 0:
            raise InvalidArgument("offset must be >= 0.", details={"offset": offset})
        wallet = self.get_wallet(user_id)
        return self._store.list_ledger_page(wallet_id=wallet.wallet_id, limit=limit, offset=int(offset))

    def iter_ledger(
        self, user_id: str, *, page_size: int = 500, after_seq: int = 0
    ) -> Iterator[LedgerEntryRecord]:
        wallet = self.get_wallet(user_id)
        return self._store.iter_ledger(wallet_id=wallet.wallet_id, after_seq=after_seq, page_size=page_size)

    def verify_ledger(self, user_id: str) -> LedgerAudit:
        """Replay the full ledger and compare it with the stored projection."""
        wallet = self.get_wallet(user_id)
        credits = 0
        debits = 0
        count = 0
        expected_seq = 1
        gaps: list[int] = []
        last_balance_after: int | None = None

        for entry in self._store.iter_ledger(wallet_id=wallet.wallet_id):
            count += 1
            while expected_seq < entry.seq:
                gaps.append(expected_seq)
                expected_seq += 1
            expected_seq = entry.seq + 1
            if entry.direction == "credit":
                credits += entry.amount
            else:
                debits += entry.amount
            last_balance_after = entry.balance_after

        replayed = credits - debits
        consistent = (
            not gaps
            and replayed == wallet.current_tokens - wallet.borrowed_tokens
            and credits == wallet.lifetime_tokens
            and (last_balance_after if last_balance_after is not None else 0) == wallet.current_tokens
        )
        if not consistent:
            log.warning("ledger audit mismatch user_id=%s wallet_id=%s", user_id, wallet.wallet_id)

        return LedgerAudit(
            user_id=wallet.user_id,
            wallet_id=wallet.wallet_id,
            entries=count,
            total_credits=credits,
            total_debits=debits,
            replayed_balance=replayed,
            stored_balance=wallet.current_tokens,
            stored_borrowed=wallet.borrowed_tokens,
            stored_lifetime=wallet.lifetime_tokens,
            last_balance_after=last_balance_after,
            sequence_gaps=gaps,
            consistent=consistent,
        )
