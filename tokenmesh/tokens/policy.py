from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from tokenmesh.errors import InvalidArgument, PolicyNotFound
from tokenmesh.storage.sqlite_store import PolicyRecord, WalletRecord
from tokenmesh.tokens.periods import ALLOCATION_MODES, next_period_start
from tokenmesh.tokens.wallet import TokenWalletService


log = logging.getLogger(__name__)

ENFORCEMENT_MODES = ("strict", "soft")


@dataclass(frozen=True)
class EffectivePolicy:
    """Policy view used by callers that need a value even when no policy row exists."""

    policy_id: str | None
    source: str  # "user" | "level" | "default"
    base_allocation: int
    monthly_allocation: int
    monthly_cap: int | None
    rollover_percent: float
    allocation_mode: str
    enforcement_mode: str
    priority_weight: int
    min_reserve_tokens: int | None
    allow_manual_override: bool

    @classmethod
    def from_record(cls, record: PolicyRecord) -> "EffectivePolicy":
        return cls(
            policy_id=record.policy_id,
            source="user" if record.user_id is not None else "level",
            base_allocation=record.base_allocation,
            monthly_allocation=record.monthly_allocation,
            monthly_cap=record.monthly_cap,
            rollover_percent=record.rollover_percent,
            allocation_mode=record.allocation_mode,
            enforcement_mode=record.enforcement_mode,
            priority_weight=record.priority_weight,
            min_reserve_tokens=record.min_reserve_tokens,
            allow_manual_override=record.allow_manual_override,
        )


NO_POLICY = EffectivePolicy(
    policy_id=None,
    source="default",
    base_allocation=0,
    monthly_allocation=0,
    monthly_cap=None,
    rollover_percent=0.0,
    allocation_mode="manual",
    enforcement_mode="strict",
    priority_weight=0,
    min_reserve_tokens=None,
    allow_manual_override=True,
)


@dataclass(frozen=True)
class RolloverPlan:
    due: bool
    forfeit: int
    grant: int
    carry_cap: int
    balance_before: int
    balance_after: int
    next_reset_at: float | None


def plan_rollover(wallet: WalletRecord, policy: EffectivePolicy | PolicyRecord, now: float) -> RolloverPlan:
    """Compute a period rollover without touching storage.

    Balance above `rollover_percent` of the period grant is forfeited, then the
    new grant is credited, shrunk so the result never exceeds `monthly_cap`.
    Missed periods do not stack: one grant per application.
    """
    balance = wallet.current_tokens
    noop = RolloverPlan(
        due=False,
        forfeit=0,
        grant=0,
        carry_cap=balance,
        balance_before=balance,
        balance_after=balance,
        next_reset_at=wallet.next_reset_at,
    )
    if policy.allocation_mode == "manual":
        return noop
    if wallet.next_reset_at is not None and now < wallet.next_reset_at:
        return noop

    carry_cap = int(policy.rollover_percent * policy.monthly_allocation // 100)
    forfeit = max(0, balance - carry_cap)
    carried = balance - forfeit
    grant = int(policy.monthly_allocation)
    if policy.monthly_cap is not None:
        grant = max(0, min(grant, int(policy.monthly_cap) - carried))

    return RolloverPlan(
        due=True,
        forfeit=forfeit,
        grant=grant,
        carry_cap=carry_cap,
        balance_before=balance,
        balance_after=carried + grant,
        next_reset_at=next_period_start(policy.allocation_mode, now),
    )


def _validate_policy_fields(
    *,
    base_allocation: int,
    monthly_allocation: int,
    monthly_cap: int | None,
    rollover_percent: float,
    allocation_mode: str,
    enforcement_mode: str,
    min_reserve_tokens: int | None,
) -> None:
    if base_allocation < 0 or monthly_allocation < 0:
        raise InvalidArgument("Allocations must be >= 0.")
    if monthly_cap is not None and monthly_cap < 0:
        raise InvalidArgument("monthly_cap must be >= 0.")
    if not 0 <= float(rollover_percent) <= 100:
        raise InvalidArgument(
            "rollover_percent must be in [0..100].", details={"rollover_percent": rollover_percent}
        )
    if allocation_mode not in ALLOCATION_MODES:
        raise InvalidArgument(
            f"allocation_mode must be one of {list(ALLOCATION_MODES)}.",
            details={"allocation_mode": allocation_mode},
        )
    if enforcement_mode not in ENFORCEMENT_MODES:
        raise InvalidArgument(
            f"enforcement_mode must be one of {list(ENFORCEMENT_MODES)}.",
            details={"enforcement_mode": enforcement_mode},
        )
    if min_reserve_tokens is not None and min_reserve_tokens < 0:
        raise InvalidArgument("min_reserve_tokens must be >= 0.")


class AllocationPolicyEngine:
    """Per-level and per-user allocation rules, and the period rollover that applies them."""

    def __init__(self, wallets: TokenWalletService) -> None:
        self._wallets = wallets
        self._store = wallets.store

    def get_policy(self, policy_id: str) -> PolicyRecord:
        policy = self._store.get_policy(policy_id=policy_id)
        if policy is None:
            raise PolicyNotFound("Policy not found.", details={"policy_id": policy_id})
        return policy

    def get_policy_for(self, user_id: str) -> PolicyRecord | None:
        wallet = self._store.get_wallet(user_id=user_id)
        return self._store.find_policy_for(
            user_id=user_id, level_id=wallet.level_id if wallet is not None else None
        )

    def effective_policy(self, user_id: str) -> EffectivePolicy:
        policy = self.get_policy_for(user_id)
        return EffectivePolicy.from_record(policy) if policy is not None else NO_POLICY

    def set_level_policy(self, level_id: str, *, tenant_id: str | None = None, **fields: Any) -> PolicyRecord:
        if not (level_id or "").strip():
            raise InvalidArgument("level_id is required.")
        level_id = level_id.strip()
        policy = self._upsert(tenant_id=tenant_id, level_id=level_id, user_id=None, **fields)
        for user_id in self._store.list_wallet_users_for_level(level_id=level_id):
            self._wallets.sync_allocation_schedule(user_id)
        return policy

    def set_user_policy(self, user_id: str, *, tenant_id: str | None = None, **fields: Any) -> PolicyRecord:
        if not (user_id or "").strip():
            raise InvalidArgument("user_id is required.")
        user_id = user_id.strip()
        policy = self._upsert(tenant_id=tenant_id, level_id=None, user_id=user_id, **fields)
        if self._store.get_wallet(user_id=user_id) is not None:
            self._wallets.sync_allocation_schedule(user_id)
        return policy

    def _upsert(
        self,
        *,
        tenant_id: str | None,
        level_id: str | None,
        user_id: str | None,
        base_allocation: int = 0,
        monthly_allocation: int = 0,
        monthly_cap: int | None = None,
        rollover_percent: float = 0.0,
        allocation_mode: str = "monthly",
        enforcement_mode: str = "strict",
        priority_weight: int = 0,
        min_reserve_tokens: int | None = None,
        allow_manual_override: bool = True,
        notes: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PolicyRecord:
        _validate_policy_fields(
            base_allocation=base_allocation,
            monthly_allocation=monthly_allocation,
            monthly_cap=monthly_cap,
            rollover_percent=rollover_percent,
            allocation_mode=allocation_mode,
            enforcement_mode=enforcement_mode,
            min_reserve_tokens=min_reserve_tokens,
        )
        return self._store.upsert_policy(
            tenant_id=tenant_id,
            level_id=level_id,
            user_id=user_id,
            base_allocation=base_allocation,
            monthly_allocation=monthly_allocation,
            monthly_cap=monthly_cap,
            rollover_percent=rollover_percent,
            allocation_mode=allocation_mode,
            enforcement_mode=enforcement_mode,
            priority_weight=priority_weight,
            min_reserve_tokens=min_reserve_tokens,
            allow_manual_override=allow_manual_override,
            notes=notes,
            metadata=metadata,
        )

    # --- Rollover
    def plan_rollover(self, wallet: WalletRecord, policy: EffectivePolicy | PolicyRecord, now: float) -> RolloverPlan:
        return plan_rollover(wallet, policy, now)

    def apply_period_rollover(self, user_id: str, *, now: float | None = None) -> RolloverPlan:
        """Apply a due rollover for one wallet in a single transaction.

        The plan is recomputed from the wallet as read under the write lock, so
        two sweepers racing on the same wallet grant at most once.
        """
        ts = time.time() if now is None else float(now)

        def _apply() -> RolloverPlan:
            wallet = self._wallets.get_wallet(user_id)
            if wallet.status != "active":
                return plan_rollover(wallet, NO_POLICY, ts)
            record = self._store.find_policy_for(user_id=user_id, level_id=wallet.level_id)
            policy = EffectivePolicy.from_record(record) if record is not None else NO_POLICY
            plan = plan_rollover(wallet, policy, ts)
            if not plan.due:
                if policy.allocation_mode == "manual" and wallet.next_reset_at is not None:
                    # Cadence was removed; stop the sweeper from revisiting this wallet.
                    self._store.update_wallet_schedule(
                        wallet_id=wallet.wallet_id,
                        monthly_allocation_tokens=policy.monthly_allocation,
                        last_reset_at=wallet.last_reset_at,
                        next_reset_at=None,
                    )
                return plan

            if plan.forfeit > 0:
                self._wallets.post_in_transaction(
                    user_id,
                    plan.forfeit,
                    "debit",
                    "rollover-forfeit",
                    source="allocation",
                    reference_type="policy",
                    reference_id=policy.policy_id,
                    metadata={"carry_cap": plan.carry_cap},
                )
            if plan.grant > 0:
                self._wallets.post_in_transaction(
                    user_id,
                    plan.grant,
                    "credit",
                    "period-allocation",
                    source="allocation",
                    reference_type="policy",
                    reference_id=policy.policy_id,
                )
            self._store.update_wallet_schedule(
                wallet_id=wallet.wallet_id,
                monthly_allocation_tokens=policy.monthly_allocation,
                last_reset_at=ts,
                next_reset_at=plan.next_reset_at,
            )
            return plan

        plan = self._wallets.run_atomic(_apply)
        if plan.due:
            log.info(
                "rollover applied user_id=%s forfeit=%d grant=%d balance=%d",
                user_id,
                plan.forfeit,
                plan.grant,
                plan.balance_after,
            )
        return plan

    def apply_due_rollovers(self, *, now: float | None = None, batch_size: int = 500) -> dict[str, Any]:
        """Sweep every active wallet whose `next_reset_at` has passed."""
        ts = time.time() if now is None else float(now)
        checked = 0
        applied = 0
        failed: list[str] = []
        after: tuple[float, str] | None = None
        while True:
            due = self._store.list_wallets_due_for_reset(now=ts, limit=batch_size, after=after)
            if not due:
                break
            after = due[-1]
            for _, user_id in due:
                checked += 1
                try:
                    plan = self.apply_period_rollover(user_id, now=ts)
                except Exception:
                    log.exception("rollover failed user_id=%s", user_id)
                    failed.append(user_id)
                    continue
                if plan.due:
                    applied += 1
        return {"checked": checked, "applied": applied, "failed": failed}
