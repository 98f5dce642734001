from __future__ import annotations

import logging
import random
from typing import Any, Callable, Mapping, Sequence

from tokenmesh.errors import InvalidStrategy, NoHealthyWorkers
from tokenmesh.storage.sqlite_store import SQLiteStore, WorkerRecord
from tokenmesh.workers.registry import WorkerRegistry


log = logging.getLogger(__name__)

SelectFn = Callable[[Sequence[WorkerRecord], random.Random], WorkerRecord]


def _round_robin(candidates: Sequence[WorkerRecord], rng: random.Random) -> WorkerRecord:
    # Historical name; the selection is uniform random.
    return candidates[rng.randrange(len(candidates))]


def _least_loaded(candidates: Sequence[WorkerRecord], _rng: random.Random) -> WorkerRecord:
    # min() keeps the first of equal keys, so ties resolve to first-seen.
    return min(candidates, key=lambda w: w.current_load)


def _health_based(candidates: Sequence[WorkerRecord], _rng: random.Random) -> WorkerRecord:
    return min(candidates, key=lambda w: -w.health_score)


def _capacity_aware(candidates: Sequence[WorkerRecord], _rng: random.Random) -> WorkerRecord:
    return min(candidates, key=lambda w: w.load_ratio)


BUILTIN_STRATEGIES: dict[str, SelectFn] = {
    "round_robin": _round_robin,
    "least_loaded": _least_loaded,
    "health_based": _health_based,
    "capacity_aware": _capacity_aware,
}

STRATEGY_DESCRIPTIONS = {
    "round_robin": "Uniform random choice among healthy candidates.",
    "least_loaded": "Fewest in-flight jobs.",
    "health_based": "Highest health score.",
    "capacity_aware": "Lowest load relative to declared capacity.",
}


class RoutingSelector:
    """Chooses one worker per job and keeps per-(worker, strategy) counters."""

    def __init__(
        self,
        store: SQLiteStore,
        registry: WorkerRegistry,
        *,
        default_strategy: str = "least_loaded",
        rng: random.Random | None = None,
        extra_strategies: Mapping[str, SelectFn] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._rng = rng or random.Random()
        self._strategies: dict[str, SelectFn] = dict(BUILTIN_STRATEGIES)
        if extra_strategies:
            self._strategies.update(extra_strategies)
        if default_strategy not in self._strategies:
            raise InvalidStrategy(
                f"Unknown routing strategy: {default_strategy!r}", details={"strategy_id": default_strategy}
            )
        self.default_strategy = default_strategy

    def list_strategies(self) -> list[dict[str, Any]]:
        return [
            {
                "strategy_id": sid,
                "description": STRATEGY_DESCRIPTIONS.get(sid, ""),
                "default": sid == self.default_strategy,
            }
            for sid in self._strategies
        ]

    def select(
        self,
        candidates: Sequence[WorkerRecord],
        strategy_id: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> WorkerRecord:
        """Pick exactly one worker from `candidates` and count it against the strategy."""
        sid = strategy_id or self.default_strategy
        fn = self._strategies.get(sid)
        if fn is None:
            raise InvalidStrategy(f"Unknown routing strategy: {sid!r}", details={"strategy_id": sid})
        if not candidates:
            raise NoHealthyWorkers("No healthy workers available.", details={"strategy_id": sid})

        chosen = fn(candidates, self._rng)
        self._store.increment_routing_metric(
            tenant_id=tenant_id if tenant_id is not None else chosen.tenant_id,
            worker_id=chosen.worker_id,
            strategy_id=sid,
        )
        log.debug("routed to worker_id=%s strategy=%s among %d", chosen.worker_id, sid, len(candidates))
        return chosen

    def route(
        self,
        tenant_id: str | None,
        strategy_id: str | None = None,
        *,
        worker_type: str | None = None,
        min_health_score: int | None = None,
        max_load_percent: float | None = None,
    ) -> WorkerRecord:
        sid = strategy_id or self.default_strategy
        if sid not in self._strategies:
            raise InvalidStrategy(f"Unknown routing strategy: {sid!r}", details={"strategy_id": sid})
        candidates = self._registry.get_available_workers(
            tenant_id,
            worker_type=worker_type,
            min_health_score=min_health_score,
            max_load_percent=max_load_percent,
        )
        if not candidates:
            raise NoHealthyWorkers(
                "No healthy workers available.",
                details={"tenant_id": tenant_id, "worker_type": worker_type, "strategy_id": sid},
            )
        return self.select(candidates, sid, tenant_id=tenant_id)

    def get_routing_metrics(self, tenant_id: str | None, worker_id: str | None = None) -> dict[str, Any]:
        rows = self._store.list_routing_metrics(tenant_id=tenant_id, worker_id=worker_id)
        by_worker: dict[str, int] = {}
        by_strategy: dict[str, int] = {}
        total = 0
        for r in rows:
            n = int(r["total_routed"])
            total += n
            by_worker[str(r["worker_id"])] = by_worker.get(str(r["worker_id"]), 0) + n
            by_strategy[str(r["strategy_id"])] = by_strategy.get(str(r["strategy_id"]), 0) + n
        return {"total_routed": total, "by_worker": by_worker, "by_strategy": by_strategy}
