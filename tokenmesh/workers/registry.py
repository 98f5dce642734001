from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from tokenmesh.config.load_config import RegistryConfig
from tokenmesh.errors import InvalidArgument, WorkerNotFound, WorkerOwnershipConflict
from tokenmesh.storage.sqlite_store import SQLiteStore, WorkerQuery, WorkerRecord


log = logging.getLogger(__name__)

WORKER_STATUSES = ("active", "inactive", "maintenance", "error")
EVENT_SEVERITIES = ("info", "warning", "error")

_DEFAULT_REGISTRY = RegistryConfig(
    stale_after_s=300.0,
    error_below=30,
    maintenance_below=60,
    default_min_health_score=60,
    default_max_load_percent=80.0,
    events_default_limit=100,
)


@dataclass(frozen=True)
class WorkerDescriptor:
    worker_id: str
    worker_type: str
    capacity: int = 1
    current_load: int = 0
    region: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)
    metadata: dict[str, Any] = field(default_factory=dict)


def _non_negative_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidArgument(f"{name} must be a non-negative integer.", details={name: value})
    return int(value)


class HealthMonitor:
    """Maps health scores to statuses and reports heartbeat staleness.

    Staleness is informational only: it never changes a stored status.
    """

    def __init__(self, store: SQLiteStore, *, config: RegistryConfig | None = None) -> None:
        self._store = store
        self._config = config or _DEFAULT_REGISTRY

    @property
    def stale_after_s(self) -> float:
        return float(self._config.stale_after_s)

    def derive_status(self, health_score: int) -> str:
        if health_score < self._config.error_below:
            return "error"
        if health_score < self._config.maintenance_below:
            return "maintenance"
        return "active"

    def is_stale(self, worker: WorkerRecord, now: float | None = None) -> bool:
        ts = time.time() if now is None else float(now)
        if worker.last_heartbeat is None:
            return True
        return worker.last_heartbeat < ts - self.stale_after_s

    def stale_workers(self, tenant_id: str | None, now: float | None = None) -> list[WorkerRecord]:
        ts = time.time() if now is None else float(now)
        return [w for w in self._store.list_workers(tenant_id=tenant_id) if self.is_stale(w, ts)]


class WorkerRegistry:
    def __init__(
        self,
        store: SQLiteStore,
        *,
        config: RegistryConfig | None = None,
        monitor: HealthMonitor | None = None,
    ) -> None:
        self._store = store
        self._config = config or _DEFAULT_REGISTRY
        self.monitor = monitor or HealthMonitor(store, config=self._config)

    def register_worker(self, tenant_id: str | None, descriptor: WorkerDescriptor) -> WorkerRecord:
        """Upsert a worker by id. Re-registration keeps the current health and status.

        A worker id belongs to the tenant that first registered it; registering
        it from another tenant raises `WorkerOwnershipConflict`.
        """
        worker_id = (descriptor.worker_id or "").strip()
        worker_type = (descriptor.worker_type or "").strip()
        if not worker_id:
            raise InvalidArgument("worker_id is required.")
        if not worker_type:
            raise InvalidArgument("worker_type is required.")
        capacity = _non_negative_int(descriptor.capacity, name="capacity")
        current_load = _non_negative_int(descriptor.current_load, name="current_load")
        existing = self._store.get_worker(worker_id=worker_id)
        if existing is not None and existing.tenant_id != tenant_id:
            raise WorkerOwnershipConflict(
                "Worker is registered to another tenant.",
                details={"worker_id": worker_id},
            )

        worker = self._store.upsert_worker(
            worker_id=worker_id,
            tenant_id=tenant_id,
            worker_type=worker_type,
            capacity=capacity,
            current_load=current_load,
            region=descriptor.region,
            tags=[str(t) for t in descriptor.tags],
            metadata=dict(descriptor.metadata or {}),
        )
        self.log_event(
            tenant_id,
            worker_id,
            "worker_registered",
            {"worker_type": worker_type, "capacity": capacity, "region": descriptor.region},
        )
        return worker

    def heartbeat(self, worker_id: str) -> None:
        if not self._store.touch_heartbeat(worker_id=worker_id):
            raise WorkerNotFound("Worker not found.", details={"worker_id": worker_id})

    def get_worker(self, worker_id: str) -> WorkerRecord:
        worker = self._store.get_worker(worker_id=worker_id)
        if worker is None:
            raise WorkerNotFound("Worker not found.", details={"worker_id": worker_id})
        return worker

    def update_health_score(self, worker_id: str, health_score: int) -> WorkerRecord:
        if isinstance(health_score, bool) or not isinstance(health_score, int) or not 0 <= health_score <= 100:
            raise InvalidArgument(
                "health_score must be an integer in [0..100].", details={"health_score": health_score}
            )
        before = self.get_worker(worker_id)
        status = self.monitor.derive_status(health_score)
        self._store.update_worker_health(worker_id=worker_id, health_score=health_score, status=status)
        if status != before.status:
            severity = "error" if status == "error" else ("warning" if status == "maintenance" else "info")
            self.log_event(
                before.tenant_id,
                worker_id,
                "status_changed",
                {"from": before.status, "to": status, "health_score": health_score},
                severity=severity,
            )
            log.info("worker %s status %s -> %s (health=%d)", worker_id, before.status, status, health_score)
        return self.get_worker(worker_id)

    def update_load(self, worker_id: str, current_load: int) -> WorkerRecord:
        load = _non_negative_int(current_load, name="current_load")
        if not self._store.update_worker_load(worker_id=worker_id, current_load=load):
            raise WorkerNotFound("Worker not found.", details={"worker_id": worker_id})
        return self.get_worker(worker_id)

    def set_status(self, worker_id: str, status: str) -> WorkerRecord:
        """Manual override; the next health update recomputes the status."""
        if status not in WORKER_STATUSES:
            raise InvalidArgument(f"status must be one of {list(WORKER_STATUSES)}.", details={"status": status})
        before = self.get_worker(worker_id)
        self._store.update_worker_status(worker_id=worker_id, status=status)
        if status != before.status:
            self.log_event(
                before.tenant_id,
                worker_id,
                "status_override",
                {"from": before.status, "to": status},
                severity="warning",
            )
        return self.get_worker(worker_id)

    def list_workers(self, tenant_id: str | None, query: WorkerQuery | None = None) -> list[WorkerRecord]:
        q = query or WorkerQuery()
        if q.status is not None and q.status not in WORKER_STATUSES:
            raise InvalidArgument(f"status must be one of {list(WORKER_STATUSES)}.", details={"status": q.status})
        return self._store.list_workers(tenant_id=tenant_id, query=q)

    def get_available_workers(
        self,
        tenant_id: str | None,
        *,
        worker_type: str | None = None,
        min_health_score: int | None = None,
        max_load_percent: float | None = None,
    ) -> list[WorkerRecord]:
        """Active workers above the health floor and below the load ceiling.

        Ordered by ascending load ratio, then descending health, then first-seen.
        A worker with zero capacity never qualifies.
        """
        return self._store.list_available_workers(
            tenant_id=tenant_id,
            worker_type=worker_type,
            min_health_score=(
                self._config.default_min_health_score if min_health_score is None else int(min_health_score)
            ),
            max_load_percent=(
                self._config.default_max_load_percent if max_load_percent is None else float(max_load_percent)
            ),
        )

    def get_worker_stats(self, tenant_id: str | None, now: float | None = None) -> dict[str, Any]:
        ts = time.time() if now is None else float(now)
        stats = self._store.worker_stats(tenant_id=tenant_id, stale_before=ts - self.monitor.stale_after_s)
        stats["stale_after_s"] = self.monitor.stale_after_s
        return stats

    # --- Events
    def log_event(
        self,
        tenant_id: str | None,
        worker_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        *,
        severity: str = "info",
    ) -> str:
        if severity not in EVENT_SEVERITIES:
            raise InvalidArgument(
                f"severity must be one of {list(EVENT_SEVERITIES)}.", details={"severity": severity}
            )
        if not (event_type or "").strip():
            raise InvalidArgument("event_type is required.")
        return self._store.append_event(
            tenant_id=tenant_id,
            subject_type="worker",
            subject_id=worker_id,
            event_type=event_type.strip(),
            payload=dict(data or {}),
            severity=severity,
        )

    def list_events(
        self,
        tenant_id: str | None,
        *,
        worker_id: str | None = None,
        event_type: str | None = None,
        severity: str | None = None,
        since: float | None = None,
        until: float | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return self._store.list_events(
            tenant_id=tenant_id,
            subject_type="worker",
            subject_id=worker_id,
            event_type=event_type,
            severity=severity,
            since=since,
            until=until,
            limit=self._config.events_default_limit if limit is None else int(limit),
        )
