from __future__ import annotations

import logging
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any

from tokenmesh.config.load_config import AppConfig, load_app_config
from tokenmesh.runtime.dispatcher import ExecutionDispatcher
from tokenmesh.runtime.engine import ExecutionEngine, ExecutionResult, build_engine
from tokenmesh.storage.sqlite_store import SQLiteStore, default_db_path


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunnerConfig:
    poll_interval_s: float = 0.5


class ExecutionRunner:
    """Single-threaded background worker that executes dispatched executions."""

    def __init__(
        self,
        *,
        db_path: str | None = None,
        config: RunnerConfig | None = None,
        app_config: AppConfig | None = None,
        engine: ExecutionEngine | None = None,
    ) -> None:
        self._db_path = db_path or default_db_path()
        self._app_config = app_config or load_app_config()
        self._config = config or RunnerConfig(poll_interval_s=self._app_config.runtime.runner_poll_interval_s)
        self._engine = engine or build_engine(self._app_config.dispatch)
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._processed = 0
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "poll_interval_s": float(self._config.poll_interval_s),
            "db_path": self._db_path,
            "engine": getattr(self._engine, "name", type(self._engine).__name__),
            "processed": self._processed,
            "last_error": self._last_error,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="tokenmesh-execution-runner", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def run_once(self, store: SQLiteStore) -> bool:
        """Claim and execute one execution. Returns False when nothing was waiting."""
        claimed = store.claim_next_unclaimed_execution()
        if claimed is None:
            return False

        dispatcher = ExecutionDispatcher.from_store(store, config=self._app_config)
        try:
            dispatcher.execute_dispatched(claimed, self._engine)
        except Exception as e:
            # Never crash the runner loop; fail the execution if it is still open.
            self._last_error = str(e)
            log.exception("runner failed on execution %s", claimed.execution_id)
            current = store.get_execution(execution_id=claimed.execution_id)
            if current is not None and current.status == "running":
                dispatcher.complete(
                    claimed.execution_id,
                    ExecutionResult(
                        success=False,
                        tokens_consumed=0,
                        error=f"runner_unhandled_exception: {e}",
                        metadata={"traceback": traceback.format_exc()},
                    ),
                )
        self._processed += 1
        return True

    def _run_loop(self) -> None:
        store = SQLiteStore(self._db_path)
        try:
            while not self._stop.is_set():
                try:
                    worked = self.run_once(store)
                except Exception as e:
                    self._last_error = str(e)
                    log.exception("runner loop error")
                    worked = False
                if not worked:
                    self._stop.wait(self._config.poll_interval_s)
        finally:
            store.close()


class AllocationSweeper:
    """Periodically applies due period rollovers to every active wallet."""

    def __init__(
        self,
        *,
        db_path: str | None = None,
        app_config: AppConfig | None = None,
        interval_s: float | None = None,
    ) -> None:
        self._db_path = db_path or default_db_path()
        self._app_config = app_config or load_app_config()
        self._interval_s = float(
            interval_s if interval_s is not None else self._app_config.runtime.sweeper_interval_s
        )
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._last_sweep: dict[str, Any] | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_s": self._interval_s,
            "last_sweep": self._last_sweep,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="tokenmesh-allocation-sweeper", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def sweep_once(self, store: SQLiteStore, *, now: float | None = None) -> dict[str, Any]:
        dispatcher = ExecutionDispatcher.from_store(store, config=self._app_config)
        summary = dispatcher.policies.apply_due_rollovers(now=now)
        self._last_sweep = {**summary, "ts": time.time()}
        return summary

    def _run_loop(self) -> None:
        store = SQLiteStore(self._db_path)
        try:
            while not self._stop.is_set():
                try:
                    self.sweep_once(store)
                except Exception:
                    log.exception("allocation sweep failed")
                self._stop.wait(self._interval_s)
        finally:
            store.close()
