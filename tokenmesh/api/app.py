from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from tokenmesh.api.errors import (
    APIError,
    api_error_handler,
    domain_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from tokenmesh.config.load_config import load_app_config
from tokenmesh.errors import TokenMeshError
from tokenmesh.runtime.dispatcher import ExecutionDispatcher
from tokenmesh.runtime.runner import AllocationSweeper, ExecutionRunner
from tokenmesh.storage.sqlite_store import SQLiteStore

from .routers.executions import router as executions_router
from .routers.health import router as health_router
from .routers.policies import router as policies_router
from .routers.routing import router as routing_router
from .routers.wallets import router as wallets_router
from .routers.workers import router as workers_router


log = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("TOKENMESH_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        cfg = load_app_config()

        # Fail executions left 'running' by a previous process.
        if _env_bool("TOKENMESH_RECONCILE_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                dispatcher = ExecutionDispatcher.from_store(store, config=cfg)
                app.state.reconciled_running_executions = dispatcher.reconcile_running_executions(
                    reason="server_restarted"
                )
            finally:
                store.close()
        else:
            app.state.reconciled_running_executions = 0

        # Single-instance assumption: one runner and one sweeper per process.
        if _env_bool("TOKENMESH_ENABLE_RUNNER", True):
            runner = ExecutionRunner(app_config=cfg)
            runner.start()
            app.state.execution_runner = runner
        if _env_bool("TOKENMESH_ENABLE_SWEEPER", True):
            sweeper = AllocationSweeper(app_config=cfg)
            sweeper.start()
            app.state.allocation_sweeper = sweeper
        try:
            yield
        finally:
            for name in ("execution_runner", "allocation_sweeper"):
                component = getattr(app.state, name, None)
                if component is not None:
                    component.stop()

    app = FastAPI(title="TokenMesh API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(TokenMeshError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(wallets_router, prefix="/api/v1", tags=["wallets"])
    app.include_router(policies_router, prefix="/api/v1", tags=["policies"])
    app.include_router(workers_router, prefix="/api/v1", tags=["workers"])
    app.include_router(routing_router, prefix="/api/v1", tags=["routing"])
    app.include_router(executions_router, prefix="/api/v1", tags=["executions"])

    return app


app = create_app()
