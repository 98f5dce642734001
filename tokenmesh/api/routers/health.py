from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from tokenmesh.storage.sqlite_store import SCHEMA_VERSION
from tokenmesh.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


def _snapshot(component: Any) -> dict[str, Any]:
    snap: dict[str, Any] = {"enabled": component is not None, "running": False}
    if component is not None and hasattr(component, "status_snapshot"):
        snap.update(component.status_snapshot())
    return snap


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "tokenmesh",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "pydantic": _pkg_version("pydantic"),
            "openai": _pkg_version("openai"),
        },
        "ts": time.time(),
    }


@router.get("/system/runtime")
def system_runtime(request: Request) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "runner": _snapshot(getattr(request.app.state, "execution_runner", None)),
            "sweeper": _snapshot(getattr(request.app.state, "allocation_sweeper", None)),
            "queue": {
                "executions_by_status": store.count_executions_by_status(),
            },
            "startup": {
                "reconciled_running_executions": getattr(request.app.state, "reconciled_running_executions", 0),
            },
        }
    finally:
        store.close()
