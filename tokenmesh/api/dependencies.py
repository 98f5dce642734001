from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from fastapi import Header

from tokenmesh.api.errors import APIError
from tokenmesh.config.load_config import load_app_config
from tokenmesh.runtime.dispatcher import ExecutionDispatcher
from tokenmesh.storage.sqlite_store import SQLiteStore


ADMIN_ROLES = {"admin", "superadmin"}


@dataclass(frozen=True)
class Identity:
    """Caller identity as resolved by the upstream gateway (headers are trusted)."""

    user_id: str | None
    tenant_id: str | None
    role: str | None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").strip().lower() in ADMIN_ROLES

    def require_user(self) -> str:
        if not self.user_id:
            raise APIError(status_code=401, code="unauthenticated", message="Missing X-User-Id header.")
        return self.user_id

    def require_admin(self) -> None:
        if not self.is_admin:
            raise APIError(
                status_code=403,
                code="forbidden",
                message="Admin role required.",
                details={"role": self.role},
            )


def get_identity(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> Identity:
    """FastAPI dependency: read the identity headers set by the gateway."""
    return Identity(
        user_id=(x_user_id or "").strip() or None,
        tenant_id=(x_tenant_id or "").strip() or None,
        role=(x_user_role or "").strip() or None,
    )


@contextmanager
def open_dispatcher() -> Iterator[ExecutionDispatcher]:
    """Per-request store plus the services built on it; the connection is closed on exit."""
    store = SQLiteStore()
    try:
        yield ExecutionDispatcher.from_store(store, config=load_app_config())
    finally:
        store.close()
