from __future__ import annotations

from contextvars import ContextVar

import structlog

tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)


def set_request_context(tenant_id: str | None, user_id: str | None) -> None:
    tenant_id_ctx.set(tenant_id)
    user_id_ctx.set(user_id)
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id, user_id=user_id)

