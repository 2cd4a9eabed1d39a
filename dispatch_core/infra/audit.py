from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel
from sqlalchemy import or_
from sqlmodel import col, select
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from dispatch_core.domain.models import AuditLog, now_utc
from dispatch_core.infra.db import datastore_guard, open_session
from dispatch_core.infra.log import get_logger

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
AUDITED_READ_PATH_KEYWORDS = ("/replay", "/metrics")
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
HTTP_REQUEST_TARGET = "http_request"

logger = get_logger(__name__)


class AuditLogStore:
    """Append-only sink over ``audit_logs``; rows are never updated or deleted."""

    def append(
        self,
        *,
        action: str,
        actor_id: str | None,
        tenant_id: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        task_id: str | None = None,
        metadata: BaseModel | dict[str, Any] | None = None,
    ) -> AuditLog:
        if isinstance(metadata, BaseModel):
            detail = metadata.model_dump(mode="json")
        else:
            detail = dict(metadata or {})
        row = AuditLog(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            task_id=task_id,
            detail=detail,
        )
        with datastore_guard("audit_append"), open_session() as session:
            session.add(row)
            session.commit()
        return row

    def try_append(self, **kwargs: Any) -> AuditLog | None:
        """Best-effort append: the caller's operation must not fail on audit gaps."""
        try:
            return self.append(**kwargs)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=kwargs.get("action"),
                target_id=kwargs.get("target_id"),
                task_id=kwargs.get("task_id"),
                error=str(exc),
            )
            return None

    def list_related(
        self,
        task_id: str,
        *,
        actions: Iterable[str],
        tenant_id: str | None = None,
        limit: int = 500,
    ) -> list[AuditLog]:
        action_list = sorted(set(actions))
        with datastore_guard("audit_query"), open_session() as session:
            statement = (
                select(AuditLog)
                .where(col(AuditLog.action).in_(action_list))
                .where(or_(col(AuditLog.task_id) == task_id, col(AuditLog.target_id) == task_id))
            )
            if tenant_id is not None:
                statement = statement.where(AuditLog.tenant_id == tenant_id)
            statement = statement.order_by(col(AuditLog.created_at).desc()).limit(limit)
            return list(session.exec(statement).all())

    def list_by_actions(
        self,
        actions: Iterable[str],
        *,
        tenant_id: str | None = None,
    ) -> list[AuditLog]:
        action_list = sorted(set(actions))
        with datastore_guard("audit_query"), open_session() as session:
            statement = select(AuditLog).where(col(AuditLog.action).in_(action_list))
            if tenant_id is not None:
                statement = statement.where(AuditLog.tenant_id == tenant_id)
            return list(session.exec(statement).all())


audit_log_store = AuditLogStore()


def _merge_detail(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        merged[key] = _merge_detail(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    return "rejected" if status_code >= 400 else "success"


def should_audit_request(method: str, path: str) -> bool:
    return method in WRITE_METHODS or any(keyword in path for keyword in AUDITED_READ_PATH_KEYWORDS)


def _audit_context(request: Request) -> dict[str, Any]:
    raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, None)
    return dict(raw) if isinstance(raw, dict) else {}


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Lets a route name its request audit row and attach domain detail to it."""
    context = _audit_context(request)
    if action is not None:
        context["action"] = action
    if detail:
        context["detail"] = _merge_detail(context.get("detail") or {}, detail)
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def _request_detail(request: Request, response: Response, claims: dict[str, Any]) -> dict[str, Any]:
    route = request.scope.get("route")
    return {
        "actor": {
            "tenant_id": claims.get("tenant_id"),
            "actor_id": claims.get("sub"),
            "role": claims.get("role"),
        },
        "request": {
            "method": request.method,
            "path": request.url.path,
            "route": getattr(route, "path", request.url.path),
            "query": request.url.query,
            "client_ip": request.client.host if request.client is not None else None,
            "received_at": now_utc().isoformat(),
        },
        "result": {
            "status_code": response.status_code,
            "outcome": _outcome(response.status_code),
        },
    }


class AuditMiddleware(BaseHTTPMiddleware):
    """Records one request-level audit row per write call and per audited read."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        if request.url.path in {"/healthz", "/readyz"}:
            return response
        context = _audit_context(request)
        if not context and not should_audit_request(request.method, request.url.path):
            return response

        claims = getattr(request.state, "claims", None) or {}
        action = context.get("action") or f"{request.method}:{request.url.path}"
        detail = _merge_detail(_request_detail(request, response, claims), context.get("detail") or {})
        try:
            audit_log_store.append(
                action=action,
                actor_id=claims.get("sub"),
                tenant_id=claims.get("tenant_id"),
                target_type=HTTP_REQUEST_TARGET,
                target_id=detail["request"]["route"],
                metadata=detail,
            )
        except Exception as exc:
            logger.warning("request_audit_failed", action=action, path=request.url.path, error=str(exc))
        return response
