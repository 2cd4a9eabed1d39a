from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from dispatch_core.api.deps import get_caller_scope, require_perm
from dispatch_core.domain.errors import (
    ConflictError,
    DispatchError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailableError,
)
from dispatch_core.domain.models import CallerScope, Task, TaskTransitionRequest
from dispatch_core.domain.permissions import PERM_TASK_READ, PERM_TASK_TRANSITION
from dispatch_core.domain.state_machine import TaskType
from dispatch_core.infra.audit import set_audit_context
from dispatch_core.services.allocation_service import AllocationService
from dispatch_core.services.task_store import TaskStore

router = APIRouter()


def get_task_store() -> TaskStore:
    return TaskStore()


def get_allocation_service() -> AllocationService:
    return AllocationService()


Scope = Annotated[CallerScope, Depends(get_caller_scope)]


def _handle_error(exc: DispatchError) -> None:
    detail = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail) from exc
    if isinstance(exc, InvalidTransitionError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail) from exc
    if isinstance(exc, UpstreamUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail) from exc
    raise exc


@router.get(
    "/{task_id}",
    response_model=Task,
    dependencies=[Depends(require_perm(PERM_TASK_READ))],
)
def get_task(
    task_id: str,
    scope: Scope,
    store: Annotated[TaskStore, Depends(get_task_store)],
    task_type: TaskType | None = None,
) -> Task:
    try:
        return store.get_scoped_task(task_id, scope.tenant_scope, task_type)
    except DispatchError as exc:
        _handle_error(exc)
        raise


@router.post(
    "/{task_id}/transition",
    response_model=Task,
    dependencies=[Depends(require_perm(PERM_TASK_TRANSITION))],
)
def transition_task(
    task_id: str,
    payload: TaskTransitionRequest,
    request: Request,
    scope: Scope,
    service: Annotated[AllocationService, Depends(get_allocation_service)],
) -> Task:
    set_audit_context(
        request,
        action="task.transition",
        detail={"what": {"task_id": task_id, "status": payload.status}},
    )
    try:
        return service.transition(
            task_id,
            payload.status,
            scope.tenant_scope,
            scope.actor_id,
            payload.task_type,
            payload.reason,
        )
    except DispatchError as exc:
        set_audit_context(request, detail={"result": {"error_code": exc.code}})
        _handle_error(exc)
        raise
