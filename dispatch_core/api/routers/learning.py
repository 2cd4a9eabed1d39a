from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from dispatch_core.api.deps import get_caller_scope, require_perm
from dispatch_core.domain.errors import DispatchError, ForbiddenError, NotFoundError, UpstreamUnavailableError
from dispatch_core.domain.models import CallerScope, LearningRecordRead, LearningRecordRequest
from dispatch_core.domain.permissions import PERM_LEARNING_WRITE
from dispatch_core.infra.audit import set_audit_context
from dispatch_core.services.decision_trace_service import DecisionTraceService
from dispatch_core.services.task_store import TaskStore

router = APIRouter()


def get_decision_trace_service() -> DecisionTraceService:
    return DecisionTraceService()


def get_task_store() -> TaskStore:
    return TaskStore()


def _handle_error(exc: DispatchError) -> None:
    detail = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail) from exc
    if isinstance(exc, UpstreamUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail) from exc
    raise exc


@router.post(
    "/record",
    response_model=LearningRecordRead,
    dependencies=[Depends(require_perm(PERM_LEARNING_WRITE))],
)
def record_learning(
    payload: LearningRecordRequest,
    request: Request,
    scope: Annotated[CallerScope, Depends(get_caller_scope)],
    store: Annotated[TaskStore, Depends(get_task_store)],
    service: Annotated[DecisionTraceService, Depends(get_decision_trace_service)],
) -> LearningRecordRead:
    set_audit_context(
        request,
        action="learning.record",
        detail={"what": {"task_id": payload.task_id, "outcome": payload.outcome}},
    )
    try:
        task = store.get_scoped_task(payload.task_id, scope.tenant_scope)
    except DispatchError as exc:
        set_audit_context(request, detail={"result": {"error_code": exc.code}})
        _handle_error(exc)
    # the record belongs to the task's tenant so that tenant's replay finds it
    success = service.record_learning(
        task.id,
        payload.worker_id,
        payload.outcome,
        payload.metrics,
        scope.actor_id,
        task.tenant_id,
        task_snapshot={"task_id": task.id, "task_type": str(task.type), "status": str(task.status)},
        rejected_category=str(payload.rejected_category) if payload.rejected_category is not None else None,
        rejected_text=payload.rejected_text,
    )
    return LearningRecordRead(success=success)
